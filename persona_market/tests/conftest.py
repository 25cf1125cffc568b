from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from persona_market.app.broadcast import ChangeEvent
from persona_market.app.catalog import CatalogService, PayloadDescriptor, PayloadKind, Service, ServiceSpec
from persona_market.app.delivery import DeliveryGate
from persona_market.app.entitlements import CapabilityClass, EntitlementLedger
from persona_market.app.services.engine import LedgerServiceReferences
from persona_market.app.settlement import SettlementOrchestrator
from persona_market.app.storage import LocalScratchStore
from persona_market.app.wallet import ConfirmationResult, ConfirmationStatus

SELLER_WALLET = "SELLERWALLET"
BUYER_WALLET = "BUYERWALLET"


class FixedClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: List[ChangeEvent] = []

    def publish(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[Tuple[str, str]]:
        return [(event.entity_kind.value, event.mutation.value) for event in self.events]


class FakeWalletLedger:
    def __init__(self, balances: Optional[Dict[str, int]] = None) -> None:
        self.balances: Dict[str, int] = dict(balances or {})
        self.outcome = ConfirmationStatus.CONFIRMED
        self.failure_reason = "overspend"
        self.balance_error: Optional[Exception] = None
        self.submit_error: Optional[Exception] = None
        self.confirm_delay = 0.0
        self.submissions: List[Tuple[str, str, int, bytes]] = []
        self.confirmation_queries: List[str] = []

    async def get_balance(self, wallet: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(wallet, 0)

    async def submit_payment(self, sender: str, receiver: str, amount: int, *, note: bytes = b"") -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((sender, receiver, amount, note))
        return f"TX{len(self.submissions)}"

    async def await_confirmation(self, external_ref: str, timeout: float) -> ConfirmationResult:
        self.confirmation_queries.append(external_ref)
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.outcome == ConfirmationStatus.CONFIRMED:
            return ConfirmationResult.confirmed(external_ref, 1000 + len(self.confirmation_queries))
        if self.outcome == ConfirmationStatus.FAILED:
            return ConfirmationResult.failed(external_ref, self.failure_reason)
        return ConfirmationResult.timed_out(external_ref)


@dataclass
class Harness:
    store: LocalScratchStore
    publisher: RecordingPublisher
    clock: FixedClock
    wallet: FakeWalletLedger
    catalog: CatalogService
    ledger: EntitlementLedger
    orchestrator: SettlementOrchestrator
    delivery: DeliveryGate

    def create_service(
        self,
        capability_class: CapabilityClass = CapabilityClass.CONSULTATION,
        *,
        price: int = 2,
        **overrides,
    ) -> Service:
        payload = overrides.pop("payload", None)
        if payload is None and capability_class in {CapabilityClass.CONTENT_DELIVERY, CapabilityClass.VOICE_MESSAGE}:
            payload = PayloadDescriptor(kind=PayloadKind.URL, content="https://cdn.example/asset.mp3", file_type="audio/mpeg")
        spec = ServiceSpec(
            owner_persona_id=overrides.pop("owner_persona_id", "persona-1"),
            owner_wallet=overrides.pop("owner_wallet", SELLER_WALLET),
            name=overrides.pop("name", "Ask me anything"),
            description=overrides.pop("description", "One focused session"),
            price_minor_unit=price,
            capability_class=capability_class,
            payload=payload,
            **overrides,
        )
        return self.catalog.create_service(spec)


def build_harness(
    *,
    wallet: Optional[FakeWalletLedger] = None,
    clock: Optional[FixedClock] = None,
    store: Optional[LocalScratchStore] = None,
    confirmation_timeout: float = 0.2,
    stale_after: timedelta = timedelta(minutes=15),
) -> Harness:
    store = store or LocalScratchStore()
    publisher = RecordingPublisher()
    clock = clock or FixedClock()
    wallet = wallet or FakeWalletLedger({BUYER_WALLET: 5})
    ledger = EntitlementLedger(store, publisher, clock=clock)
    catalog = CatalogService(store, publisher, LedgerServiceReferences(ledger, store), clock=clock)
    orchestrator = SettlementOrchestrator(
        catalog,
        ledger,
        store,
        wallet,
        confirmation_timeout=confirmation_timeout,
        reconcile_confirmation_timeout=0.05,
        stale_after=stale_after,
    )
    return Harness(
        store=store,
        publisher=publisher,
        clock=clock,
        wallet=wallet,
        catalog=catalog,
        ledger=ledger,
        orchestrator=orchestrator,
        delivery=DeliveryGate(catalog, ledger),
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def wallet() -> FakeWalletLedger:
    return FakeWalletLedger({BUYER_WALLET: 5})


@pytest.fixture
def harness(wallet: FakeWalletLedger, clock: FixedClock) -> Harness:
    return build_harness(wallet=wallet, clock=clock)


@pytest.fixture
def harness_factory() -> Callable[..., Harness]:
    return build_harness

