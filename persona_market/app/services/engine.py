"""Application wiring for the settlement engine."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Dict, Optional
from uuid import uuid4

from ...app_context import get_payment_signer
from ...config import EngineConfig, load_engine_config
from ..broadcast import ChangeBroadcastBus
from ..catalog import CatalogService
from ..delivery import DeliveryGate
from ..entitlements import EntitlementLedger
from ..settlement import InFlightRegistry, SettlementOrchestrator
from ..settlement.service import PaymentAttemptRepository
from ..settlement.worker import ReconciliationWorker
from ..storage import (
    DegradedMode,
    DegradedStoreReconciler,
    FallbackAttemptRepository,
    FallbackCatalogRepository,
    FallbackEntitlementRepository,
    LocalScratchStore,
    PostgresAttemptRepository,
    PostgresCatalogRepository,
    PostgresEntitlementRepository,
)
from ..wallet import AlgodWalletLedger, ConfirmationResult, WalletLedger, WalletLedgerError

logger = logging.getLogger("settlement")


class LedgerServiceReferences:
    """Counts granted entitlements and pending attempts that still name a service."""

    def __init__(self, ledger: EntitlementLedger, attempts: PaymentAttemptRepository) -> None:
        self._ledger = ledger
        self._attempts = attempts

    def count_references(self, service_id: str) -> int:
        pending = self._attempts.list_pending_attempts(service_id=service_id)
        return self._ledger.count_for_service(service_id) + len(pending)


class SandboxWalletLedger(WalletLedger):
    """In-memory ledger for local development; payments confirm immediately."""

    def __init__(self, *, balances: Optional[Dict[str, int]] = None, default_balance: int = 0) -> None:
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = dict(balances or {})
        self._default_balance = default_balance
        self._rounds = 0
        self._transactions: Dict[str, int] = {}

    def set_balance(self, wallet: str, amount: int) -> None:
        with self._lock:
            self._balances[wallet] = amount

    async def get_balance(self, wallet: str) -> int:
        with self._lock:
            return self._balances.get(wallet, self._default_balance)

    async def submit_payment(self, sender: str, receiver: str, amount: int, *, note: bytes = b"") -> str:
        with self._lock:
            available = self._balances.get(sender, self._default_balance)
            if available < amount:
                raise WalletLedgerError("Sandbox wallet has insufficient funds", detail={"wallet": sender})
            self._balances[sender] = available - amount
            self._balances[receiver] = self._balances.get(receiver, self._default_balance) + amount
            self._rounds += 1
            txid = f"SANDBOX{uuid4().hex.upper()}"
            self._transactions[txid] = self._rounds
        logger.info("Sandbox payment %s sender=%s receiver=%s amount=%s", txid, sender, receiver, amount)
        return txid

    async def await_confirmation(self, external_ref: str, timeout: float) -> ConfirmationResult:
        with self._lock:
            confirmed_round = self._transactions.get(external_ref)
        if confirmed_round is None:
            return ConfirmationResult.failed(external_ref, "unknown transaction")
        return ConfirmationResult.confirmed(external_ref, confirmed_round)


@dataclass
class Engine:
    """Every engine component, built once per process."""

    config: EngineConfig
    bus: ChangeBroadcastBus
    catalog: CatalogService
    ledger: EntitlementLedger
    orchestrator: SettlementOrchestrator
    delivery: DeliveryGate
    wallet: WalletLedger
    scratch: LocalScratchStore
    degraded_mode: DegradedMode
    reconciler: Optional[DegradedStoreReconciler]
    worker: ReconciliationWorker


def build_wallet_ledger(config: EngineConfig) -> WalletLedger:
    if config.wallet_mode == "algod":
        return AlgodWalletLedger(
            base_url=config.wallet_ledger_url,
            signer=get_payment_signer(),
            api_token=config.wallet_ledger_token,
            request_timeout=config.wallet_request_timeout,
            poll_interval=config.confirmation_poll_interval,
        )
    return SandboxWalletLedger(balances=config.sandbox_balances, default_balance=config.sandbox_default_balance)


def build_engine(config: EngineConfig, *, wallet: Optional[WalletLedger] = None) -> Engine:
    bus = ChangeBroadcastBus(max_queue_size=config.broadcast_queue_size)
    scratch = LocalScratchStore(config.fallback_store_path)
    mode = DegradedMode()
    reconciler: Optional[DegradedStoreReconciler] = None

    if config.storage_backend == "memory":
        catalog_repository = attempt_repository = entitlement_repository = scratch
    else:
        durable_catalog = PostgresCatalogRepository()
        durable_attempts = PostgresAttemptRepository()
        durable_entitlements = PostgresEntitlementRepository()
        catalog_repository = FallbackCatalogRepository(durable_catalog, scratch, mode)
        attempt_repository = FallbackAttemptRepository(durable_attempts, scratch, mode)
        entitlement_repository = FallbackEntitlementRepository(durable_entitlements, scratch, mode)
        reconciler = DegradedStoreReconciler(
            scratch,
            catalog=durable_catalog,
            attempts=durable_attempts,
            entitlements=durable_entitlements,
            publisher=bus,
        )

    ledger = EntitlementLedger(entitlement_repository, bus)
    catalog = CatalogService(
        catalog_repository,
        bus,
        LedgerServiceReferences(ledger, attempt_repository),
    )
    wallet_ledger = wallet or build_wallet_ledger(config)
    orchestrator = SettlementOrchestrator(
        catalog,
        ledger,
        attempt_repository,
        wallet_ledger,
        registry=InFlightRegistry(),
        confirmation_timeout=config.confirmation_timeout,
        reconcile_confirmation_timeout=config.reconcile_confirmation_timeout,
        stale_after=timedelta(seconds=config.stale_attempt_seconds),
    )
    worker = ReconciliationWorker(orchestrator, reconciler=reconciler, interval=config.reconcile_interval)
    return Engine(
        config=config,
        bus=bus,
        catalog=catalog,
        ledger=ledger,
        orchestrator=orchestrator,
        delivery=DeliveryGate(catalog, ledger),
        wallet=wallet_ledger,
        scratch=scratch,
        degraded_mode=mode,
        reconciler=reconciler,
        worker=worker,
    )


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    config = load_engine_config()
    engine = build_engine(config)
    logger.info(
        "Settlement engine ready storage=%s wallet=%s",
        config.storage_backend,
        config.wallet_mode,
    )
    return engine


__all__ = ["Engine", "LedgerServiceReferences", "SandboxWalletLedger", "build_engine", "get_engine"]
