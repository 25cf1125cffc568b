from __future__ import annotations

import asyncio
import json
import threading
from datetime import timedelta

import pytest

from persona_market.app.entitlements import CapabilityClass
from persona_market.app.errors import (
    AlreadyInProgress,
    AlreadyOwned,
    ExhaustedError,
    InsufficientBalance,
    PaymentFailed,
    PaymentPendingReconciliation,
    ServiceInactive,
    UnresolvedPriorAttempt,
)
from persona_market.app.settlement import PaymentAttempt, PaymentAttemptStatus, ReconciliationOutcome
from persona_market.app.storage import LocalScratchStore
from persona_market.app.wallet import ConfirmationStatus


@pytest.mark.asyncio
async def test_consultation_purchase_grants_single_use(harness) -> None:
    service = harness.create_service(CapabilityClass.CONSULTATION, price=2)

    entitlement = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert entitlement.max_usage == 1
    assert entitlement.usage_count == 0
    assert entitlement.expires_at is None
    assert entitlement.amount_paid_minor_unit == 2

    attempt = harness.store.get_attempt(entitlement.granted_from_attempt_id)
    assert attempt.status == PaymentAttemptStatus.CONFIRMED
    assert attempt.external_ref == "TX1"
    assert attempt.confirmed_round == 1001

    harness.delivery.fetch(service.service_id, "BUYERWALLET")
    with pytest.raises(ExhaustedError):
        harness.delivery.fetch(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_payment_note_references_the_attempt(harness) -> None:
    service = harness.create_service(price=2, name="Career chat")

    entitlement = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    sender, receiver, amount, note = harness.wallet.submissions[0]
    assert (sender, receiver, amount) == ("BUYERWALLET", "SELLERWALLET", 2)
    decoded = json.loads(note.decode("utf-8"))
    assert decoded["attempt_id"] == entitlement.granted_from_attempt_id
    assert decoded["service_id"] == service.service_id
    assert decoded["service_name"] == "Career chat"


@pytest.mark.asyncio
async def test_insufficient_balance_submits_nothing(harness) -> None:
    harness.wallet.balances["BUYERWALLET"] = 1
    service = harness.create_service(price=2)

    with pytest.raises(InsufficientBalance) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert exc_info.value.detail == {"balance": 1, "price_minor_unit": 2}
    assert harness.wallet.submissions == []
    assert harness.store.list_attempts() == []
    assert harness.ledger.get(service.service_id, "BUYERWALLET") is None


@pytest.mark.asyncio
async def test_simultaneous_purchases_grant_exactly_once(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.confirm_delay = 0.05

    results = await asyncio.gather(
        harness.orchestrator.purchase(service.service_id, "BUYERWALLET"),
        harness.orchestrator.purchase(service.service_id, "BUYERWALLET"),
        return_exceptions=True,
    )

    rejected = [result for result in results if isinstance(result, AlreadyInProgress)]
    granted = [result for result in results if not isinstance(result, Exception)]
    assert len(rejected) == 1
    assert len(granted) == 1
    assert len(harness.store.list_entitlements(service_id=service.service_id)) == 1
    assert len(harness.wallet.submissions) == 1
    assert not harness.orchestrator.registry.is_in_flight(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_timed_out_payment_is_reconciled_without_second_charge(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.outcome = ConfirmationStatus.TIMED_OUT

    with pytest.raises(PaymentPendingReconciliation) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    attempt_id = exc_info.value.detail["attempt_id"]
    assert exc_info.value.detail["external_ref"] == "TX1"
    assert harness.store.get_attempt(attempt_id).status == PaymentAttemptStatus.PENDING
    assert harness.ledger.get(service.service_id, "BUYERWALLET") is None

    harness.wallet.outcome = ConfirmationStatus.CONFIRMED
    report = await harness.orchestrator.reconcile_pending()

    assert report.count(ReconciliationOutcome.GRANTED) == 1
    entitlement = harness.ledger.get(service.service_id, "BUYERWALLET")
    assert entitlement.granted_from_attempt_id == attempt_id
    assert report.results[0].entitlement_id == entitlement.entitlement_id
    assert len(harness.wallet.submissions) == 1

    again = await harness.orchestrator.reconcile_pending()
    assert again.results == []


@pytest.mark.asyncio
async def test_pending_attempt_blocks_new_purchase(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.outcome = ConfirmationStatus.TIMED_OUT

    with pytest.raises(PaymentPendingReconciliation):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    with pytest.raises(UnresolvedPriorAttempt):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert len(harness.wallet.submissions) == 1


@pytest.mark.asyncio
async def test_confirmation_lookup_error_leaves_attempt_pending(harness) -> None:
    service = harness.create_service(price=2)

    async def broken(external_ref: str, timeout: float):
        raise RuntimeError("algod unreachable")

    harness.wallet.await_confirmation = broken

    with pytest.raises(PaymentPendingReconciliation) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    attempt = harness.store.get_attempt(exc_info.value.detail["attempt_id"])
    assert attempt.status == PaymentAttemptStatus.PENDING


@pytest.mark.asyncio
async def test_rejected_payment_marks_attempt_failed(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.outcome = ConfirmationStatus.FAILED

    with pytest.raises(PaymentFailed) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    attempt = harness.store.get_attempt(exc_info.value.detail["attempt_id"])
    assert attempt.status == PaymentAttemptStatus.FAILED
    assert attempt.failure_reason == "overspend"
    assert harness.ledger.get(service.service_id, "BUYERWALLET") is None

    harness.wallet.outcome = ConfirmationStatus.CONFIRMED
    entitlement = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    assert entitlement.granted_from_attempt_id != attempt.attempt_id


@pytest.mark.asyncio
async def test_submission_error_fails_attempt(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.submit_error = RuntimeError("node rejected transaction")

    with pytest.raises(PaymentFailed) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    attempt = harness.store.get_attempt(exc_info.value.detail["attempt_id"])
    assert attempt.status == PaymentAttemptStatus.FAILED
    assert attempt.external_ref is None
    assert "node rejected transaction" in attempt.failure_reason


@pytest.mark.asyncio
async def test_balance_lookup_error_creates_no_attempt(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.balance_error = RuntimeError("timeout")

    with pytest.raises(PaymentFailed):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert harness.store.list_attempts() == []


@pytest.mark.asyncio
async def test_inactive_service_cannot_be_purchased(harness) -> None:
    service = harness.create_service(price=2)
    harness.catalog.set_active(service.service_id, False)

    with pytest.raises(ServiceInactive):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    with pytest.raises(ServiceInactive):
        await harness.orchestrator.purchase("svc_missing", "BUYERWALLET")

    assert harness.wallet.submissions == []


@pytest.mark.asyncio
async def test_existing_entitlement_blocks_repurchase(harness) -> None:
    service = harness.create_service(CapabilityClass.CONSULTATION, price=2)
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    harness.delivery.fetch(service.service_id, "BUYERWALLET")

    with pytest.raises(AlreadyOwned):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert len(harness.wallet.submissions) == 1


@pytest.mark.asyncio
async def test_video_call_can_be_bought_again_after_expiry(harness) -> None:
    service = harness.create_service(CapabilityClass.VIDEO_CALL, price=3)
    first = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    assert first.expires_at == first.granted_at + timedelta(days=30)

    with pytest.raises(AlreadyOwned):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    harness.clock.advance(days=31)
    second = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    assert second.entitlement_id != first.entitlement_id
    assert harness.ledger.get(service.service_id, "BUYERWALLET") == second
    assert len(harness.store.list_entitlements(service_id=service.service_id)) == 2


@pytest.mark.asyncio
async def test_price_change_after_purchase_does_not_alter_entitlement(harness) -> None:
    from persona_market.app.catalog import ServicePatch

    service = harness.create_service(price=2)
    entitlement = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    harness.catalog.update_service(service.service_id, ServicePatch(price_minor_unit=4))

    stored = harness.ledger.get(service.service_id, "BUYERWALLET")
    assert stored.amount_paid_minor_unit == 2
    assert stored.entitlement_id == entitlement.entitlement_id


def _unsubmitted_attempt(harness, service) -> PaymentAttempt:
    now = harness.clock()
    return harness.store.save_attempt(
        PaymentAttempt(
            attempt_id="pay_orphan",
            service_id=service.service_id,
            buyer_wallet="BUYERWALLET",
            seller_wallet=service.owner_wallet,
            amount_requested=service.price_minor_unit,
            capability_class=service.capability_class,
            owner_persona_id=service.owner_persona_id,
            created_at=now,
            updated_at=now,
        )
    )


@pytest.mark.asyncio
async def test_unsubmitted_attempt_is_flagged_for_review_once_stale(harness) -> None:
    service = harness.create_service(price=2)
    _unsubmitted_attempt(harness, service)

    fresh = await harness.orchestrator.reconcile_pending()
    assert fresh.count(ReconciliationOutcome.STILL_PENDING) == 1

    harness.clock.advance(minutes=16)
    stale = await harness.orchestrator.reconcile_pending()

    assert stale.count(ReconciliationOutcome.NEEDS_REVIEW) == 1
    assert stale.count(ReconciliationOutcome.FAILED) == 0
    attempt = harness.store.get_attempt("pay_orphan")
    assert attempt.status == PaymentAttemptStatus.PENDING
    assert harness.wallet.confirmation_queries == []
    with pytest.raises(UnresolvedPriorAttempt):
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_reconciliation_skips_pairs_with_purchase_in_flight(harness) -> None:
    service = harness.create_service(price=2)
    _unsubmitted_attempt(harness, service)
    harness.orchestrator.registry.try_acquire(service.service_id, "BUYERWALLET")

    report = await harness.orchestrator.reconcile_pending()

    assert report.count(ReconciliationOutcome.SKIPPED_IN_FLIGHT) == 1
    assert harness.store.get_attempt("pay_orphan").is_unresolved


@pytest.mark.asyncio
async def test_reconciliation_marks_rejected_payment_failed(harness) -> None:
    service = harness.create_service(price=2)
    harness.wallet.outcome = ConfirmationStatus.TIMED_OUT
    with pytest.raises(PaymentPendingReconciliation) as exc_info:
        await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    harness.wallet.outcome = ConfirmationStatus.FAILED
    report = await harness.orchestrator.reconcile_pending()

    assert report.count(ReconciliationOutcome.FAILED) == 1
    assert report.results[0].reason == "overspend"
    attempt = harness.store.get_attempt(exc_info.value.detail["attempt_id"])
    assert attempt.status == PaymentAttemptStatus.FAILED
    assert harness.ledger.get(service.service_id, "BUYERWALLET") is None


class _GatedStore(LocalScratchStore):
    """Holds ``save_attempt`` until the test releases it from the event loop."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()
        self.released = False

    def save_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        self.released = self.released or self.gate.wait(timeout=2)
        return super().save_attempt(attempt)


@pytest.mark.asyncio
async def test_storage_calls_do_not_block_the_event_loop(harness_factory) -> None:
    store = _GatedStore()
    harness = harness_factory(store=store)
    service = harness.create_service(price=2)

    purchase = asyncio.create_task(harness.orchestrator.purchase(service.service_id, "BUYERWALLET"))
    await asyncio.sleep(0.05)
    store.gate.set()
    entitlement = await purchase

    assert store.released is True
    assert entitlement.service_id == service.service_id
