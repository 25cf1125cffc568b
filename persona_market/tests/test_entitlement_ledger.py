from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from persona_market.app.entitlements import CapabilityClass, Entitlement, EntitlementPolicy, policy_for
from persona_market.app.errors import ConflictError, ExhaustedError, ExpiredError, NotFoundError
from persona_market.app.settlement import PaymentAttempt, PaymentAttemptStatus


def _attempt(
    capability_class: CapabilityClass = CapabilityClass.CONSULTATION,
    *,
    attempt_id: str = "pay_1",
    status: PaymentAttemptStatus = PaymentAttemptStatus.CONFIRMED,
) -> PaymentAttempt:
    return PaymentAttempt(
        attempt_id=attempt_id,
        service_id="svc_1",
        buyer_wallet="BUYERWALLET",
        seller_wallet="SELLERWALLET",
        amount_requested=2,
        capability_class=capability_class,
        owner_persona_id="persona-1",
        status=status,
        external_ref="TX1",
    )


def test_policy_table_matches_capability_classes() -> None:
    assert policy_for(CapabilityClass.CONSULTATION) == EntitlementPolicy(max_usage=1)
    assert policy_for(CapabilityClass.VIDEO_CALL) == EntitlementPolicy(access_days=30, repeatable=True)
    for capability_class in (CapabilityClass.CONTENT_DELIVERY, CapabilityClass.VOICE_MESSAGE, CapabilityClass.CUSTOM):
        policy = policy_for(capability_class)
        assert policy.max_usage is None
        assert policy.access_days is None


def test_grant_copies_policy_terms(harness) -> None:
    entitlement = harness.ledger.grant_from_attempt(_attempt(CapabilityClass.VIDEO_CALL))

    assert entitlement.max_usage is None
    assert entitlement.expires_at == harness.clock() + timedelta(days=30)
    assert entitlement.persona_id == "persona-1"
    assert entitlement.amount_paid_minor_unit == 2
    assert harness.publisher.kinds() == [("entitlement", "created")]


def test_grant_is_idempotent_per_attempt(harness) -> None:
    first = harness.ledger.grant_from_attempt(_attempt())
    second = harness.ledger.grant_from_attempt(_attempt())

    assert first == second
    assert len(harness.store.list_entitlements()) == 1
    assert len(harness.publisher.events) == 1


@pytest.mark.parametrize("status", [PaymentAttemptStatus.PENDING, PaymentAttemptStatus.FAILED])
def test_grant_requires_confirmed_attempt(harness, status: PaymentAttemptStatus) -> None:
    with pytest.raises(ConflictError):
        harness.ledger.grant_from_attempt(_attempt(status=status))

    assert harness.store.list_entitlements() == []


def test_record_use_stops_at_cap(harness) -> None:
    entitlement = harness.ledger.grant_from_attempt(_attempt())

    used = harness.ledger.record_use(entitlement.entitlement_id)
    assert used.usage_count == 1
    assert harness.ledger.is_valid(used) is False

    with pytest.raises(ExhaustedError):
        harness.ledger.record_use(entitlement.entitlement_id)
    assert harness.ledger.get_by_id(entitlement.entitlement_id).usage_count == 1


def test_record_use_is_atomic_under_contention(harness) -> None:
    entitlement = harness.ledger.grant_from_attempt(_attempt())
    barrier = threading.Barrier(8)
    successes = []
    failures = []

    def use() -> None:
        barrier.wait()
        try:
            successes.append(harness.ledger.record_use(entitlement.entitlement_id))
        except ExhaustedError as exc:
            failures.append(exc)

    threads = [threading.Thread(target=use) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 1
    assert len(failures) == 7
    assert harness.ledger.get_by_id(entitlement.entitlement_id).usage_count == 1


def test_expiry_is_evaluated_at_read_time(harness) -> None:
    entitlement = harness.ledger.grant_from_attempt(_attempt(CapabilityClass.VIDEO_CALL))
    assert harness.ledger.is_valid(entitlement)

    harness.clock.advance(days=30)

    stored = harness.ledger.get_by_id(entitlement.entitlement_id)
    assert stored == entitlement
    assert harness.ledger.is_valid(stored) is False
    assert harness.ledger.is_valid(stored, at=entitlement.granted_at) is True
    with pytest.raises(ExpiredError):
        harness.ledger.record_use(entitlement.entitlement_id)


def test_get_prefers_valid_entitlement(harness) -> None:
    expired = harness.ledger.grant_from_attempt(_attempt(CapabilityClass.VIDEO_CALL, attempt_id="pay_old"))
    harness.clock.advance(days=45)
    current = harness.ledger.grant_from_attempt(_attempt(CapabilityClass.VIDEO_CALL, attempt_id="pay_new"))

    assert harness.ledger.get("svc_1", "BUYERWALLET") == current
    assert [item.entitlement_id for item in harness.ledger.list_for_buyer("BUYERWALLET")] == [
        current.entitlement_id,
        expired.entitlement_id,
    ]
    assert harness.ledger.count_for_service("svc_1") == 2
    assert harness.ledger.find_for_attempt("pay_old") == expired


def test_unknown_entitlement_raises_not_found(harness) -> None:
    with pytest.raises(NotFoundError):
        harness.ledger.get_by_id("ent_missing")
    with pytest.raises(NotFoundError):
        harness.ledger.record_use("ent_missing")


def test_entitlement_rejects_usage_above_cap() -> None:
    with pytest.raises(ValueError):
        Entitlement(
            entitlement_id="ent_1",
            service_id="svc_1",
            persona_id="persona-1",
            buyer_wallet="BUYERWALLET",
            capability_class=CapabilityClass.CONSULTATION,
            usage_count=2,
            max_usage=1,
            granted_from_attempt_id="pay_1",
            granted_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
