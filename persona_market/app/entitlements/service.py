"""Durable record of what each buyer may do with a purchased service."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..broadcast.bus import ChangePublisher
from ..broadcast.models import ChangeEvent, EntityKind, Mutation
from ..errors import ConflictError, ExhaustedError, ExpiredError, NotFoundError
from .catalog import policy_for
from .models import Entitlement

if TYPE_CHECKING:  # pragma: no cover
    from ..settlement.models import PaymentAttempt

logger = logging.getLogger("entitlements")


class EntitlementRepository(Protocol):
    """Persistence operations required by the ledger."""

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        ...

    def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        ...

    def get_entitlement_by_attempt(self, attempt_id: str) -> Optional[Entitlement]:
        ...

    def find_entitlements(self, service_id: str, buyer_wallet: str) -> Sequence[Entitlement]:
        ...

    def list_entitlements(
        self,
        *,
        buyer_wallet: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> Sequence[Entitlement]:
        ...

    def increment_usage(self, entitlement_id: str, *, now: datetime) -> Optional[Entitlement]:
        """Atomically bump ``usage_count`` if still valid at ``now``; ``None`` otherwise."""


class EntitlementLedger:
    """Grants entitlements, answers access checks, and records consuming uses."""

    def __init__(
        self,
        repository: EntitlementRepository,
        publisher: ChangePublisher,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._publisher = publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def get(self, service_id: str, buyer_wallet: str) -> Optional[Entitlement]:
        """Return the entitlement governing this pair, preferring a valid one."""

        entitlements = sorted(
            self._repository.find_entitlements(service_id, buyer_wallet),
            key=lambda item: item.granted_at,
            reverse=True,
        )
        if not entitlements:
            return None
        now = self._clock()
        for entitlement in entitlements:
            if entitlement.is_valid_at(now):
                return entitlement
        return entitlements[0]

    def get_by_id(self, entitlement_id: str) -> Entitlement:
        entitlement = self._repository.get_entitlement(entitlement_id)
        if entitlement is None:
            raise NotFoundError("Entitlement not found", detail={"entitlement_id": entitlement_id})
        return entitlement

    def find_for_attempt(self, attempt_id: str) -> Optional[Entitlement]:
        return self._repository.get_entitlement_by_attempt(attempt_id)

    def list_for_buyer(self, buyer_wallet: str) -> List[Entitlement]:
        entitlements = self._repository.list_entitlements(buyer_wallet=buyer_wallet)
        return sorted(entitlements, key=lambda item: item.granted_at, reverse=True)

    def count_for_service(self, service_id: str) -> int:
        return len(self._repository.list_entitlements(service_id=service_id))

    def is_valid(self, entitlement: Entitlement, *, at: Optional[datetime] = None) -> bool:
        return entitlement.is_valid_at(at or self._clock())

    def grant_from_attempt(self, attempt: "PaymentAttempt") -> Entitlement:
        """Create the entitlement paid for by a confirmed attempt.

        Terms are copied from the attempt's snapshot of the service, so later
        catalog edits never change what was bought. Granting twice for the
        same attempt returns the original entitlement.
        """

        from ..settlement.models import PaymentAttemptStatus

        if attempt.status != PaymentAttemptStatus.CONFIRMED:
            raise ConflictError(
                "Entitlements can only be granted from confirmed payments",
                detail={"attempt_id": attempt.attempt_id, "status": attempt.status.value},
            )

        existing = self._repository.get_entitlement_by_attempt(attempt.attempt_id)
        if existing is not None:
            return existing

        granted_at = self._clock()
        policy = policy_for(attempt.capability_class)
        entitlement = Entitlement(
            entitlement_id=f"ent_{uuid4().hex}",
            service_id=attempt.service_id,
            persona_id=attempt.owner_persona_id,
            buyer_wallet=attempt.buyer_wallet,
            capability_class=attempt.capability_class,
            usage_count=0,
            max_usage=policy.max_usage,
            expires_at=policy.expires_at_from(granted_at),
            granted_from_attempt_id=attempt.attempt_id,
            amount_paid_minor_unit=attempt.amount_requested,
            granted_at=granted_at,
        )
        stored = self._repository.save_entitlement(entitlement)
        logger.info(
            "Entitlement granted %s service=%s buyer=%s attempt=%s degraded=%s",
            stored.entitlement_id,
            stored.service_id,
            stored.buyer_wallet,
            attempt.attempt_id,
            stored.degraded,
        )
        self._publish(Mutation.CREATED, stored.entitlement_id)
        return stored

    def record_use(self, entitlement_id: str) -> Entitlement:
        now = self._clock()
        updated = self._repository.increment_usage(entitlement_id, now=now)
        if updated is None:
            current = self._repository.get_entitlement(entitlement_id)
            if current is None:
                raise NotFoundError("Entitlement not found", detail={"entitlement_id": entitlement_id})
            if current.is_expired_at(now):
                raise ExpiredError(
                    "Access has expired",
                    detail={"entitlement_id": entitlement_id, "expires_at": current.expires_at.isoformat()},
                )
            raise ExhaustedError(
                "Usage limit reached",
                detail={"entitlement_id": entitlement_id, "max_usage": current.max_usage},
            )

        logger.info(
            "Entitlement use recorded %s usage=%s/%s",
            entitlement_id,
            updated.usage_count,
            updated.max_usage,
        )
        self._publish(Mutation.UPDATED, entitlement_id)
        return updated

    def _publish(self, mutation: Mutation, entitlement_id: str) -> None:
        self._publisher.publish(
            ChangeEvent(
                entity_kind=EntityKind.ENTITLEMENT,
                mutation=mutation,
                entity_id=entitlement_id,
                occurred_at=self._clock(),
            )
        )


__all__ = ["EntitlementLedger", "EntitlementRepository"]
