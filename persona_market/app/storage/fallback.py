"""Repositories that switch to the scratch store when durable storage is down."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from ..catalog.models import Service
from ..catalog.service import CatalogRepository
from ..entitlements.models import Entitlement
from ..entitlements.service import EntitlementRepository
from ..errors import StorageUnavailable
from ..settlement.models import PaymentAttempt, PaymentAttemptStatus
from ..settlement.service import PaymentAttemptRepository
from .local import LocalScratchStore

logger = logging.getLogger("storage")

T = TypeVar("T")


class DegradedMode:
    """Tracks whether writes are currently landing in the scratch store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def enter(self, operation: str, exc: Exception) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
        logger.warning(
            "Durable storage unavailable during %s; using local scratch store: %s",
            operation,
            exc,
            extra={"operation": operation},
        )

    def exit(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        logger.warning("Durable storage reachable again; degraded records await merge")


def _overlay(durable: Iterable[T], local: Iterable[T], key: Callable[[T], str]) -> List[T]:
    """Merge two record sets, letting the scratch copy win on the same key."""

    merged: Dict[str, T] = {key(item): item for item in durable}
    for item in local:
        merged[key(item)] = item
    return list(merged.values())


class _FallbackRepository:
    def __init__(self, primary, local: LocalScratchStore, mode: DegradedMode) -> None:
        self._primary = primary
        self._local = local
        self._mode = mode

    def _durable(self, operation: str, call: Callable[[], T]) -> T:
        try:
            result = call()
        except StorageUnavailable as exc:
            self._mode.enter(operation, exc)
            raise
        self._mode.exit()
        return result

    def _durable_or_scratch(
        self,
        operation: str,
        call: Callable[[], Sequence[T]],
        *,
        service_id: Optional[str],
        local: Sequence[T],
    ) -> Sequence[T]:
        """Read durable records; during an outage fall back to scratch where it can answer.

        Scratch answers unscoped reads, reads it holds records for, and reads
        about a service that itself lives in scratch. A read about a durable
        service with nothing in scratch still raises.
        """

        try:
            return self._durable(operation, call)
        except StorageUnavailable:
            if service_id is not None and not local and self._local.get_service(service_id) is None:
                raise
            logger.info("Serving %s from the scratch store", operation)
            return []


class FallbackCatalogRepository(_FallbackRepository):
    """Catalog persistence that keeps accepting writes in degraded mode."""

    def __init__(self, primary: CatalogRepository, local: LocalScratchStore, mode: DegradedMode) -> None:
        super().__init__(primary, local, mode)

    def save_service(self, service: Service) -> Service:
        if self._local.get_service(service.service_id) is None:
            try:
                return self._durable("save_service", lambda: self._primary.save_service(service))
            except StorageUnavailable:
                pass
        return self._local.save_service(service.model_copy(update={"degraded": True}))

    def get_service(self, service_id: str) -> Optional[Service]:
        local = self._local.get_service(service_id)
        if local is not None:
            return local
        return self._durable("get_service", lambda: self._primary.get_service(service_id))

    def list_services(
        self,
        *,
        owner_persona_id: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[Service]:
        local = self._local.list_services(owner_persona_id=owner_persona_id)
        try:
            durable = self._durable(
                "list_services",
                lambda: self._primary.list_services(owner_persona_id=owner_persona_id, active_only=active_only),
            )
        except StorageUnavailable:
            durable = []
        services = _overlay(durable, local, lambda service: service.service_id)
        if active_only:
            services = [service for service in services if service.is_active]
        return sorted(services, key=lambda service: service.created_at, reverse=True)

    def delete_service(self, service_id: str) -> bool:
        removed_locally = self._local.delete_service(service_id)
        try:
            removed = self._durable("delete_service", lambda: self._primary.delete_service(service_id))
        except StorageUnavailable:
            if removed_locally:
                return True
            raise
        return removed or removed_locally


class FallbackAttemptRepository(_FallbackRepository):
    """Attempt persistence; status transitions follow wherever the record lives."""

    def __init__(self, primary: PaymentAttemptRepository, local: LocalScratchStore, mode: DegradedMode) -> None:
        super().__init__(primary, local, mode)

    def save_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        if self._local.get_attempt(attempt.attempt_id) is None:
            try:
                return self._durable("save_attempt", lambda: self._primary.save_attempt(attempt))
            except StorageUnavailable:
                pass
        return self._local.save_attempt(attempt.model_copy(update={"degraded": True}))

    def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        local = self._local.get_attempt(attempt_id)
        if local is not None:
            return local
        return self._durable("get_attempt", lambda: self._primary.get_attempt(attempt_id))

    def record_submission(self, attempt_id: str, external_ref: str, *, now: datetime) -> Optional[PaymentAttempt]:
        if self._local.get_attempt(attempt_id) is not None:
            recorded = self._local.record_submission(attempt_id, external_ref, now=now)
            # A concurrent merge may have moved the record to durable storage.
            if recorded is not None or self._local.get_attempt(attempt_id) is not None:
                return recorded
        return self._durable(
            "record_submission",
            lambda: self._primary.record_submission(attempt_id, external_ref, now=now),
        )

    def resolve_attempt(
        self,
        attempt_id: str,
        *,
        status: PaymentAttemptStatus,
        now: datetime,
        confirmed_round: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        if self._local.get_attempt(attempt_id) is not None:
            resolved = self._local.resolve_attempt(
                attempt_id,
                status=status,
                now=now,
                confirmed_round=confirmed_round,
                failure_reason=failure_reason,
            )
            if resolved is not None or self._local.get_attempt(attempt_id) is not None:
                return resolved
        return self._durable(
            "resolve_attempt",
            lambda: self._primary.resolve_attempt(
                attempt_id,
                status=status,
                now=now,
                confirmed_round=confirmed_round,
                failure_reason=failure_reason,
            ),
        )

    def list_pending_attempts(
        self,
        *,
        service_id: Optional[str] = None,
        buyer_wallet: Optional[str] = None,
    ) -> Sequence[PaymentAttempt]:
        local = [
            attempt
            for attempt in self._local.list_attempts()
            if (service_id is None or attempt.service_id == service_id)
            and (buyer_wallet is None or attempt.buyer_wallet == buyer_wallet)
        ]
        durable = self._durable_or_scratch(
            "list_pending_attempts",
            lambda: self._primary.list_pending_attempts(service_id=service_id, buyer_wallet=buyer_wallet),
            service_id=service_id,
            local=local,
        )
        attempts = _overlay(durable, local, lambda attempt: attempt.attempt_id)
        return sorted(
            (attempt for attempt in attempts if attempt.is_unresolved),
            key=lambda attempt: attempt.created_at,
        )


class FallbackEntitlementRepository(_FallbackRepository):
    """Entitlement persistence; usage increments stay atomic in either store."""

    def __init__(self, primary: EntitlementRepository, local: LocalScratchStore, mode: DegradedMode) -> None:
        super().__init__(primary, local, mode)

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        # An entitlement stays with its attempt until both are merged.
        attempt_is_local = self._local.get_attempt(entitlement.granted_from_attempt_id) is not None
        if not attempt_is_local and self._local.get_entitlement(entitlement.entitlement_id) is None:
            try:
                return self._durable("save_entitlement", lambda: self._primary.save_entitlement(entitlement))
            except StorageUnavailable:
                pass
        return self._local.save_entitlement(entitlement.model_copy(update={"degraded": True}))

    def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        local = self._local.get_entitlement(entitlement_id)
        if local is not None:
            return local
        return self._durable("get_entitlement", lambda: self._primary.get_entitlement(entitlement_id))

    def get_entitlement_by_attempt(self, attempt_id: str) -> Optional[Entitlement]:
        local = self._local.get_entitlement_by_attempt(attempt_id)
        if local is not None:
            return local
        if self._local.get_attempt(attempt_id) is not None:
            return None
        return self._durable(
            "get_entitlement_by_attempt",
            lambda: self._primary.get_entitlement_by_attempt(attempt_id),
        )

    def find_entitlements(self, service_id: str, buyer_wallet: str) -> Sequence[Entitlement]:
        return self.list_entitlements(service_id=service_id, buyer_wallet=buyer_wallet)

    def list_entitlements(
        self,
        *,
        buyer_wallet: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> Sequence[Entitlement]:
        local = self._local.list_entitlements(buyer_wallet=buyer_wallet, service_id=service_id)
        durable = self._durable_or_scratch(
            "list_entitlements",
            lambda: self._primary.list_entitlements(buyer_wallet=buyer_wallet, service_id=service_id),
            service_id=service_id,
            local=local,
        )
        entitlements = _overlay(durable, local, lambda item: item.entitlement_id)
        return sorted(entitlements, key=lambda item: item.granted_at, reverse=True)

    def increment_usage(self, entitlement_id: str, *, now: datetime) -> Optional[Entitlement]:
        if self._local.get_entitlement(entitlement_id) is not None:
            updated = self._local.increment_usage(entitlement_id, now=now)
            if updated is not None or self._local.get_entitlement(entitlement_id) is not None:
                return updated
        return self._durable(
            "increment_usage",
            lambda: self._primary.increment_usage(entitlement_id, now=now),
        )


__all__ = [
    "DegradedMode",
    "FallbackAttemptRepository",
    "FallbackCatalogRepository",
    "FallbackEntitlementRepository",
]
