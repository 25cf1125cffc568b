"""Process-local scratch store used while durable storage is unreachable."""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..catalog.models import Service
from ..entitlements.models import Entitlement
from ..settlement.models import PaymentAttempt, PaymentAttemptStatus

logger = logging.getLogger("storage")


class LocalScratchStore:
    """In-memory catalog, attempt and entitlement records keyed like the database.

    Every mutation happens under one lock, so the conditional updates are
    compare-and-set operations. When ``mirror_path`` is given the contents
    are rewritten to that JSON file after each mutation and reloaded on start.
    """

    def __init__(self, mirror_path: Optional[Union[str, Path]] = None) -> None:
        self._lock = threading.RLock()
        self._services: Dict[str, Service] = {}
        self._attempts: Dict[str, PaymentAttempt] = {}
        self._entitlements: Dict[str, Entitlement] = {}
        self._mirror_path = Path(mirror_path) if mirror_path else None
        if self._mirror_path is not None and self._mirror_path.exists():
            self._load()

    # Catalog ----------------------------------------------------------------
    def save_service(self, service: Service) -> Service:
        with self._lock:
            self._services[service.service_id] = service
            self._flush()
        return service

    def get_service(self, service_id: str) -> Optional[Service]:
        with self._lock:
            return self._services.get(service_id)

    def list_services(
        self,
        *,
        owner_persona_id: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[Service]:
        with self._lock:
            services = list(self._services.values())
        if owner_persona_id is not None:
            services = [service for service in services if service.owner_persona_id == owner_persona_id]
        if active_only:
            services = [service for service in services if service.is_active]
        return sorted(services, key=lambda service: service.created_at, reverse=True)

    def delete_service(self, service_id: str) -> bool:
        with self._lock:
            removed = self._services.pop(service_id, None) is not None
            if removed:
                self._flush()
        return removed

    # Payment attempts -------------------------------------------------------
    def save_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        with self._lock:
            self._attempts[attempt.attempt_id] = attempt
            self._flush()
        return attempt

    def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        with self._lock:
            return self._attempts.get(attempt_id)

    def record_submission(self, attempt_id: str, external_ref: str, *, now: datetime) -> Optional[PaymentAttempt]:
        with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None or current.status != PaymentAttemptStatus.PENDING:
                return None
            updated = current.model_copy(update={"external_ref": external_ref, "updated_at": now})
            self._attempts[attempt_id] = updated
            self._flush()
            return updated

    def resolve_attempt(
        self,
        attempt_id: str,
        *,
        status: PaymentAttemptStatus,
        now: datetime,
        confirmed_round: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None or current.status != PaymentAttemptStatus.PENDING:
                return None
            updated = current.model_copy(
                update={
                    "status": status,
                    "confirmed_round": confirmed_round,
                    "failure_reason": failure_reason,
                    "updated_at": now,
                }
            )
            self._attempts[attempt_id] = updated
            self._flush()
            return updated

    def list_pending_attempts(
        self,
        *,
        service_id: Optional[str] = None,
        buyer_wallet: Optional[str] = None,
    ) -> Sequence[PaymentAttempt]:
        with self._lock:
            attempts = [attempt for attempt in self._attempts.values() if attempt.is_unresolved]
        if service_id is not None:
            attempts = [attempt for attempt in attempts if attempt.service_id == service_id]
        if buyer_wallet is not None:
            attempts = [attempt for attempt in attempts if attempt.buyer_wallet == buyer_wallet]
        return sorted(attempts, key=lambda attempt: attempt.created_at)

    def list_attempts(self) -> Sequence[PaymentAttempt]:
        with self._lock:
            return sorted(self._attempts.values(), key=lambda attempt: attempt.created_at)

    # Entitlements -----------------------------------------------------------
    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        with self._lock:
            for existing in self._entitlements.values():
                if (
                    existing.granted_from_attempt_id == entitlement.granted_from_attempt_id
                    and existing.entitlement_id != entitlement.entitlement_id
                ):
                    return existing
            self._entitlements[entitlement.entitlement_id] = entitlement
            self._flush()
        return entitlement

    def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        with self._lock:
            return self._entitlements.get(entitlement_id)

    def get_entitlement_by_attempt(self, attempt_id: str) -> Optional[Entitlement]:
        with self._lock:
            for entitlement in self._entitlements.values():
                if entitlement.granted_from_attempt_id == attempt_id:
                    return entitlement
        return None

    def find_entitlements(self, service_id: str, buyer_wallet: str) -> Sequence[Entitlement]:
        return self.list_entitlements(service_id=service_id, buyer_wallet=buyer_wallet)

    def list_entitlements(
        self,
        *,
        buyer_wallet: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> Sequence[Entitlement]:
        with self._lock:
            entitlements = list(self._entitlements.values())
        if buyer_wallet is not None:
            entitlements = [item for item in entitlements if item.buyer_wallet == buyer_wallet]
        if service_id is not None:
            entitlements = [item for item in entitlements if item.service_id == service_id]
        return sorted(entitlements, key=lambda item: item.granted_at, reverse=True)

    def increment_usage(self, entitlement_id: str, *, now: datetime) -> Optional[Entitlement]:
        with self._lock:
            current = self._entitlements.get(entitlement_id)
            if current is None or not current.is_valid_at(now):
                return None
            updated = current.model_copy(update={"usage_count": current.usage_count + 1})
            self._entitlements[entitlement_id] = updated
            self._flush()
            return updated

    # Merge support ----------------------------------------------------------
    # A discard given ``expected`` only removes the record if it still equals
    # that snapshot; a record changed mid-merge stays for the next run.
    def discard_service(self, service_id: str, expected: Optional[Service] = None) -> bool:
        with self._lock:
            current = self._services.get(service_id)
            if current is None or (expected is not None and current != expected):
                return False
            del self._services[service_id]
            self._flush()
            return True

    def discard_attempt(self, attempt_id: str, expected: Optional[PaymentAttempt] = None) -> bool:
        with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None or (expected is not None and current != expected):
                return False
            del self._attempts[attempt_id]
            self._flush()
            return True

    def discard_entitlement(self, entitlement_id: str, expected: Optional[Entitlement] = None) -> bool:
        with self._lock:
            current = self._entitlements.get(entitlement_id)
            if current is None or (expected is not None and current != expected):
                return False
            del self._entitlements[entitlement_id]
            self._flush()
            return True

    def record_count(self) -> int:
        with self._lock:
            return len(self._services) + len(self._attempts) + len(self._entitlements)

    # Mirror -----------------------------------------------------------------
    def _flush(self) -> None:
        if self._mirror_path is None:
            return
        document = {
            "services": [item.model_dump(mode="json") for item in self._services.values()],
            "attempts": [item.model_dump(mode="json") for item in self._attempts.values()],
            "entitlements": [item.model_dump(mode="json") for item in self._entitlements.values()],
        }
        self._mirror_path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._mirror_path.with_suffix(self._mirror_path.suffix + ".tmp")
        staging.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(staging, self._mirror_path)

    def _load(self) -> None:
        if self._mirror_path is None:
            return
        try:
            document = json.loads(self._mirror_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("Unable to read scratch store mirror %s", self._mirror_path)
            return

        services: List[Service] = [Service.model_validate(item) for item in document.get("services", [])]
        attempts = [PaymentAttempt.model_validate(item) for item in document.get("attempts", [])]
        entitlements = [Entitlement.model_validate(item) for item in document.get("entitlements", [])]
        self._services = {item.service_id: item for item in services}
        self._attempts = {item.attempt_id: item for item in attempts}
        self._entitlements = {item.entitlement_id: item for item in entitlements}
        if self.record_count():
            logger.warning(
                "Loaded %s unmerged records from scratch store mirror %s",
                self.record_count(),
                self._mirror_path,
            )


__all__ = ["LocalScratchStore"]
