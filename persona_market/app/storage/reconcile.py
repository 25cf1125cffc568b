"""Moves records written in degraded mode back into durable storage."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..broadcast.bus import ChangePublisher
from ..broadcast.models import ChangeEvent, EntityKind, Mutation
from ..catalog.service import CatalogRepository
from ..entitlements.service import EntitlementRepository
from ..errors import StorageUnavailable
from ..settlement.service import PaymentAttemptRepository
from .local import LocalScratchStore

logger = logging.getLogger("storage")


class MergeReport(BaseModel):
    """Counts of records moved by one merge run."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    services: int = 0
    attempts: int = 0
    entitlements: int = 0
    remaining: int = 0
    interrupted: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def merged(self) -> int:
        return self.services + self.attempts + self.entitlements


class DegradedStoreReconciler:
    """Upserts scratch records into durable storage by primary key.

    Records leave the scratch store only after the durable write succeeded,
    so an outage mid-merge loses nothing and a rerun never duplicates.
    A record that changed in scratch while it was being written stays there
    and is written again by the next run. Services go first and entitlements
    last so references resolve.
    """

    def __init__(
        self,
        local: LocalScratchStore,
        *,
        catalog: CatalogRepository,
        attempts: PaymentAttemptRepository,
        entitlements: EntitlementRepository,
        publisher: ChangePublisher,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._local = local
        self._catalog = catalog
        self._attempts = attempts
        self._entitlements = entitlements
        self._publisher = publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def merge(self) -> MergeReport:
        started_at = self._clock()
        counts = {"services": 0, "attempts": 0, "entitlements": 0}
        interrupted = False
        try:
            for service in self._local.list_services():
                self._catalog.save_service(service.model_copy(update={"degraded": False}))
                if self._local.discard_service(service.service_id, expected=service):
                    counts["services"] += 1
                    self._publish(EntityKind.SERVICE, service.service_id)

            for attempt in self._local.list_attempts():
                self._attempts.save_attempt(attempt.model_copy(update={"degraded": False}))
                if self._local.discard_attempt(attempt.attempt_id, expected=attempt):
                    counts["attempts"] += 1

            for entitlement in self._local.list_entitlements():
                self._entitlements.save_entitlement(entitlement.model_copy(update={"degraded": False}))
                if self._local.discard_entitlement(entitlement.entitlement_id, expected=entitlement):
                    counts["entitlements"] += 1
                    self._publish(EntityKind.ENTITLEMENT, entitlement.entitlement_id)
        except StorageUnavailable as exc:
            interrupted = True
            logger.warning("Merge of degraded records interrupted: %s", exc)

        report = MergeReport(
            started_at=started_at,
            remaining=self._local.record_count(),
            interrupted=interrupted,
            **counts,
        )
        if report.merged:
            logger.info(
                "Merged degraded records services=%s attempts=%s entitlements=%s remaining=%s",
                report.services,
                report.attempts,
                report.entitlements,
                report.remaining,
            )
        return report

    def _publish(self, kind: EntityKind, entity_id: str) -> None:
        self._publisher.publish(
            ChangeEvent(entity_kind=kind, mutation=Mutation.UPDATED, entity_id=entity_id, occurred_at=self._clock())
        )


__all__ = ["DegradedStoreReconciler", "MergeReport"]
