"""Domain models for purchase attempts and their settlement."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import CapabilityClass


class PaymentAttemptStatus(str, Enum):
    """Lifecycle of a single funding attempt; leaves PENDING exactly once."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SettlementState(str, Enum):
    """Progress markers of one purchase, used for logging and audit."""

    INITIATED = "initiated"
    BALANCE_CHECKED = "balance_checked"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    GRANTED = "granted"


class PaymentAttempt(BaseModel):
    """A buyer's try at funding one purchase, persisted before submission."""

    attempt_id: str
    service_id: str
    buyer_wallet: str
    seller_wallet: str
    amount_requested: int = Field(gt=0)
    capability_class: CapabilityClass
    owner_persona_id: str
    status: PaymentAttemptStatus = PaymentAttemptStatus.PENDING
    external_ref: Optional[str] = None
    confirmed_round: Optional[int] = None
    failure_reason: Optional[str] = None
    degraded: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_unresolved(self) -> bool:
        return self.status == PaymentAttemptStatus.PENDING

    @property
    def pair(self) -> tuple[str, str]:
        return (self.service_id, self.buyer_wallet)


class ReconciliationOutcome(str, Enum):
    GRANTED = "granted"
    FAILED = "failed"
    STILL_PENDING = "still_pending"
    NEEDS_REVIEW = "needs_review"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"


class AttemptReconciliation(BaseModel):
    attempt_id: str
    outcome: ReconciliationOutcome
    entitlement_id: Optional[str] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation pass over unresolved attempts."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    results: List[AttemptReconciliation] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def count(self, outcome: ReconciliationOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)
