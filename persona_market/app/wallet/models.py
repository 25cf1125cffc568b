"""Results reported by the wallet ledger network."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ConfirmationStatus(str, Enum):
    """Outcome of waiting on a submitted payment.

    ``TIMED_OUT`` is not a failure: the payment may still land and must be
    reconciled before the buyer is charged again.
    """

    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ConfirmationResult(BaseModel):
    status: ConfirmationStatus
    external_ref: str
    confirmed_round: Optional[int] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def confirmed(cls, external_ref: str, confirmed_round: Optional[int] = None) -> "ConfirmationResult":
        return cls(status=ConfirmationStatus.CONFIRMED, external_ref=external_ref, confirmed_round=confirmed_round)

    @classmethod
    def failed(cls, external_ref: str, reason: str) -> "ConfirmationResult":
        return cls(status=ConfirmationStatus.FAILED, external_ref=external_ref, reason=reason)

    @classmethod
    def timed_out(cls, external_ref: str) -> "ConfirmationResult":
        return cls(
            status=ConfirmationStatus.TIMED_OUT,
            external_ref=external_ref,
            reason="confirmation not observed before timeout",
        )
