"""Tagged error kinds surfaced by every engine entry point."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class EngineError(Exception):
    """Base class for all structured engine failures.

    Callers branch on ``code`` (or on the concrete subclass); the HTTP layer
    uses ``status_code`` and ``payload`` to build a response.
    """

    code = "engine_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ValidationError(EngineError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(EngineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(EngineError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class StorageUnavailable(EngineError):
    """Durable storage could not be reached; callers switch to the fallback store."""

    code = "storage_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class SettlementError(EngineError):
    """Base for every failure returned by a purchase attempt."""

    code = "settlement_error"
    status_code = status.HTTP_409_CONFLICT


class AlreadyInProgress(SettlementError):
    code = "already_in_progress"


class UnresolvedPriorAttempt(SettlementError):
    code = "unresolved_prior_attempt"


class ServiceInactive(SettlementError, ConflictError):
    code = "service_inactive"
    status_code = status.HTTP_409_CONFLICT


class AlreadyOwned(SettlementError, ConflictError):
    code = "already_owned"
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(SettlementError):
    code = "insufficient_balance"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentFailed(SettlementError):
    code = "payment_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentPendingReconciliation(SettlementError):
    """The ledger did not confirm in time; the attempt stays open until reconciled."""

    code = "payment_pending_reconciliation"
    status_code = status.HTTP_202_ACCEPTED


class AccessDenied(EngineError):
    code = "access_denied"
    status_code = status.HTTP_403_FORBIDDEN


class ExhaustedError(AccessDenied):
    code = "entitlement_exhausted"


class ExpiredError(AccessDenied):
    code = "entitlement_expired"


__all__ = [
    "AccessDenied",
    "AlreadyInProgress",
    "AlreadyOwned",
    "ConflictError",
    "EngineError",
    "ExhaustedError",
    "ExpiredError",
    "InsufficientBalance",
    "NotFoundError",
    "PaymentFailed",
    "PaymentPendingReconciliation",
    "ServiceInactive",
    "SettlementError",
    "StorageUnavailable",
    "UnresolvedPriorAttempt",
    "ValidationError",
]
