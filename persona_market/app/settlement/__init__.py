"""Purchase settlement orchestration and payment attempt records."""

from .locks import InFlightRegistry
from .models import (
    AttemptReconciliation,
    PaymentAttempt,
    PaymentAttemptStatus,
    ReconciliationOutcome,
    ReconciliationReport,
    SettlementState,
)
from .service import PaymentAttemptRepository, SettlementOrchestrator

__all__ = [
    "AttemptReconciliation",
    "InFlightRegistry",
    "PaymentAttempt",
    "PaymentAttemptRepository",
    "PaymentAttemptStatus",
    "ReconciliationOutcome",
    "ReconciliationReport",
    "SettlementOrchestrator",
    "SettlementState",
]
