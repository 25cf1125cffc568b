"""API schemas for purchase, entitlement, delivery and reconciliation endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..catalog import PayloadKind
from ..delivery import DeliveredPayload
from ..entitlements import CapabilityClass, Entitlement
from ..settlement import ReconciliationOutcome, ReconciliationReport
from ..storage import MergeReport


class PurchaseRequest(BaseModel):
    service_id: str = Field(alias="serviceId", min_length=1)
    buyer_wallet: str = Field(alias="buyerWallet", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class DeliveryRequest(BaseModel):
    buyer_wallet: str = Field(alias="buyerWallet", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class EntitlementResponse(BaseModel):
    entitlement_id: str = Field(alias="entitlementId")
    service_id: str = Field(alias="serviceId")
    persona_id: str = Field(alias="personaId")
    buyer_wallet: str = Field(alias="buyerWallet")
    capability_class: CapabilityClass = Field(alias="capabilityClass")
    usage_count: int = Field(alias="usageCount")
    max_usage: Optional[int] = Field(default=None, alias="maxUsage")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    granted_from_attempt_id: str = Field(alias="grantedFromAttemptId")
    amount_paid_minor_unit: int = Field(alias="amountPaidMinorUnit")
    granted_at: datetime = Field(alias="grantedAt")
    is_valid: bool = Field(alias="isValid")
    degraded: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement, *, now: datetime) -> "EntitlementResponse":
        return cls(
            entitlement_id=entitlement.entitlement_id,
            service_id=entitlement.service_id,
            persona_id=entitlement.persona_id,
            buyer_wallet=entitlement.buyer_wallet,
            capability_class=entitlement.capability_class,
            usage_count=entitlement.usage_count,
            max_usage=entitlement.max_usage,
            expires_at=entitlement.expires_at,
            granted_from_attempt_id=entitlement.granted_from_attempt_id,
            amount_paid_minor_unit=entitlement.amount_paid_minor_unit,
            granted_at=entitlement.granted_at,
            is_valid=entitlement.is_valid_at(now),
            degraded=entitlement.degraded,
        )


class EntitlementListResponse(BaseModel):
    entitlements: List[EntitlementResponse]

    model_config = ConfigDict(populate_by_name=True)


class DeliveredPayloadResponse(BaseModel):
    service_id: str = Field(alias="serviceId")
    entitlement_id: str = Field(alias="entitlementId")
    kind: PayloadKind
    content: str
    file_type: Optional[str] = Field(default=None, alias="fileType")
    usage_count: int = Field(alias="usageCount")
    max_usage: Optional[int] = Field(default=None, alias="maxUsage")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payload(cls, payload: DeliveredPayload) -> "DeliveredPayloadResponse":
        return cls(**payload.model_dump())


class PurchaseResponse(BaseModel):
    entitlement: EntitlementResponse
    delivery: Optional[DeliveredPayloadResponse] = None

    model_config = ConfigDict(populate_by_name=True)


class AttemptReconciliationResponse(BaseModel):
    attempt_id: str = Field(alias="attemptId")
    outcome: ReconciliationOutcome
    entitlement_id: Optional[str] = Field(default=None, alias="entitlementId")
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ReconciliationResponse(BaseModel):
    started_at: datetime = Field(alias="startedAt")
    granted: int
    failed: int
    still_pending: int = Field(alias="stillPending")
    needs_review: int = Field(alias="needsReview")
    skipped_in_flight: int = Field(alias="skippedInFlight")
    results: List[AttemptReconciliationResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "ReconciliationResponse":
        return cls(
            started_at=report.started_at,
            granted=report.count(ReconciliationOutcome.GRANTED),
            failed=report.count(ReconciliationOutcome.FAILED),
            still_pending=report.count(ReconciliationOutcome.STILL_PENDING),
            needs_review=report.count(ReconciliationOutcome.NEEDS_REVIEW),
            skipped_in_flight=report.count(ReconciliationOutcome.SKIPPED_IN_FLIGHT),
            results=[AttemptReconciliationResponse(**result.model_dump()) for result in report.results],
        )


class MergeResponse(BaseModel):
    started_at: datetime = Field(alias="startedAt")
    services: int
    attempts: int
    entitlements: int
    remaining: int
    interrupted: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: MergeReport) -> "MergeResponse":
        return cls(**report.model_dump())


__all__ = [
    "DeliveredPayloadResponse",
    "DeliveryRequest",
    "EntitlementListResponse",
    "EntitlementResponse",
    "MergeResponse",
    "PurchaseRequest",
    "PurchaseResponse",
    "ReconciliationResponse",
]
