"""API schemas for catalog endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..catalog import PayloadDescriptor, PayloadKind, Service, ServicePatch, ServiceSpec
from ..entitlements import CAPABILITY_CATALOG, CapabilityClass
from ..wallet.pricing import estimate_fiat, to_minor_units


class PayloadSchema(BaseModel):
    kind: PayloadKind
    content: str = Field(min_length=1)
    file_type: Optional[str] = Field(default=None, alias="fileType")

    model_config = ConfigDict(populate_by_name=True)

    def to_descriptor(self) -> PayloadDescriptor:
        return PayloadDescriptor(kind=self.kind, content=self.content, file_type=self.file_type)


class _PriceInput(BaseModel):
    """Accepts a price either in minor units or in whole units."""

    price_minor_unit: Optional[int] = Field(default=None, alias="priceMinorUnit")
    price: Optional[Decimal] = Field(default=None, description="Price in whole ledger units")

    model_config = ConfigDict(populate_by_name=True)

    def resolved_price(self, minor_units_per_unit: int) -> Optional[int]:
        if self.price_minor_unit is not None:
            return self.price_minor_unit
        if self.price is not None:
            return to_minor_units(self.price, minor_units_per_unit=minor_units_per_unit)
        return None


class ServiceCreateRequest(_PriceInput):
    owner_persona_id: str = Field(alias="ownerPersonaId")
    owner_wallet: str = Field(alias="ownerWallet")
    name: str
    description: str = ""
    capability_class: CapabilityClass = Field(alias="capabilityClass")
    payload: Optional[PayloadSchema] = None
    auto_deliver: bool = Field(default=False, alias="autoDeliver")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    is_active: bool = Field(default=True, alias="isActive")

    @model_validator(mode="after")
    def _price_required(self) -> "ServiceCreateRequest":
        if self.price_minor_unit is None and self.price is None:
            raise ValueError("priceMinorUnit or price is required")
        return self

    def to_spec(self, *, minor_units_per_unit: int) -> ServiceSpec:
        return ServiceSpec(
            owner_persona_id=self.owner_persona_id,
            owner_wallet=self.owner_wallet,
            name=self.name,
            description=self.description,
            price_minor_unit=self.resolved_price(minor_units_per_unit) or 0,
            capability_class=self.capability_class,
            payload=self.payload.to_descriptor() if self.payload else None,
            auto_deliver=self.auto_deliver,
            duration_minutes=self.duration_minutes,
            is_active=self.is_active,
        )


class ServiceUpdateRequest(_PriceInput):
    name: Optional[str] = None
    description: Optional[str] = None
    payload: Optional[PayloadSchema] = None
    clear_payload: bool = Field(default=False, alias="clearPayload")
    auto_deliver: Optional[bool] = Field(default=None, alias="autoDeliver")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    def to_patch(self, *, minor_units_per_unit: int) -> ServicePatch:
        updates = {
            "name": self.name,
            "description": self.description,
            "price_minor_unit": self.resolved_price(minor_units_per_unit),
            "payload": self.payload.to_descriptor() if self.payload else None,
            "auto_deliver": self.auto_deliver,
            "duration_minutes": self.duration_minutes,
            "is_active": self.is_active,
        }
        patch = {key: value for key, value in updates.items() if value is not None}
        if "duration_minutes" in self.model_fields_set:
            patch["duration_minutes"] = self.duration_minutes
        if self.clear_payload:
            patch["clear_payload"] = True
        return ServicePatch(**patch)


class SetActiveRequest(BaseModel):
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class ServiceResponse(BaseModel):
    service_id: str = Field(alias="serviceId")
    owner_persona_id: str = Field(alias="ownerPersonaId")
    owner_wallet: str = Field(alias="ownerWallet")
    name: str
    description: str
    price_minor_unit: int = Field(alias="priceMinorUnit")
    price_fiat_estimate: Decimal = Field(alias="priceFiatEstimate")
    fiat_currency: str = Field(alias="fiatCurrency")
    capability_class: CapabilityClass = Field(alias="capabilityClass")
    payload_kind: Optional[PayloadKind] = Field(default=None, alias="payloadKind")
    auto_deliver: bool = Field(alias="autoDeliver")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    is_active: bool = Field(alias="isActive")
    tombstoned: bool
    degraded: bool
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_service(
        cls,
        service: Service,
        *,
        fiat_rate: Decimal,
        fiat_currency: str,
        minor_units_per_unit: int,
    ) -> "ServiceResponse":
        """Describe a service; payload content is only released by the delivery gate."""

        return cls(
            service_id=service.service_id,
            owner_persona_id=service.owner_persona_id,
            owner_wallet=service.owner_wallet,
            name=service.name,
            description=service.description,
            price_minor_unit=service.price_minor_unit,
            price_fiat_estimate=estimate_fiat(
                service.price_minor_unit,
                rate=fiat_rate,
                minor_units_per_unit=minor_units_per_unit,
            ),
            fiat_currency=fiat_currency,
            capability_class=service.capability_class,
            payload_kind=service.payload.kind if service.payload else None,
            auto_deliver=service.auto_deliver,
            duration_minutes=service.duration_minutes,
            is_active=service.is_active,
            tombstoned=service.tombstoned,
            degraded=service.degraded,
            created_at=service.created_at,
            updated_at=service.updated_at,
        )


class ServiceListResponse(BaseModel):
    services: List[ServiceResponse]

    model_config = ConfigDict(populate_by_name=True)


class CapabilityResponse(BaseModel):
    capability_class: CapabilityClass = Field(alias="capabilityClass")
    label: str
    description: str
    suggested_price_fiat: int = Field(alias="suggestedPriceFiat")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    delivery_bearing: bool = Field(alias="deliveryBearing")
    max_usage: Optional[int] = Field(default=None, alias="maxUsage")
    access_days: Optional[int] = Field(default=None, alias="accessDays")
    repeatable: bool

    model_config = ConfigDict(populate_by_name=True)


class CapabilityListResponse(BaseModel):
    capabilities: List[CapabilityResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_catalog(cls) -> "CapabilityListResponse":
        return cls(
            capabilities=[
                CapabilityResponse(
                    capability_class=definition.capability_class,
                    label=definition.label,
                    description=definition.description,
                    suggested_price_fiat=definition.suggested_price_usd,
                    duration_minutes=definition.duration_minutes,
                    delivery_bearing=definition.delivery_bearing,
                    max_usage=definition.policy.max_usage,
                    access_days=definition.policy.access_days,
                    repeatable=definition.policy.repeatable,
                )
                for definition in CAPABILITY_CATALOG.values()
            ]
        )


__all__ = [
    "CapabilityListResponse",
    "CapabilityResponse",
    "PayloadSchema",
    "ServiceCreateRequest",
    "ServiceListResponse",
    "ServiceResponse",
    "ServiceUpdateRequest",
    "SetActiveRequest",
]
