"""Domain models for the sellable-service catalog."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import CapabilityClass


class PayloadKind(str, Enum):
    """How a delivery-bearing service hands over its content."""

    TEXT = "text"
    URL = "url"
    STORED_FILE = "stored_file"


class PayloadDescriptor(BaseModel):
    """Content released by the delivery gate once access is granted."""

    kind: PayloadKind
    content: str = Field(min_length=1, description="Inline text, external URL, or storage key")
    file_type: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Service(BaseModel):
    """A priced offering published by a persona owner."""

    service_id: str
    owner_persona_id: str
    owner_wallet: str
    name: str
    description: str = ""
    price_minor_unit: int
    capability_class: CapabilityClass
    payload: Optional[PayloadDescriptor] = None
    auto_deliver: bool = False
    duration_minutes: Optional[int] = None
    is_active: bool = True
    tombstoned: bool = False
    degraded: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_purchasable(self) -> bool:
        return self.is_active and not self.tombstoned


class ServiceSpec(BaseModel):
    """Owner input for creating a service."""

    owner_persona_id: Optional[str] = None
    owner_wallet: str
    name: str
    description: str = ""
    price_minor_unit: int
    capability_class: CapabilityClass
    payload: Optional[PayloadDescriptor] = None
    auto_deliver: bool = False
    duration_minutes: Optional[int] = None
    is_active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ServicePatch(BaseModel):
    """Partial update applied by the owner; unset fields are left untouched."""

    name: Optional[str] = None
    description: Optional[str] = None
    price_minor_unit: Optional[int] = None
    payload: Optional[PayloadDescriptor] = None
    clear_payload: bool = False
    auto_deliver: Optional[bool] = None
    duration_minutes: Optional[int] = None
    is_active: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def changes(self) -> dict:
        updates = self.model_dump(exclude_unset=True, exclude={"clear_payload"})
        # An explicit None clears the duration; other fields cannot be null.
        updates = {
            key: value for key, value in updates.items() if value is not None or key == "duration_minutes"
        }
        if "payload" in updates:
            updates["payload"] = self.payload
        if self.clear_payload:
            updates["payload"] = None
        return updates
