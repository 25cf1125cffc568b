"""Domain models for entitlements and their capability policies."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CapabilityClass(str, Enum):
    """Category of a service; decides the entitlement policy."""

    CONSULTATION = "consultation"
    CONTENT_DELIVERY = "content_delivery"
    VOICE_MESSAGE = "voice_message"
    VIDEO_CALL = "video_call"
    CUSTOM = "custom"


@dataclass(frozen=True)
class EntitlementPolicy:
    """Usage and lifetime bounds applied to a freshly granted entitlement."""

    max_usage: Optional[int] = None
    access_days: Optional[int] = None
    repeatable: bool = False

    @property
    def caps_usage(self) -> bool:
        return self.max_usage is not None

    def expires_at_from(self, granted_at: datetime) -> Optional[datetime]:
        """Return the expiry for a grant made at ``granted_at``."""

        if self.access_days is None:
            return None
        return granted_at + timedelta(days=self.access_days)


class Entitlement(BaseModel):
    """Durable right of a buyer wallet to use one service."""

    entitlement_id: str
    service_id: str
    persona_id: str = Field(description="Persona owning the purchased service")
    buyer_wallet: str
    capability_class: CapabilityClass
    usage_count: int = Field(default=0, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    granted_from_attempt_id: str
    amount_paid_minor_unit: int = Field(default=0, ge=0)
    granted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    degraded: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _usage_within_cap(self) -> "Entitlement":
        if self.max_usage is not None and self.usage_count > self.max_usage:
            raise ValueError("usage_count cannot exceed max_usage")
        return self

    def is_exhausted(self) -> bool:
        return self.max_usage is not None and self.usage_count >= self.max_usage

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_valid_at(self, now: datetime) -> bool:
        """Pure access check; the stored record never changes with time."""

        return not self.is_exhausted() and not self.is_expired_at(now)
