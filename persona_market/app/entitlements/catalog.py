"""Static catalog definitions for capability classes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .models import CapabilityClass, EntitlementPolicy


@dataclass(frozen=True)
class CapabilityDefinition:
    """Describes a capability class and the entitlement it grants."""

    capability_class: CapabilityClass
    label: str
    description: str
    policy: EntitlementPolicy
    delivery_bearing: bool = False
    suggested_price_usd: int = 0
    duration_minutes: Optional[int] = None


SINGLE_USE_POLICY = EntitlementPolicy(max_usage=1)
THIRTY_DAY_POLICY = EntitlementPolicy(access_days=30, repeatable=True)
UNLIMITED_POLICY = EntitlementPolicy()

CAPABILITY_CATALOG: Dict[CapabilityClass, CapabilityDefinition] = {
    CapabilityClass.CONSULTATION: CapabilityDefinition(
        capability_class=CapabilityClass.CONSULTATION,
        label="AI Consultation",
        description="Get personalized advice and insights from your persona",
        policy=SINGLE_USE_POLICY,
        suggested_price_usd=25,
        duration_minutes=30,
    ),
    CapabilityClass.CONTENT_DELIVERY: CapabilityDefinition(
        capability_class=CapabilityClass.CONTENT_DELIVERY,
        label="Content Creation",
        description="Generate custom content in your persona's style",
        policy=UNLIMITED_POLICY,
        delivery_bearing=True,
        suggested_price_usd=15,
    ),
    CapabilityClass.VOICE_MESSAGE: CapabilityDefinition(
        capability_class=CapabilityClass.VOICE_MESSAGE,
        label="Voice Message",
        description="Receive a personalized voice message from your persona",
        policy=UNLIMITED_POLICY,
        delivery_bearing=True,
        suggested_price_usd=10,
        duration_minutes=5,
    ),
    CapabilityClass.VIDEO_CALL: CapabilityDefinition(
        capability_class=CapabilityClass.VIDEO_CALL,
        label="Live Video Call",
        description="Have a live video conversation with your persona",
        policy=THIRTY_DAY_POLICY,
        suggested_price_usd=50,
        duration_minutes=60,
    ),
    CapabilityClass.CUSTOM: CapabilityDefinition(
        capability_class=CapabilityClass.CUSTOM,
        label="Custom Service",
        description="Create a unique service offering",
        policy=UNLIMITED_POLICY,
        suggested_price_usd=20,
    ),
}


def get_capability_definition(capability_class: CapabilityClass) -> CapabilityDefinition:
    """Return a capability definition, raising if unsupported."""

    try:
        return CAPABILITY_CATALOG[capability_class]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown capability class: {capability_class}") from exc


def policy_for(capability_class: CapabilityClass) -> EntitlementPolicy:
    return get_capability_definition(capability_class).policy
