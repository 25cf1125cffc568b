"""Entitlement domain models, capability policies, and the ledger."""

from .catalog import CAPABILITY_CATALOG, CapabilityDefinition, get_capability_definition, policy_for
from .models import CapabilityClass, Entitlement, EntitlementPolicy
from .service import EntitlementLedger, EntitlementRepository

__all__ = [
    "CAPABILITY_CATALOG",
    "CapabilityClass",
    "CapabilityDefinition",
    "Entitlement",
    "EntitlementLedger",
    "EntitlementPolicy",
    "EntitlementRepository",
    "get_capability_definition",
    "policy_for",
]
