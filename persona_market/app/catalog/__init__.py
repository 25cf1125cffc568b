"""Sellable-service catalog: models and owner-facing service."""

from .models import PayloadDescriptor, PayloadKind, Service, ServicePatch, ServiceSpec
from .service import CatalogRepository, CatalogService, ServiceReferences, validate_service

__all__ = [
    "CatalogRepository",
    "CatalogService",
    "PayloadDescriptor",
    "PayloadKind",
    "Service",
    "ServicePatch",
    "ServiceReferences",
    "ServiceSpec",
    "validate_service",
]
