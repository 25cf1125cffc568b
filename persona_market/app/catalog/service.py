"""Service layer owning sellable-service definitions."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..broadcast.bus import ChangePublisher
from ..broadcast.models import ChangeEvent, EntityKind, Mutation
from ..entitlements.catalog import get_capability_definition
from ..errors import ConflictError, NotFoundError, ValidationError
from .models import Service, ServicePatch, ServiceSpec

logger = logging.getLogger("catalog")


class CatalogRepository(Protocol):
    """Persistence operations required by the catalog."""

    def save_service(self, service: Service) -> Service:
        ...

    def get_service(self, service_id: str) -> Optional[Service]:
        ...

    def list_services(
        self,
        *,
        owner_persona_id: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[Service]:
        ...

    def delete_service(self, service_id: str) -> bool:
        ...


class ServiceReferences(Protocol):
    """Reports whether granted or in-flight purchases still point at a service."""

    def count_references(self, service_id: str) -> int:
        ...


def validate_service(service: Service) -> None:
    """Raise :class:`ValidationError` when a service breaks catalog rules."""

    if service.price_minor_unit <= 0:
        raise ValidationError("price must be greater than zero", detail={"field": "price_minor_unit"})
    if not (service.owner_persona_id or "").strip():
        raise ValidationError("owner persona is required", detail={"field": "owner_persona_id"})
    if not service.owner_wallet.strip():
        raise ValidationError("owner wallet is required", detail={"field": "owner_wallet"})
    if not service.name.strip():
        raise ValidationError("service name is required", detail={"field": "name"})
    if service.duration_minutes is not None and service.duration_minutes <= 0:
        raise ValidationError("duration must be positive", detail={"field": "duration_minutes"})

    definition = get_capability_definition(service.capability_class)
    if definition.delivery_bearing and service.payload is None:
        raise ValidationError(
            f"{service.capability_class.value} services require a delivery payload",
            detail={"field": "payload"},
        )
    if not definition.delivery_bearing and service.payload is not None:
        raise ValidationError(
            f"{service.capability_class.value} services cannot carry a delivery payload",
            detail={"field": "payload"},
        )
    if service.auto_deliver and service.payload is None:
        raise ValidationError("auto delivery requires a payload", detail={"field": "auto_deliver"})


class CatalogService:
    """Creates, edits, and retires services; every mutation is broadcast."""

    def __init__(
        self,
        repository: CatalogRepository,
        publisher: ChangePublisher,
        references: ServiceReferences,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._publisher = publisher
        self._references = references
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_service(self, spec: ServiceSpec) -> Service:
        now = self._clock()
        service = Service(
            service_id=f"svc_{uuid4().hex}",
            owner_persona_id=spec.owner_persona_id or "",
            owner_wallet=spec.owner_wallet,
            name=spec.name,
            description=spec.description,
            price_minor_unit=spec.price_minor_unit,
            capability_class=spec.capability_class,
            payload=spec.payload,
            auto_deliver=spec.auto_deliver,
            duration_minutes=spec.duration_minutes,
            is_active=spec.is_active,
            tombstoned=False,
            degraded=False,
            created_at=now,
            updated_at=now,
        )
        validate_service(service)
        stored = self._repository.save_service(service)
        logger.info(
            "Service created %s persona=%s class=%s price=%s degraded=%s",
            stored.service_id,
            stored.owner_persona_id,
            stored.capability_class.value,
            stored.price_minor_unit,
            stored.degraded,
        )
        self._publish(Mutation.CREATED, stored.service_id)
        return stored

    def get_service(self, service_id: str) -> Service:
        service = self._repository.get_service(service_id)
        if service is None:
            raise NotFoundError("Service not found", detail={"service_id": service_id})
        return service

    def find_service(self, service_id: str) -> Optional[Service]:
        return self._repository.get_service(service_id)

    def list_services(self, owner_persona_id: str) -> List[Service]:
        services = self._repository.list_services(owner_persona_id=owner_persona_id)
        return [service for service in services if not service.tombstoned]

    def list_public_services(self) -> List[Service]:
        return [
            service
            for service in self._repository.list_services(active_only=True)
            if service.is_purchasable
        ]

    def update_service(self, service_id: str, patch: ServicePatch) -> Service:
        current = self.get_service(service_id)
        if current.tombstoned:
            raise ConflictError("Deleted services cannot be edited", detail={"service_id": service_id})

        changes = patch.changes()
        if not changes:
            return current
        candidate = current.model_copy(update={**changes, "updated_at": self._clock()})
        validate_service(candidate)
        stored = self._repository.save_service(candidate)
        logger.info("Service updated %s fields=%s", service_id, sorted(changes))
        self._publish(Mutation.UPDATED, stored.service_id)
        return stored

    def set_active(self, service_id: str, active: bool) -> Service:
        return self.update_service(service_id, ServicePatch(is_active=active))

    def delete_service(self, service_id: str) -> None:
        current = self.get_service(service_id)
        references = self._references.count_references(service_id)
        if references:
            if not current.tombstoned:
                tombstoned = current.model_copy(
                    update={"is_active": False, "tombstoned": True, "updated_at": self._clock()}
                )
                self._repository.save_service(tombstoned)
                logger.info("Service %s tombstoned; %s references remain", service_id, references)
                self._publish(Mutation.UPDATED, service_id)
            raise ConflictError(
                "Service is referenced by existing purchases and was deactivated instead",
                detail={"service_id": service_id, "tombstoned": True, "references": references},
            )

        self._repository.delete_service(service_id)
        logger.info("Service deleted %s", service_id)
        self._publish(Mutation.DELETED, service_id)

    def _publish(self, mutation: Mutation, service_id: str) -> None:
        self._publisher.publish(
            ChangeEvent(
                entity_kind=EntityKind.SERVICE,
                mutation=mutation,
                entity_id=service_id,
                occurred_at=self._clock(),
            )
        )


__all__ = ["CatalogRepository", "CatalogService", "ServiceReferences", "validate_service"]
