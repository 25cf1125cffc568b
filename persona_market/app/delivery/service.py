"""Single guard between a buyer and a purchased service's content."""
from __future__ import annotations

import logging

from ..catalog.models import PayloadKind
from ..catalog.service import CatalogService
from ..entitlements.catalog import policy_for
from ..entitlements.service import EntitlementLedger
from ..errors import AccessDenied, ExhaustedError, ExpiredError
from .models import DeliveredPayload

logger = logging.getLogger("entitlements")


class DeliveryGate:
    """Releases payloads only to buyers holding a valid entitlement.

    Usage-capped capability classes consume one use per fetch; the rest can
    be read repeatedly while access lasts.
    """

    def __init__(self, catalog: CatalogService, ledger: EntitlementLedger) -> None:
        self._catalog = catalog
        self._ledger = ledger

    def fetch(self, service_id: str, buyer_wallet: str) -> DeliveredPayload:
        entitlement = self._ledger.get(service_id, buyer_wallet)
        if entitlement is None:
            raise AccessDenied("No entitlement for this service", detail={"service_id": service_id})

        now = self._ledger.now()
        if entitlement.is_expired_at(now):
            raise ExpiredError(
                "Access has expired",
                detail={"entitlement_id": entitlement.entitlement_id, "expires_at": entitlement.expires_at.isoformat()},
            )
        if entitlement.is_exhausted():
            raise ExhaustedError(
                "Usage limit reached",
                detail={"entitlement_id": entitlement.entitlement_id, "max_usage": entitlement.max_usage},
            )

        service = self._catalog.find_service(service_id)
        if service is None:
            raise AccessDenied("Service is no longer available", detail={"service_id": service_id})

        if policy_for(entitlement.capability_class).caps_usage:
            entitlement = self._ledger.record_use(entitlement.entitlement_id)

        payload = service.payload
        if payload is not None:
            kind, content, file_type = payload.kind, payload.content, payload.file_type
        else:
            kind, content, file_type = PayloadKind.TEXT, service.description or service.name, None

        logger.info(
            "Delivered %s to %s via %s (%s)",
            service_id,
            buyer_wallet,
            entitlement.entitlement_id,
            kind.value,
        )
        return DeliveredPayload(
            service_id=service_id,
            entitlement_id=entitlement.entitlement_id,
            kind=kind,
            content=content,
            file_type=file_type,
            usage_count=entitlement.usage_count,
            max_usage=entitlement.max_usage,
            expires_at=entitlement.expires_at,
        )


__all__ = ["DeliveryGate"]
