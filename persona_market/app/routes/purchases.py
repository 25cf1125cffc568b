"""HTTP routes for purchases, entitlements, delivery and reconciliation."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException, Query

from ..delivery import DeliveredPayload
from ..entitlements import Entitlement
from ..errors import EngineError, NotFoundError
from ..schemas.purchases import (
    DeliveredPayloadResponse,
    DeliveryRequest,
    EntitlementListResponse,
    EntitlementResponse,
    MergeResponse,
    PurchaseRequest,
    PurchaseResponse,
    ReconciliationResponse,
)
from ..services.engine import Engine, get_engine

logger = logging.getLogger("settlement")

router = APIRouter(prefix="/api", tags=["purchases"])


@router.post("/purchases", response_model=PurchaseResponse)
async def purchase_service(payload: PurchaseRequest) -> PurchaseResponse:
    engine = get_engine()
    try:
        entitlement = await engine.orchestrator.purchase(payload.service_id, payload.buyer_wallet)
    except EngineError as exc:
        raise exc.to_http_exception() from exc

    delivery = None
    try:
        delivered = await asyncio.to_thread(_auto_deliver, engine, payload.service_id, payload.buyer_wallet)
    except EngineError as exc:
        logger.warning("Auto delivery of %s skipped: %s", payload.service_id, exc.message)
    else:
        if delivered is not None:
            delivery = DeliveredPayloadResponse.from_payload(delivered[0])
            entitlement = delivered[1]

    return PurchaseResponse(
        entitlement=EntitlementResponse.from_entitlement(entitlement, now=engine.ledger.now()),
        delivery=delivery,
    )


def _auto_deliver(engine: Engine, service_id: str, buyer_wallet: str) -> Optional[Tuple[DeliveredPayload, Entitlement]]:
    service = engine.catalog.find_service(service_id)
    if service is None or not service.auto_deliver or service.payload is None:
        return None
    delivered = engine.delivery.fetch(service_id, buyer_wallet)
    return delivered, engine.ledger.get_by_id(delivered.entitlement_id)


@router.get("/entitlements", response_model=EntitlementListResponse)
def list_entitlements(buyer_wallet: str = Query(alias="buyerWallet", min_length=1)) -> EntitlementListResponse:
    engine = get_engine()
    try:
        entitlements = engine.ledger.list_for_buyer(buyer_wallet)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    now = engine.ledger.now()
    return EntitlementListResponse(
        entitlements=[EntitlementResponse.from_entitlement(item, now=now) for item in entitlements]
    )


@router.get("/entitlements/{service_id}", response_model=EntitlementResponse)
def get_entitlement(
    service_id: str,
    buyer_wallet: str = Query(alias="buyerWallet", min_length=1),
) -> EntitlementResponse:
    engine = get_engine()
    try:
        entitlement = engine.ledger.get(service_id, buyer_wallet)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    if entitlement is None:
        raise NotFoundError(
            "No entitlement for this service", detail={"service_id": service_id}
        ).to_http_exception()
    return EntitlementResponse.from_entitlement(entitlement, now=engine.ledger.now())


@router.post("/delivery/{service_id}", response_model=DeliveredPayloadResponse)
def fetch_delivery(service_id: str, payload: DeliveryRequest) -> DeliveredPayloadResponse:
    try:
        delivered = get_engine().delivery.fetch(service_id, payload.buyer_wallet)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return DeliveredPayloadResponse.from_payload(delivered)


@router.post("/settlement/reconcile", response_model=ReconciliationResponse)
async def reconcile_payments() -> ReconciliationResponse:
    try:
        report = await get_engine().orchestrator.reconcile_pending()
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return ReconciliationResponse.from_report(report)


@router.post("/storage/merge", response_model=MergeResponse)
async def merge_degraded_records() -> MergeResponse:
    reconciler = get_engine().reconciler
    if reconciler is None:
        raise HTTPException(status_code=409, detail="Durable storage is not configured")
    report = await asyncio.to_thread(reconciler.merge)
    return MergeResponse.from_report(report)
