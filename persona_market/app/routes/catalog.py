"""HTTP routes for the service catalog."""
from __future__ import annotations

from fastapi import APIRouter, Response, status

from ..errors import EngineError
from ..schemas.catalog import (
    CapabilityListResponse,
    ServiceCreateRequest,
    ServiceListResponse,
    ServiceResponse,
    ServiceUpdateRequest,
    SetActiveRequest,
)
from ..services.engine import get_engine

router = APIRouter(prefix="/api/catalog", tags=["catalog"])


def _to_response(service) -> ServiceResponse:
    config = get_engine().config
    return ServiceResponse.from_service(
        service,
        fiat_rate=config.fiat_rate,
        fiat_currency=config.fiat_currency,
        minor_units_per_unit=config.minor_units_per_unit,
    )


@router.get("/capabilities", response_model=CapabilityListResponse)
def list_capabilities() -> CapabilityListResponse:
    return CapabilityListResponse.from_catalog()


@router.post("/services", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
def create_service(payload: ServiceCreateRequest) -> ServiceResponse:
    engine = get_engine()
    try:
        service = engine.catalog.create_service(
            payload.to_spec(minor_units_per_unit=engine.config.minor_units_per_unit)
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(service)


@router.get("/services", response_model=ServiceListResponse)
def list_public_services() -> ServiceListResponse:
    try:
        services = get_engine().catalog.list_public_services()
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return ServiceListResponse(services=[_to_response(service) for service in services])


@router.get("/personas/{persona_id}/services", response_model=ServiceListResponse)
def list_persona_services(persona_id: str) -> ServiceListResponse:
    try:
        services = get_engine().catalog.list_services(persona_id)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return ServiceListResponse(services=[_to_response(service) for service in services])


@router.get("/services/{service_id}", response_model=ServiceResponse)
def get_service(service_id: str) -> ServiceResponse:
    try:
        service = get_engine().catalog.get_service(service_id)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(service)


@router.patch("/services/{service_id}", response_model=ServiceResponse)
def update_service(service_id: str, payload: ServiceUpdateRequest) -> ServiceResponse:
    engine = get_engine()
    try:
        service = engine.catalog.update_service(
            service_id,
            payload.to_patch(minor_units_per_unit=engine.config.minor_units_per_unit),
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(service)


@router.post("/services/{service_id}/active", response_model=ServiceResponse)
def set_service_active(service_id: str, payload: SetActiveRequest) -> ServiceResponse:
    try:
        service = get_engine().catalog.set_active(service_id, payload.is_active)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(service)


@router.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_service(service_id: str) -> Response:
    try:
        get_engine().catalog.delete_service(service_id)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
