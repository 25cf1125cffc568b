from __future__ import annotations

import pytest

from persona_market.app.catalog import PayloadDescriptor, PayloadKind
from persona_market.app.entitlements import CapabilityClass
from persona_market.app.errors import AccessDenied, ExhaustedError, ExpiredError


def test_fetch_without_entitlement_is_denied(harness) -> None:
    service = harness.create_service(CapabilityClass.CONTENT_DELIVERY, price=2)

    with pytest.raises(AccessDenied):
        harness.delivery.fetch(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_content_delivery_can_be_fetched_repeatedly(harness) -> None:
    payload = PayloadDescriptor(kind=PayloadKind.STORED_FILE, content="uploads/guide.pdf", file_type="application/pdf")
    service = harness.create_service(CapabilityClass.CONTENT_DELIVERY, price=2, payload=payload)
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    first = harness.delivery.fetch(service.service_id, "BUYERWALLET")
    second = harness.delivery.fetch(service.service_id, "BUYERWALLET")

    assert first.kind == PayloadKind.STORED_FILE
    assert first.content == "uploads/guide.pdf"
    assert first.file_type == "application/pdf"
    assert second.usage_count == 0
    assert second.max_usage is None


@pytest.mark.asyncio
async def test_consultation_fetch_consumes_single_use(harness) -> None:
    service = harness.create_service(CapabilityClass.CONSULTATION, price=2, description="Bring your CV")
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    delivered = harness.delivery.fetch(service.service_id, "BUYERWALLET")

    assert delivered.kind == PayloadKind.TEXT
    assert delivered.content == "Bring your CV"
    assert (delivered.usage_count, delivered.max_usage) == (1, 1)
    with pytest.raises(ExhaustedError) as exc_info:
        harness.delivery.fetch(service.service_id, "BUYERWALLET")
    assert exc_info.value.detail["max_usage"] == 1


@pytest.mark.asyncio
async def test_video_call_access_expires(harness) -> None:
    service = harness.create_service(CapabilityClass.VIDEO_CALL, price=3)
    entitlement = await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    delivered = harness.delivery.fetch(service.service_id, "BUYERWALLET")
    assert delivered.expires_at == entitlement.expires_at

    harness.clock.advance(days=30, seconds=1)
    with pytest.raises(ExpiredError):
        harness.delivery.fetch(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_other_buyer_cannot_fetch(harness) -> None:
    service = harness.create_service(CapabilityClass.VOICE_MESSAGE, price=2)
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")

    with pytest.raises(AccessDenied):
        harness.delivery.fetch(service.service_id, "OTHERWALLET")


@pytest.mark.asyncio
async def test_deleted_service_denies_delivery(harness) -> None:
    service = harness.create_service(CapabilityClass.VOICE_MESSAGE, price=2)
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    harness.store.discard_service(service.service_id)

    with pytest.raises(AccessDenied):
        harness.delivery.fetch(service.service_id, "BUYERWALLET")


@pytest.mark.asyncio
async def test_tombstoned_service_still_delivers_to_existing_buyers(harness) -> None:
    service = harness.create_service(CapabilityClass.VOICE_MESSAGE, price=2)
    await harness.orchestrator.purchase(service.service_id, "BUYERWALLET")
    harness.store.save_service(service.model_copy(update={"tombstoned": True, "is_active": False}))

    delivered = harness.delivery.fetch(service.service_id, "BUYERWALLET")

    assert delivered.kind == PayloadKind.URL
    assert delivered.content == "https://cdn.example/asset.mp3"
