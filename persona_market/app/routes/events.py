"""Server-sent event stream of catalog and entitlement changes."""
from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from ..broadcast import BroadcastSubscription, EntityKind, for_entity
from ..services.engine import get_engine

router = APIRouter(prefix="/api", tags=["events"])

KEEPALIVE_SECONDS = 15.0


def _format_event(name: str, data: str) -> str:
    return f"event: {name}\ndata: {data}\n\n"


async def stream_changes(
    subscription: BroadcastSubscription,
    request: Optional[Request] = None,
    *,
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Relay bus events as SSE frames; a ``resync`` frame means events were lost."""

    try:
        yield _format_event("ready", json.dumps({"status": "subscribed"}))
        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(subscription.__anext__(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            except StopAsyncIteration:
                break
            if subscription.consume_gap():
                yield _format_event("resync", json.dumps({"reason": "events dropped"}))
            yield _format_event("change", event.model_dump_json())
    finally:
        subscription.close()


@router.get("/events")
async def subscribe_events(
    request: Request,
    entity_kind: Optional[EntityKind] = Query(default=None, alias="entityKind"),
    entity_id: Optional[str] = Query(default=None, alias="entityId"),
) -> StreamingResponse:
    predicate = for_entity(entity_kind, entity_id) if entity_kind is not None else None
    subscription = get_engine().bus.subscribe(predicate)
    return StreamingResponse(
        stream_changes(subscription, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
