"""In-process publish/subscribe for catalog and entitlement changes."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional, Protocol, Set

from .models import ChangeEvent, EntityKind

LOGGER = logging.getLogger("broadcast")

EventPredicate = Callable[[ChangeEvent], bool]

_CLOSED = object()


class ChangePublisher(Protocol):
    """Anything mutation code can hand a change notice to."""

    def publish(self, event: ChangeEvent) -> None:
        ...


def for_entity(kind: EntityKind, entity_id: Optional[str] = None) -> EventPredicate:
    """Build a predicate matching one entity kind, optionally one id."""

    def _matches(event: ChangeEvent) -> bool:
        if event.entity_kind != kind:
            return False
        return entity_id is None or event.entity_id == entity_id

    return _matches


class BroadcastSubscription:
    """A consumer's bounded inbox, bound to the event loop that created it.

    Delivery is at most once. When the inbox overflows the event is dropped
    and :meth:`consume_gap` reports it so the consumer can refetch.
    """

    def __init__(
        self,
        bus: "ChangeBroadcastBus",
        predicate: Optional[EventPredicate],
        *,
        loop: asyncio.AbstractEventLoop,
        max_queue_size: int,
    ) -> None:
        self._bus = bus
        self._predicate = predicate
        self._loop = loop
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False
        self._gap = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        if self._predicate is not None:
            try:
                if not self._predicate(event):
                    return
            except Exception:
                LOGGER.exception("Broadcast predicate failed; skipping event")
                return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError:
            LOGGER.warning("Subscriber event loop is closed; dropping subscription")
            self._closed = True
            self._bus._discard(self)

    def _enqueue(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._gap = True
            LOGGER.warning(
                "Broadcast subscriber queue is full; dropping event",
                extra={"entity_kind": event.entity_kind.value, "entity_id": event.entity_id},
            )

    def consume_gap(self) -> bool:
        """Return ``True`` once if events were dropped since the last call."""

        gap, self._gap = self._gap, False
        return gap

    def drain(self) -> int:
        """Discard already-queued events; a single refetch covers them all."""

        drained = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            if item is _CLOSED:
                self._queue.put_nowait(item)
                return drained
            drained += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._discard(self)
        try:
            self._loop.call_soon_threadsafe(self._push_sentinel)
        except RuntimeError:  # pragma: no cover - loop already gone
            pass

    def _push_sentinel(self) -> None:
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "BroadcastSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def __aenter__(self) -> "BroadcastSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChangeBroadcastBus:
    """Fans change events out to every live subscription without blocking."""

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max(1, max_queue_size)
        self._subscriptions: Set[BroadcastSubscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscriptions = tuple(self._subscriptions)
        LOGGER.debug(
            "Publishing %s %s %s to %s subscribers",
            event.entity_kind.value,
            event.mutation.value,
            event.entity_id,
            len(subscriptions),
        )
        for subscription in subscriptions:
            subscription.offer(event)

    def subscribe(
        self,
        predicate: Optional[EventPredicate] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> BroadcastSubscription:
        """Register a consumer; must be called from (or given) its event loop."""

        subscription = BroadcastSubscription(
            self,
            predicate,
            loop=loop or asyncio.get_running_loop(),
            max_queue_size=self._max_queue_size,
        )
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def _discard(self, subscription: BroadcastSubscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)


__all__ = [
    "BroadcastSubscription",
    "ChangeBroadcastBus",
    "ChangePublisher",
    "EventPredicate",
    "for_entity",
]
