"""Consumers that converge on the source of truth by refetching."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

from .bus import BroadcastSubscription, ChangeBroadcastBus, EventPredicate

LOGGER = logging.getLogger("broadcast")

T = TypeVar("T")


class RefetchingConsumer(Generic[T]):
    """Keeps a snapshot current by reloading it whenever something changes.

    Event payloads are only used as a trigger. The snapshot is always the
    loader's answer, so a dropped or reordered event cannot leave the
    consumer with stale data once the next event (or reconnect) arrives.
    """

    def __init__(
        self,
        bus: ChangeBroadcastBus,
        loader: Callable[[], T],
        *,
        predicate: Optional[EventPredicate] = None,
        name: str = "consumer",
    ) -> None:
        self._bus = bus
        self._loader = loader
        self._predicate = predicate
        self.name = name
        self.snapshot: Optional[T] = None
        self.refresh_count = 0
        self._subscription: Optional[BroadcastSubscription] = None
        self._refreshed = asyncio.Event()

    async def refresh(self) -> T:
        snapshot = await asyncio.to_thread(self._loader)
        self.snapshot = snapshot
        self.refresh_count += 1
        self._refreshed.set()
        return snapshot

    async def wait_for_refresh(self, count: int, *, timeout: float = 1.0) -> None:
        """Block until at least ``count`` refreshes have happened."""

        async def _wait() -> None:
            while self.refresh_count < count:
                self._refreshed.clear()
                await self._refreshed.wait()

        await asyncio.wait_for(_wait(), timeout)

    async def run(self) -> None:
        # Subscribe before the initial load so nothing between the two is missed.
        subscription = self._bus.subscribe(self._predicate)
        self._subscription = subscription
        try:
            await self.refresh()
            async for _event in subscription:
                skipped = subscription.drain()
                if subscription.consume_gap():
                    LOGGER.info("Consumer %s missed events; refetching", self.name)
                LOGGER.debug("Consumer %s refetching (coalesced %s events)", self.name, skipped)
                await self.refresh()
        finally:
            subscription.close()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
