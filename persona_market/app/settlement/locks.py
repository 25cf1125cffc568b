"""Per-(service, buyer) in-flight registry guarding concurrent purchases."""
from __future__ import annotations

import threading
from typing import Set, Tuple

Pair = Tuple[str, str]


class InFlightRegistry:
    """Non-blocking try-lock keyed by ``(service_id, buyer_wallet)``.

    A second caller for a held pair is told so immediately instead of
    queueing behind the first. Safe from both the event loop and worker
    threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pairs: Set[Pair] = set()

    def try_acquire(self, service_id: str, buyer_wallet: str) -> bool:
        pair = (service_id, buyer_wallet)
        with self._lock:
            if pair in self._pairs:
                return False
            self._pairs.add(pair)
            return True

    def release(self, service_id: str, buyer_wallet: str) -> None:
        with self._lock:
            self._pairs.discard((service_id, buyer_wallet))

    def is_in_flight(self, service_id: str, buyer_wallet: str) -> bool:
        with self._lock:
            return (service_id, buyer_wallet) in self._pairs

    def __len__(self) -> int:
        with self._lock:
            return len(self._pairs)


__all__ = ["InFlightRegistry"]
