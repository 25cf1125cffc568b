"""Background task that periodically resolves pending payments and merges degraded records."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..storage.reconcile import DegradedStoreReconciler, MergeReport
from .models import ReconciliationReport
from .service import SettlementOrchestrator

logger = logging.getLogger("settlement")


class ReconciliationWorker:
    """Runs the degraded-store merge and the reconciliation pass on an interval."""

    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        *,
        reconciler: Optional[DegradedStoreReconciler] = None,
        interval: float = 60.0,
        initial_delay: float = 0.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._reconciler = reconciler
        self._interval = max(0.01, interval)
        self._initial_delay = max(0.0, initial_delay)
        self._stop = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None
        self.runs = 0
        self.last_merge: Optional[MergeReport] = None
        self.last_reconciliation: Optional[ReconciliationReport] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Reconciliation worker started",
            extra={"interval_seconds": self._interval, "merge_enabled": self._reconciler is not None},
        )

    async def stop(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is not None:
            await task
        logger.info("Reconciliation worker stopped")

    async def run_once(self) -> None:
        try:
            if self._reconciler is not None:
                self.last_merge = await asyncio.to_thread(self._reconciler.merge)
            self.last_reconciliation = await self._orchestrator.reconcile_pending()
            self.last_error = None
        except Exception as exc:
            self.last_error = str(exc)
            logger.exception("Reconciliation run failed")
        finally:
            self.runs += 1

    def metrics(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "running": self.running,
            "last_error": self.last_error,
            "last_merge": self.last_merge.model_dump(mode="json") if self.last_merge else None,
            "last_reconciliation": self.last_reconciliation.model_dump(mode="json")
            if self.last_reconciliation
            else None,
        }

    async def _run(self) -> None:
        if await self._wait(self._initial_delay):
            return
        while not self._stop.is_set():
            await self.run_once()
            if await self._wait(self._interval):
                break

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` when asked to stop."""

        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = ["ReconciliationWorker"]
