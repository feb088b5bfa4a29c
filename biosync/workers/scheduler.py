import asyncio
import logging
from typing import Callable, Optional

from biosync.services.sync_service import FleetSyncResult, SyncOptions, SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs a fleet sync every ``interval_min`` minutes until stopped."""

    def __init__(self, orchestrator: SyncOrchestrator, interval_min: float = 5,
                 options: Optional[SyncOptions] = None,
                 on_result: Optional[Callable[[FleetSyncResult], None]] = None):
        if interval_min <= 0:
            raise ValueError("interval_min must be positive")
        self.orchestrator = orchestrator
        self.interval_s = float(interval_min) * 60
        self.options = options
        self.on_result = on_result
        self.runs = 0
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run_once(self) -> Optional[FleetSyncResult]:
        self.runs += 1
        try:
            result = await self.orchestrator.sync_all(self.options)
        except Exception:
            # registry unavailable etc.; try again next tick
            logger.exception("scheduled sync #%d failed", self.runs)
            return None
        if self.on_result:
            self.on_result(result)
        return result

    async def run(self, iterations: Optional[int] = None) -> None:
        logger.info("scheduler started, interval %.0fs", self.interval_s)
        while not self._stopping.is_set():
            await self.run_once()
            if iterations is not None and self.runs >= iterations:
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), self.interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler stopped after %d run(s)", self.runs)
