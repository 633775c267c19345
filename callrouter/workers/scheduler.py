"""Background scheduler — sweeps for rings and claims that never reported back."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from callrouter.config import settings
from callrouter.routing.engine import EscalationEngine
from callrouter.routing.errors import StorageUnavailable

logger = logging.getLogger("callrouter.scheduler")


class BackgroundScheduler:
    """Asyncio-based sweeper running inside the FastAPI event loop.

    On each tick:
      1. Time out attempts still ringing past ring duration + grace
      2. Flag answered incidents whose claim window elapsed unnoticed
         (in-memory claim timers do not survive a restart)
    """

    def __init__(self, interval: Optional[float] = None) -> None:
        self.interval = interval if interval is not None else settings.sweep_interval_seconds
        self.engine: Optional[EscalationEngine] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self, engine: EscalationEngine) -> None:
        """Start the background scheduler."""
        if self._running:
            return
        self.engine = engine
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Scheduler started (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop the background scheduler gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        """Main scheduler loop."""
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                await self._tick()
            except asyncio.CancelledError:
                break
            except StorageUnavailable as e:
                logger.warning(f"Sweep skipped, storage unavailable: {e}")
                await asyncio.sleep(10)  # back off on error
            except Exception as e:
                logger.error(f"Error in tick: {e}")
                await asyncio.sleep(10)  # back off on error

    async def _tick(self) -> dict[str, int]:
        """Single sweep: expire stale rings, then flag unclaimed answers."""
        if self.engine is None:
            return {"expired_attempts": 0, "unclaimed": 0}

        expired = await self.engine.expire_stale_attempts()
        unclaimed = await self.engine.expire_unclaimed()
        if expired or unclaimed:
            logger.info(f"Sweep timed out {expired} attempts, flagged {unclaimed} unclaimed incidents")
        return {"expired_attempts": expired, "unclaimed": unclaimed}


scheduler = BackgroundScheduler()
