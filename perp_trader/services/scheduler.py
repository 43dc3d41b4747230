"""
Recurring job runner for the trading cycle and position sync.
Each scheduler runs one job on a fixed interval; ticks never overlap.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from perp_trader.utils.time_utils import utc_now

logger = logging.getLogger("scheduler")


class RecurringScheduler:
    """Runs ``job`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, job: Callable[[], Awaitable[Any]],
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.name = name
        self.interval = interval
        self.job = job
        self.sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.runs = 0
        self.failures = 0
        self.last_run_at = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} scheduler started (every {self.interval}s)")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"{self.name} scheduler stopped")

    async def run_once(self) -> Any:
        """Run a single tick now. Skipped if a tick is already in progress."""
        if self._tick_lock.locked():
            logger.info(f"{self.name}: previous run still in progress, skipping")
            return None
        async with self._tick_lock:
            self.last_run_at = utc_now()
            try:
                result = await self.job()
            except Exception as e:
                self.failures += 1
                self.last_error = str(e)
                logger.exception(f"{self.name} run failed")
                return None
            self.runs += 1
            self.last_error = None
            return result

    async def _loop(self):
        while self._running:
            await self.run_once()
            await self.sleep(self.interval)

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "interval_sec": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }
