"""
Periodic Task — runs an async callable on a fixed interval in the background.

The pipeline never schedules itself; the hosting process owns the timers:
  - rule sweep        every automation.sweep_interval_seconds
  - housekeeping      every 5 minutes (store restore, TTL sweep, stalled drains)
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PeriodicTask:
    """
    Usage:
        task = PeriodicTask("rule_sweep", evaluator.sweep, interval_seconds=60)
        await task.start_background()
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.func = func
        self.interval = interval_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> Any:
        self.runs += 1
        try:
            return await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("periodic_task_error", task=self.name, error=str(e), exc_info=True)
            return None

    async def _run(self):
        logger.info("periodic_task_started", task=self.name, interval=self.interval)
        while True:
            await self.run_once()
            await self._sleep(self.interval)
