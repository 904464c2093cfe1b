"""Periodic resumption of waiting workflow executions."""

import asyncio
import contextlib
from datetime import datetime
from typing import Optional

from loguru import logger

from .engine import WorkflowEngine


class WorkflowScheduler:
    """Calls ``engine.resume_due_executions`` on a fixed interval.

    Usage::

        scheduler = WorkflowScheduler(engine, interval_seconds=60)
        scheduler.start()
        # ... later ...
        await scheduler.stop()

    Several schedulers may run against one store; the engine's claim keeps
    each due execution on a single worker.
    """

    def __init__(self, engine: WorkflowEngine, interval_seconds: float = 60.0) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Resume everything due at ``now``; returns how many were processed."""
        return await self.engine.resume_due_executions(now)

    async def run(self) -> None:
        self._running = True
        logger.info(f"Workflow scheduler started (interval {self.interval_seconds}s)")
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # A bad tick must not kill the loop; the next tick picks up the rest.
                logger.error(f"Scheduler tick failed: {e}")
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    def start(self) -> asyncio.Task:
        """Start the scheduler as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Workflow scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
