from __future__ import annotations

import asyncio
from typing import Optional

from app.core.logging import get_logger
from app.core.request_id import with_run_id
from services.cache_orchestrator import CacheOrchestrator

logger = get_logger().bind(module="refresh_scheduler")


class RefreshScheduler:
    """
    Background task that refreshes every content key on a fixed interval,
    independent of request traffic.
    """

    def __init__(
        self,
        orchestrator: CacheOrchestrator,
        *,
        interval_seconds: float = 3600,
        run_on_start: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.ticks = 0
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._task = loop.create_task(self._run(), name="cache-refresh-scheduler")
        logger.info("refresh_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            logger.info("refresh_scheduler_stopped")

    async def tick(self) -> None:
        with with_run_id():
            results = await self.orchestrator.refresh_all()
        self.ticks += 1
        logger.info(
            "refresh_scheduler_tick",
            tick=self.ticks,
            committed=[r.key for r in results if r.committed],
            kept_previous=[r.key for r in results if not r.committed],
        )

    async def _run(self) -> None:
        if self.run_on_start:
            await self._tick_safely()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self._tick_safely()

    async def _tick_safely(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("refresh_scheduler_tick_failed")
