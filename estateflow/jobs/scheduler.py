"""Single-process asyncio scheduler with one interval timer per stage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from estateflow.config import SchedulerConfig
from estateflow.jobs.pipeline import ANALYZE, DISPATCH, FETCH, HARVEST, MATCH, Pipeline

logger = logging.getLogger(__name__)


class PipelineScheduler:
    def __init__(
        self,
        pipeline: Pipeline,
        config: SchedulerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pipeline = pipeline
        self.config = config or SchedulerConfig()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def intervals(self) -> dict[str, float]:
        cfg = self.config
        return {
            HARVEST: cfg.harvest_interval,
            FETCH: cfg.fetch_interval,
            ANALYZE: cfg.analyze_interval,
            MATCH: cfg.match_interval,
            DISPATCH: cfg.dispatch_interval,
        }

    async def tick(self, stage: str) -> None:
        """Run one guarded stage; any exception is logged and the scheduler keeps going."""
        try:
            await self.pipeline.run_stage(stage)
        except Exception:
            logger.exception("Stage %s failed", stage)

    def _spawn(self, stage: str) -> None:
        task = asyncio.create_task(self.tick(stage), name=f"estateflow-{stage}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _timer(self, stage: str, interval: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self._spawn(stage)
            await self._sleep(interval)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{stage} every {interval:g}s" for stage, interval in self.intervals.items()),
        )
        timers = [
            asyncio.create_task(self._timer(stage, interval, stop))
            for stage, interval in self.intervals.items()
            if interval > 0
        ]
        try:
            await stop.wait()
        finally:
            for timer in timers:
                timer.cancel()
            await asyncio.gather(*timers, return_exceptions=True)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Scheduler stopped")
