"""Turn reserved read-queue tokens into detail payloads on the analyze queue."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from estateflow.config import FetchConfig
from estateflow.db.queues import (
    ReadJob,
    complete_fetch,
    record_fetch_failure,
    release_read_item,
    release_stuck_reads,
    reserve_read_batch,
)
from estateflow.db.tables import FAILED
from estateflow.ingest.divar import DivarClient
from estateflow.ingest.models import FetchSummary
from estateflow.ingest.sessions import SessionPool, UpstreamSession
from estateflow.utils.dates import parse_retry_after

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED_OUTCOME = "failed"
THROTTLED = "throttled"
RELEASED = "released"

AUTH_STATUSES = frozenset({401, 403})


@dataclass(slots=True)
class JobResult:
    job: ReadJob
    outcome: str
    retry_after: float | None = None


class Fetcher:
    def __init__(
        self,
        engine: Engine,
        client: DivarClient,
        config: FetchConfig | None = None,
        *,
        sessions: SessionPool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.client = client
        self.config = config or FetchConfig()
        self.sessions = sessions
        self._sleep = sleep
        self._clock = clock

    async def _db(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def fetch_next_posts(self) -> FetchSummary:
        summary = FetchSummary()
        await self._db(release_stuck_reads, self.engine, self.config.processing_timeout)

        while True:
            started = self._clock()
            batch = await self._db(reserve_read_batch, self.engine, self.config.batch_size)
            if not batch:
                if summary.attempted == 0:
                    logger.info("No pending posts to fetch")
                break
            await self.fetch_batch(batch, summary)
            if len(batch) < self.config.batch_size:
                break
            elapsed = self._clock() - started
            if elapsed < self.config.min_batch_interval:
                await self._sleep(self.config.min_batch_interval - elapsed)

        logger.info(
            "Fetch summary: attempted=%d succeeded=%d failed=%d throttled=%d",
            summary.attempted,
            summary.succeeded,
            summary.failed,
            summary.throttled,
        )
        return summary

    async def fetch_batch(self, batch: list[ReadJob], summary: FetchSummary | None = None) -> FetchSummary:
        """Fetch one reserved batch concurrently and record every outcome."""
        summary = summary or FetchSummary()
        summary.attempted += len(batch)
        session = await self._db(self.sessions.current) if self.sessions else None
        logger.info("Fetching %d posts (%s)", len(batch), ", ".join(job.external_id for job in batch))
        results = await asyncio.gather(*(self._process(job, session) for job in batch))

        waits: list[float] = []
        for result in results:
            if result.outcome == SUCCEEDED:
                summary.succeeded += 1
            elif result.outcome == THROTTLED:
                summary.throttled += 1
                waits.append(result.retry_after if result.retry_after is not None else self.config.default_retry_after)
            elif result.outcome == FAILED_OUTCOME:
                summary.failed += 1
        if waits:
            delay = max(waits)
            logger.warning("Upstream rate limit hit; sleeping %.1fs before the next batch", delay)
            await self._sleep(delay)
        return summary

    async def _process(self, job: ReadJob, session: UpstreamSession | None) -> JobResult:
        try:
            payload = await self.client.fetch_detail(
                job.external_id,
                cookie=session.cookie if session else None,
                timeout=self.config.request_timeout,
            )
            await self._db(complete_fetch, self.engine, job, payload)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in AUTH_STATUSES and session is not None and self.sessions is not None:
                logger.warning("Post %s rejected with %d on session %s", job.external_id, status, session.label)
                try:
                    await self._db(self.sessions.deactivate, session)
                    await self._db(release_read_item, self.engine, job)
                except SQLAlchemyError:
                    logger.exception("Could not release post %s after authorization failure", job.external_id)
                return JobResult(job, RELEASED)
            await self._record_failure(job, exc)
            if status == 429:
                return JobResult(job, THROTTLED, parse_retry_after(exc.response.headers.get("Retry-After")))
            return JobResult(job, FAILED_OUTCOME)
        except Exception as exc:
            await self._record_failure(job, exc)
            return JobResult(job, FAILED_OUTCOME)
        logger.info("Fetched post %s", job.external_id)
        return JobResult(job, SUCCEEDED)

    async def _record_failure(self, job: ReadJob, exc: Exception) -> None:
        try:
            status = await self._db(record_fetch_failure, self.engine, job, self.config.max_attempts)
        except SQLAlchemyError:
            logger.exception("Could not record fetch failure for post %s", job.external_id)
            return
        log = logger.error if status == FAILED else logger.warning
        log(
            "Post %s fetch failed (attempt %d/%d, now %s): %s",
            job.external_id,
            job.fetch_attempts,
            self.config.max_attempts,
            status,
            exc,
        )
