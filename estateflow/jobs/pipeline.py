"""Guarded entry points for each pipeline stage."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import Engine

from estateflow.config import Settings
from estateflow.db.session import create_engine_from_env
from estateflow.ingest.analyzer import Analyzer
from estateflow.ingest.divar import DivarClient
from estateflow.ingest.fetcher import Fetcher
from estateflow.ingest.harvester import Harvester
from estateflow.ingest.sessions import SessionPool
from estateflow.jobs.guard import StageGuard
from estateflow.notify.delivery import Emitter, NotificationDispatcher, emitter_from_config
from estateflow.notify.matcher import NotificationMatcher
from estateflow.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

HARVEST = "harvest"
FETCH = "fetch"
ANALYZE = "analyze"
MATCH = "match"
DISPATCH = "dispatch"
STAGES = (HARVEST, FETCH, ANALYZE, MATCH, DISPATCH)


class Pipeline:
    """Wires one engine, one rate limiter and one upstream client into every stage."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
        client: DivarClient | None = None,
        emitter: Emitter | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.guards = {stage: StageGuard(stage) for stage in STAGES}
        self.engine = engine or create_engine_from_env(self.settings.db)
        limiter = RateLimiter(max_calls=self.settings.divar.max_requests_per_second, period=1.0)
        self.client = client or DivarClient(
            self.settings.divar,
            rate_limiter=limiter,
            search_timeout=self.settings.harvest.request_timeout,
        )
        self.sessions = SessionPool(self.engine, self.settings.divar.session_cookie)
        self.harvester = Harvester(self.engine, self.client, self.settings.harvest)
        self.fetcher = Fetcher(self.engine, self.client, self.settings.fetch, sessions=self.sessions)
        self.analyzer = Analyzer(self.engine, self.settings.analyze)
        self.matcher = NotificationMatcher(self.engine, self.settings.notifications)
        self.dispatcher = NotificationDispatcher(
            self.engine,
            emitter or emitter_from_config(self.settings.notifications),
            self.settings.notifications,
        )

    async def close(self) -> None:
        await self.client.close()
        close_emitter = getattr(self.dispatcher.emitter, "close", None)
        if close_emitter is not None:
            await close_emitter()

    def _stage(self, name: str):
        handlers = {
            HARVEST: self.harvester.harvest_allowed_scopes,
            FETCH: self.fetcher.fetch_next_posts,
            ANALYZE: self.analyzer.process_pending_jobs,
            MATCH: self.matcher.match_new_posts,
            DISPATCH: self.dispatcher.dispatch_due,
        }
        try:
            return handlers[name]
        except KeyError:
            raise ValueError(f"Unknown stage: {name}") from None

    async def run_stage(self, name: str) -> Any:
        """Run ``name`` under its guard; returns ``None`` when the stage is already running."""
        handler = self._stage(name)
        return await self.guards[name].run(handler)


async def run_once(name: str, settings: Settings | None = None) -> Any:
    """Build a pipeline, run one guarded stage and release its resources."""
    pipeline = Pipeline(settings)
    try:
        result = await pipeline.run_stage(name)
        logger.info("Stage %s finished: %s", name, result)
        return result
    finally:
        await pipeline.close()
