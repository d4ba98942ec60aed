"""Celery configuration for scheduled pipeline stages."""

from __future__ import annotations

import os

from celery import Celery

from estateflow.config import SchedulerConfig
from estateflow.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

_intervals = SchedulerConfig.from_env()

celery_app = Celery("estateflow", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "harvest-posts": {"task": "estateflow.jobs.harvest", "schedule": _intervals.harvest_interval},
    "fetch-posts": {"task": "estateflow.jobs.fetch", "schedule": _intervals.fetch_interval},
    "analyze-posts": {"task": "estateflow.jobs.analyze", "schedule": _intervals.analyze_interval},
    "match-notifications": {"task": "estateflow.jobs.match", "schedule": _intervals.match_interval},
    "dispatch-notifications": {"task": "estateflow.jobs.dispatch", "schedule": _intervals.dispatch_interval},
}


def _run(stage: str) -> None:
    import asyncio

    from dotenv import load_dotenv

    from estateflow.jobs.pipeline import run_once

    load_dotenv()
    asyncio.run(run_once(stage))


@celery_app.task(name="estateflow.jobs.harvest")
def harvest_task():  # pragma: no cover - executed by worker
    _run("harvest")


@celery_app.task(name="estateflow.jobs.fetch")
def fetch_task():  # pragma: no cover - executed by worker
    _run("fetch")


@celery_app.task(name="estateflow.jobs.analyze")
def analyze_task():  # pragma: no cover - executed by worker
    _run("analyze")


@celery_app.task(name="estateflow.jobs.match")
def match_task():  # pragma: no cover - executed by worker
    _run("match")


@celery_app.task(name="estateflow.jobs.dispatch")
def dispatch_task():  # pragma: no cover - executed by worker
    _run("dispatch")
