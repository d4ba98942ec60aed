"""Command line entry point: migrate, run one stage, or run the scheduler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from estateflow.config import Settings
from estateflow.db.migrate import run_migrations
from estateflow.db.session import create_engine_from_env
from estateflow.jobs.pipeline import STAGES, Pipeline, run_once
from estateflow.jobs.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="estateflow", description="Listing ingestion and notification pipeline")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="create missing tables")
    sub.add_parser("schedule", help="run every stage on its interval until interrupted")
    stage = sub.add_parser("stage", help="run a single stage once")
    stage.add_argument("name", choices=STAGES)
    return parser


async def _schedule(settings: Settings) -> None:
    pipeline = Pipeline(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - non-unix
            pass
    try:
        await PipelineScheduler(pipeline, settings.scheduler).run(stop)
    finally:
        await pipeline.close()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings()
    if args.command == "migrate":
        run_migrations(create_engine_from_env(settings.db))
    elif args.command == "schedule":
        if not settings.scheduler.enabled:
            logger.warning("ENABLE_CRON_JOBS is off; scheduler not started")
            return 1
        asyncio.run(_schedule(settings))
    else:
        asyncio.run(run_once(args.name, settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
