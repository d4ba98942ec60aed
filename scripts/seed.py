"""Seed the database with reference categories and locations."""

from __future__ import annotations

import logging

from dotenv import load_dotenv

from estateflow.db.migrate import run_migrations
from estateflow.db.seed import seed_reference_data
from estateflow.db.session import create_engine_from_env
from estateflow.ingest import load_scopes


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    engine = create_engine_from_env()
    run_migrations(engine)
    counts = seed_reference_data(engine, load_scopes())
    print(f"Seed complete: {counts}")


if __name__ == "__main__":
    main()
