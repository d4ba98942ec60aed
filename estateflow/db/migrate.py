"""Database migration helpers."""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from estateflow.db.session import create_engine_from_env
from estateflow.db.tables import metadata

logger = logging.getLogger(__name__)


def run_migrations(engine: Engine) -> None:
    """Create every pipeline table that does not exist yet."""
    metadata.create_all(engine)
    logger.info("Schema ready (%d tables)", len(metadata.tables))


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
