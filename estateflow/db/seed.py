"""Load reference categories and locations into the database."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Table, insert, select, update
from sqlalchemy.engine import Connection, Engine

from estateflow.db.tables import categories, cities, districts, provinces

logger = logging.getLogger(__name__)


def _upsert(conn: Connection, table: Table, keys: tuple[str, ...], row: dict[str, Any]) -> None:
    match = [table.c[key] == row[key] for key in keys]
    existing = conn.execute(select(table.c.id).where(*match)).scalar_one_or_none()
    values = {key: value for key, value in row.items() if key in table.c}
    if existing is not None:
        conn.execute(update(table).where(table.c.id == existing).values(**values))
    else:
        conn.execute(insert(table).values(**values))


def seed_reference_data(engine: Engine, scopes: dict[str, list[dict[str, Any]]]) -> dict[str, int]:
    """Insert or refresh every reference row; safe to run repeatedly."""
    counts = {}
    with engine.begin() as conn:
        for table, keys in (
            (categories, ("slug",)),
            (provinces, ("id",)),
            (cities, ("id",)),
            (districts, ("slug", "city_id")),
        ):
            rows = scopes.get(table.name) or []
            for row in rows:
                _upsert(conn, table, keys, row)
            counts[table.name] = len(rows)
    logger.info("Seeded reference data: %s", ", ".join(f"{name}={count}" for name, count in counts.items()))
    return counts
