"""Database session helpers."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from estateflow.config import DatabaseConfig


def create_engine_from_env(cfg: DatabaseConfig | None = None) -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    cfg = cfg or DatabaseConfig.from_env()
    return create_engine(cfg.url, pool_pre_ping=True, future=True)
