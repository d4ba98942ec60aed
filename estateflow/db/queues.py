"""Durable read and analyze queues.

Every state change claims rows before work starts: a batch is reserved (select
plus update in one transaction) and only then fetched, and each outcome is a
single transition recorded against the reserved row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from estateflow.db.tables import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    SOURCE_DIVAR,
    analyze_queue,
    cities,
    posts,
    provinces,
    read_queue,
)
from estateflow.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadJob:
    id: int
    source: str
    external_id: str
    fetch_attempts: int


@dataclass(slots=True)
class AnalyzeJob:
    id: int
    read_queue_id: int
    source: str
    external_id: str
    payload: Any
    retry_count: int
    created_at: datetime | None
    category_id: int | None
    category_slug: str | None
    province_id: int | None
    province_name: str | None
    city_id: int | None
    city_slug: str | None
    city_name: str | None
    last_fetched_at: datetime | None
    read_updated_at: datetime | None
    requested_at: datetime | None
    read_created_at: datetime | None

    @property
    def anchor(self) -> datetime | None:
        """Best known moment the upstream listing was observed."""
        for value in (self.last_fetched_at, self.read_updated_at, self.requested_at, self.read_created_at, self.created_at):
            if value is not None:
                return ensure_utc(value)
        return None


def _optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


# Harvest side


def existing_read_items(conn: Connection, external_ids: Iterable[str], *, source: str = SOURCE_DIVAR) -> dict[str, Any]:
    """Rows already queued for ``external_ids``, found with one batched IN query."""
    ids = list(external_ids)
    if not ids:
        return {}
    rows = conn.execute(
        select(
            read_queue.c.id,
            read_queue.c.external_id,
            read_queue.c.status,
            read_queue.c.payload,
            read_queue.c.last_fetched_at,
        ).where(read_queue.c.source == source, read_queue.c.external_id.in_(ids))
    ).all()
    return {row.external_id: row for row in rows}


def published_at_by_external_id(conn: Connection, external_ids: Iterable[str], *, source: str = SOURCE_DIVAR) -> dict[str, datetime | None]:
    ids = list(external_ids)
    if not ids:
        return {}
    rows = conn.execute(
        select(posts.c.external_id, posts.c.published_at).where(posts.c.source == source, posts.c.external_id.in_(ids))
    ).all()
    return {row.external_id: _optional_utc(row.published_at) for row in rows}


def insert_read_items(conn: Connection, items: Sequence[dict[str, Any]], *, now: datetime | None = None) -> int:
    if not items:
        return 0
    now = now or utcnow()
    rows = [
        {
            "source": SOURCE_DIVAR,
            "status": PENDING,
            "fetch_attempts": 0,
            "requested_at": now,
            "created_at": now,
            "updated_at": now,
            **item,
        }
        for item in items
    ]
    conn.execute(insert(read_queue), rows)
    return len(rows)


def reactivate_read_item(conn: Connection, item_id: int, snapshot: dict[str, Any] | None, *, now: datetime | None = None) -> None:
    """Put a known row back in line for a refetch without creating a new row."""
    now = now or utcnow()
    values: dict[str, Any] = {
        "status": PENDING,
        "fetch_attempts": 0,
        "requested_at": now,
        "updated_at": now,
    }
    if snapshot:
        values.update(snapshot)
    conn.execute(update(read_queue).where(read_queue.c.id == item_id).values(**values))


# Fetch side


def release_stuck_reads(engine: Engine, timeout_seconds: float, *, now: datetime | None = None) -> int:
    """Return rows left in PROCESSING longer than ``timeout_seconds`` to PENDING."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    with engine.begin() as conn:
        result = conn.execute(
            update(read_queue)
            .where(read_queue.c.status == PROCESSING, read_queue.c.updated_at < cutoff)
            .values(status=PENDING, requested_at=now, fetch_attempts=0, updated_at=now)
        )
    released = result.rowcount or 0
    if released:
        logger.warning("Released %d stuck read-queue items back to PENDING", released)
    return released


def reserve_read_batch(engine: Engine, limit: int, *, now: datetime | None = None) -> list[ReadJob]:
    """Claim up to ``limit`` PENDING rows, oldest request first."""
    now = now or utcnow()
    with engine.begin() as conn:
        rows = conn.execute(
            select(
                read_queue.c.id,
                read_queue.c.source,
                read_queue.c.external_id,
                read_queue.c.fetch_attempts,
            )
            .where(read_queue.c.status == PENDING)
            .order_by(read_queue.c.requested_at, read_queue.c.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).all()
        if not rows:
            return []
        claimed = set(
            conn.execute(
                update(read_queue)
                .where(read_queue.c.id.in_([row.id for row in rows]), read_queue.c.status == PENDING)
                .values(status=PROCESSING, updated_at=now)
                .returning(read_queue.c.id)
            ).scalars()
        )
    return [
        ReadJob(id=row.id, source=row.source, external_id=row.external_id, fetch_attempts=row.fetch_attempts)
        for row in rows
        if row.id in claimed
    ]


def complete_fetch(engine: Engine, job: ReadJob, payload: Any, *, now: datetime | None = None) -> None:
    """Mark the read row COMPLETED and upsert its analyze row in one transaction."""
    now = now or utcnow()
    with engine.begin() as conn:
        conn.execute(
            update(read_queue)
            .where(read_queue.c.id == job.id)
            .values(status=COMPLETED, last_fetched_at=now, updated_at=now)
        )
        existing = conn.execute(
            select(analyze_queue.c.id).where(analyze_queue.c.read_queue_id == job.id)
        ).scalar_one_or_none()
        if existing:
            conn.execute(
                update(analyze_queue)
                .where(analyze_queue.c.id == existing)
                .values(payload=payload, status=PENDING, retry_count=0, error_message=None, updated_at=now)
            )
        else:
            conn.execute(
                insert(analyze_queue).values(
                    read_queue_id=job.id,
                    source=job.source,
                    external_id=job.external_id,
                    payload=payload,
                    status=PENDING,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )


def record_fetch_failure(engine: Engine, job: ReadJob, max_attempts: int, *, now: datetime | None = None) -> str:
    """Charge one attempt; the row becomes FAILED once ``max_attempts`` is reached."""
    now = now or utcnow()
    attempts = job.fetch_attempts + 1
    status = FAILED if attempts >= max_attempts else PENDING
    with engine.begin() as conn:
        conn.execute(
            update(read_queue)
            .where(read_queue.c.id == job.id)
            .values(fetch_attempts=attempts, status=status, last_fetched_at=now, updated_at=now)
        )
    job.fetch_attempts = attempts
    return status


def release_read_item(engine: Engine, job: ReadJob, *, now: datetime | None = None) -> None:
    """Hand a reserved row back to PENDING without charging an attempt."""
    now = now or utcnow()
    with engine.begin() as conn:
        conn.execute(update(read_queue).where(read_queue.c.id == job.id).values(status=PENDING, updated_at=now))


# Analyze side


def pending_analyze_jobs(engine: Engine, limit: int) -> list[AnalyzeJob]:
    """Oldest PENDING analyze rows together with their read row and reference names."""
    stmt = (
        select(
            analyze_queue.c.id,
            analyze_queue.c.read_queue_id,
            analyze_queue.c.source,
            analyze_queue.c.external_id,
            analyze_queue.c.payload,
            analyze_queue.c.retry_count,
            analyze_queue.c.created_at,
            read_queue.c.category_id,
            read_queue.c.category_slug,
            read_queue.c.province_id,
            read_queue.c.city_id,
            read_queue.c.last_fetched_at,
            read_queue.c.updated_at.label("read_updated_at"),
            read_queue.c.requested_at,
            read_queue.c.created_at.label("read_created_at"),
            provinces.c.name.label("province_name"),
            cities.c.slug.label("city_slug"),
            cities.c.name.label("city_name"),
        )
        .select_from(
            analyze_queue.join(read_queue, read_queue.c.id == analyze_queue.c.read_queue_id)
            .outerjoin(provinces, provinces.c.id == read_queue.c.province_id)
            .outerjoin(cities, cities.c.id == read_queue.c.city_id)
        )
        .where(analyze_queue.c.status == PENDING)
        .order_by(analyze_queue.c.created_at, analyze_queue.c.id)
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return [
        AnalyzeJob(
            id=row.id,
            read_queue_id=row.read_queue_id,
            source=row.source,
            external_id=row.external_id,
            payload=row.payload,
            retry_count=row.retry_count,
            created_at=_optional_utc(row.created_at),
            category_id=row.category_id,
            category_slug=row.category_slug,
            province_id=row.province_id,
            province_name=row.province_name,
            city_id=row.city_id,
            city_slug=row.city_slug,
            city_name=row.city_name,
            last_fetched_at=_optional_utc(row.last_fetched_at),
            read_updated_at=_optional_utc(row.read_updated_at),
            requested_at=_optional_utc(row.requested_at),
            read_created_at=_optional_utc(row.read_created_at),
        )
        for row in rows
    ]


def complete_analyze(conn: Connection, job_id: int, *, now: datetime | None = None) -> None:
    conn.execute(
        update(analyze_queue)
        .where(analyze_queue.c.id == job_id)
        .values(status=COMPLETED, retry_count=0, error_message=None, updated_at=now or utcnow())
    )


def record_analyze_failure(engine: Engine, job: AnalyzeJob, message: str, max_attempts: int, *, now: datetime | None = None) -> str:
    """Charge one retry and keep the error; FAILED once ``max_attempts`` is reached."""
    retries = job.retry_count + 1
    status = FAILED if retries >= max_attempts else PENDING
    with engine.begin() as conn:
        conn.execute(
            update(analyze_queue)
            .where(analyze_queue.c.id == job.id)
            .values(retry_count=retries, status=status, error_message=message, updated_at=now or utcnow())
        )
    job.retry_count = retries
    return status
