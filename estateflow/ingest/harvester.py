"""Discover post tokens from scoped search queries and enqueue unseen ones."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Engine

from estateflow.config import HarvestConfig
from estateflow.db.queues import (
    existing_read_items,
    insert_read_items,
    published_at_by_external_id,
    reactivate_read_item,
)
from estateflow.db.tables import FAILED, PROCESSING, categories, cities, provinces
from estateflow.ingest.divar import INITIAL_CUMULATIVE, DivarClient
from estateflow.ingest.models import CITY, PROVINCE, CategoryScope, HarvestSummary, LocationScope
from estateflow.utils.dates import ensure_utc, local_hour, utcnow

logger = logging.getLogger(__name__)

TOKEN_FIELDS = ("token", "post_token", "token_card")
NOT_REACTIVATED = frozenset({PROCESSING, FAILED})


def extract_token(row: dict[str, Any]) -> str | None:
    """Read the post token from a search row; the field name varies across row shapes."""
    data = row.get("data")
    if not isinstance(data, dict):
        return None
    for field in TOKEN_FIELDS:
        candidate = data.get(field)
        if isinstance(candidate, dict):
            candidate = candidate.get("token")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def select_leaf_scopes(rows: list[CategoryScope]) -> list[CategoryScope]:
    """Keep one scope per branch: an eligible descendant suppresses its eligible ancestors."""
    selected: list[CategoryScope] = []
    for category in sorted(rows, key=lambda c: (-c.depth, c.path)):
        covered = any(
            chosen.path == category.path or chosen.path.startswith(f"{category.path}/") for chosen in selected
        )
        if not covered:
            selected.append(category)
    return sorted(selected, key=lambda c: (c.depth, c.path))


@dataclass(slots=True)
class PageOutcome:
    inserted: int = 0
    reactivated: int = 0
    duplicates: int = 0


class Harvester:
    def __init__(
        self,
        engine: Engine,
        client: DivarClient,
        config: HarvestConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.client = client
        self.config = config or HarvestConfig()
        self._sleep = sleep
        self._now = now

    async def harvest_allowed_scopes(self) -> HarvestSummary:
        loop = asyncio.get_running_loop()
        category_scopes = await loop.run_in_executor(None, self.resolve_category_scopes)
        location_scopes = await loop.run_in_executor(None, self.resolve_location_scopes)
        summary = HarvestSummary(categories=len(category_scopes), locations=len(location_scopes))
        if not category_scopes:
            logger.warning("No postable categories found; skipping harvest")
            return summary
        if not location_scopes:
            logger.warning("No postable provinces or cities found; skipping harvest")
            return summary

        for location in location_scopes:
            for category in category_scopes:
                summary.combinations += 1
                try:
                    enqueued, reactivated = await self.harvest_pair(category, location)
                except Exception:
                    logger.exception("Failed to harvest %s -> %s", location.label, category.slug)
                    continue
                summary.enqueued += enqueued
                summary.reactivated += reactivated

        logger.info(
            "Harvest complete: enqueued %d, reactivated %d across %d combinations (%d locations x %d categories)",
            summary.enqueued,
            summary.reactivated,
            summary.combinations,
            summary.locations,
            summary.categories,
        )
        return summary

    def resolve_category_scopes(self) -> list[CategoryScope]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(categories.c.id, categories.c.slug, categories.c.name, categories.c.path, categories.c.depth)
                .where(categories.c.allow_posting.is_(True), categories.c.is_active.is_(True))
                .order_by(categories.c.depth, categories.c.position, categories.c.path)
            ).all()
        scopes = [CategoryScope(id=r.id, slug=r.slug, path=r.path, name=r.name, depth=r.depth) for r in rows]
        return select_leaf_scopes(scopes)

    def resolve_location_scopes(self) -> list[LocationScope]:
        """Eligible provinces, then eligible cities whose province is not itself eligible."""
        with self.engine.connect() as conn:
            province_rows = conn.execute(
                select(provinces.c.id, provinces.c.slug, provinces.c.name)
                .where(provinces.c.allow_posting.is_(True))
                .order_by(provinces.c.name)
            ).all()
            city_query = select(cities.c.id, cities.c.slug, cities.c.name, cities.c.province_id).where(
                cities.c.allow_posting.is_(True)
            )
            province_ids = [row.id for row in province_rows]
            if province_ids:
                city_query = city_query.where(cities.c.province_id.not_in(province_ids))
            city_rows = conn.execute(city_query.order_by(cities.c.name)).all()
        scopes = [LocationScope(kind=PROVINCE, id=r.id, slug=r.slug, name=r.name) for r in province_rows]
        scopes += [
            LocationScope(kind=CITY, id=r.id, slug=r.slug, name=r.name, parent_id=r.province_id) for r in city_rows
        ]
        return scopes

    def page_limit(self, moment: datetime | None = None) -> int | None:
        cfg = self.config
        if cfg.night_start_hour is not None and cfg.night_end_hour is not None:
            hour = local_hour(moment or self._now())
            start, end = cfg.night_start_hour, cfg.night_end_hour
            if start == end:
                at_night = True
            elif start < end:
                at_night = start <= hour < end
            else:
                at_night = hour >= start or hour < end
            if at_night:
                return cfg.night_max_pages
        return cfg.max_pages

    async def harvest_pair(self, category: CategoryScope, location: LocationScope) -> tuple[int, int]:
        loop = asyncio.get_running_loop()
        limit = self.page_limit()
        page = 0
        cursor: str | None = None
        cumulative = INITIAL_CUMULATIVE
        enqueued = reactivated = 0
        while limit is None or page < limit:
            logger.info("Searching %s in %s (page %d)", category.slug, location.label, page)
            result = await self.client.search(category, location, page=page, cursor=cursor, cumulative=cumulative)
            if not result.rows:
                break
            outcome = await loop.run_in_executor(None, self._enqueue_page, result.rows, category, location, page)
            enqueued += outcome.inserted
            reactivated += outcome.reactivated
            cursor = result.next_cursor
            cumulative = result.cumulative
            if not cursor:
                break
            page += 1
            if self.config.page_delay > 0:
                await self._sleep(self.config.page_delay)
        return enqueued, reactivated

    def _enqueue_page(
        self,
        rows: list[dict[str, Any]],
        category: CategoryScope,
        location: LocationScope,
        page: int,
    ) -> PageOutcome:
        outcome = PageOutcome()
        seen: set[str] = set()
        items: dict[str, dict[str, Any]] = {}
        for row in rows:
            token = extract_token(row)
            if not token:
                continue
            if token in seen:
                outcome.duplicates += 1
                logger.warning(
                    "Skipped duplicate token within page | token=%s | category=%s | location=%s | page=%d",
                    token,
                    category.slug,
                    location.label,
                    page,
                )
                continue
            seen.add(token)
            items[token] = {
                "external_id": token,
                "category_id": category.id,
                "category_slug": category.slug,
                "location_scope": location.kind,
                "province_id": location.province_id,
                "city_id": location.city_id,
                "payload": row.get("data"),
            }

        now = self._now()
        with self.engine.begin() as conn:
            existing = existing_read_items(conn, items)
            if existing:
                outcome.reactivated = self._reactivate_stale(conn, existing, items, category, location, now)
            fresh = [item for token, item in items.items() if token not in existing]
            outcome.inserted = insert_read_items(conn, fresh, now=now)
        if outcome.inserted:
            logger.info(
                "Enqueued %d posts for %s in %s on page %d", outcome.inserted, category.slug, location.label, page
            )
        return outcome

    def _reactivate_stale(
        self,
        conn,
        existing: dict[str, Any],
        items: dict[str, dict[str, Any]],
        category: CategoryScope,
        location: LocationScope,
        now: datetime,
    ) -> int:
        """Flip known rows whose last observation is older than the refetch window back to PENDING."""
        threshold = now - timedelta(seconds=self.config.refetch_window_seconds)
        published = published_at_by_external_id(conn, existing)
        reactivated = 0
        for token, record in existing.items():
            if record.status in NOT_REACTIVATED:
                logger.debug("Known token %s is %s; not reactivated", token, record.status)
                continue
            reference = ensure_utc(record.last_fetched_at) if record.last_fetched_at else published.get(token)
            if reference is None:
                logger.warning("Known token %s has no fetch or publish time; not reactivated", token)
                continue
            if reference > threshold:
                continue
            snapshot = {key: value for key, value in items[token].items() if key != "external_id"}
            reactivate_read_item(conn, record.id, snapshot, now=now)
            reactivated += 1
            logger.info(
                "Reactivated token for refetch | token=%s | category=%s | location=%s | stale by %dm",
                token,
                category.slug,
                location.label,
                int((now - reference).total_seconds() // 60),
            )
        return reactivated
