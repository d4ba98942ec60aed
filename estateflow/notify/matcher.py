"""Match freshly normalized posts against users' saved filters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from estateflow.config import NotificationConfig
from estateflow.db.tables import PENDING, notifications, posts, saved_filters, users
from estateflow.ingest.models import MatchSummary
from estateflow.logic.post_query import PostCriteria, build_post_query
from estateflow.logic.saved_filters import normalize_saved_filter_payload
from estateflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = (
    "id",
    "external_id",
    "title",
    "description",
    "price_total",
    "rent_amount",
    "deposit_amount",
    "area",
    "rooms",
    "province_name",
    "city_name",
    "district_name",
    "permalink",
    "published_at",
)


@dataclass(slots=True)
class ActiveFilter:
    id: int
    name: str
    user_id: int
    criteria: PostCriteria


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if value is not None and not isinstance(value, (str, int, float, bool)):
        return str(value)
    return value


def build_payload_snapshot(post: dict[str, Any], active: ActiveFilter) -> dict[str, Any]:
    return {
        "filter": {"id": active.id, "name": active.name},
        "post": {key: _json_value(post.get(key)) for key in SNAPSHOT_COLUMNS},
    }


class NotificationMatcher:
    def __init__(
        self,
        engine: Engine,
        config: NotificationConfig | None = None,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.config = config or NotificationConfig()
        self._now = now

    async def match_new_posts(self) -> MatchSummary:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.match_new_posts_sync)

    def match_new_posts_sync(self) -> MatchSummary:
        summary = MatchSummary()
        window_start = self._now() - timedelta(minutes=self.config.scan_window_minutes)
        filters = self.load_active_filters()

        while True:
            with self.engine.connect() as conn:
                candidate_ids = list(
                    conn.execute(
                        select(posts.c.id)
                        .where(posts.c.notifications_checked.is_(False), posts.c.created_at >= window_start)
                        .order_by(posts.c.created_at, posts.c.id)
                        .limit(self.config.scan_batch_size)
                    ).scalars()
                )
            if not candidate_ids:
                break
            summary.batches += 1
            summary.posts += len(candidate_ids)
            summary.notifications += self._process_batch(filters, candidate_ids)
            with self.engine.begin() as conn:
                conn.execute(
                    update(posts)
                    .where(posts.c.id.in_(candidate_ids), posts.c.notifications_checked.is_(False))
                    .values(notifications_checked=True, notifications_checked_at=self._now())
                )

        if summary.posts:
            logger.info(
                "Matched %d posts in %d batches against %d filters; %d notifications",
                summary.posts,
                summary.batches,
                len(filters),
                summary.notifications,
            )
        return summary

    def load_active_filters(self) -> list[ActiveFilter]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(saved_filters.c.id, saved_filters.c.name, saved_filters.c.user_id, saved_filters.c.payload)
                .select_from(saved_filters.join(users, users.c.id == saved_filters.c.user_id))
                .where(saved_filters.c.notifications_enabled.is_(True), users.c.is_active.is_(True))
                .order_by(saved_filters.c.created_at, saved_filters.c.id)
            ).all()
        return [
            ActiveFilter(
                id=row.id,
                name=row.name,
                user_id=row.user_id,
                criteria=PostCriteria.from_saved_filter(normalize_saved_filter_payload(row.payload)),
            )
            for row in rows
        ]

    def _process_batch(self, filters: list[ActiveFilter], candidate_ids: list[int]) -> int:
        created = 0
        for active in filters:
            try:
                created += self._evaluate_filter(active, candidate_ids)
            except Exception:
                logger.exception("Failed to evaluate filter %s for user %s", active.id, active.user_id)
        return created

    def _evaluate_filter(self, active: ActiveFilter, candidate_ids: list[int]) -> int:
        query = build_post_query(active.criteria, candidate_ids, now=self._now())
        with self.engine.connect() as conn:
            matched_ids = list(conn.execute(query).scalars())
            if not matched_ids:
                return 0
            rows = conn.execute(
                select(*(posts.c[name] for name in SNAPSHOT_COLUMNS)).where(posts.c.id.in_(matched_ids))
            ).mappings().all()
        created = 0
        for post in rows:
            if self.create_notification(active, dict(post)):
                created += 1
        return created

    def create_notification(self, active: ActiveFilter, post: dict[str, Any]) -> bool:
        """Insert one notification; a second match for the same filter and post is a no-op."""
        now = self._now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(notifications).values(
                        user_id=active.user_id,
                        saved_filter_id=active.id,
                        post_id=post["id"],
                        message=post.get("title") or post.get("description"),
                        payload=build_payload_snapshot(post, active),
                        status=PENDING,
                        attempt_count=0,
                        next_attempt_at=now,
                        created_at=now,
                    )
                )
        except IntegrityError:
            logger.debug(
                "Notification already exists for user %s -> filter %s -> post %s",
                active.user_id,
                active.id,
                post["id"],
            )
            return False
        return True
