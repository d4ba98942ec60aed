"""Deliver pending notifications through a pluggable emitter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.engine import Engine

from estateflow.config import NotificationConfig
from estateflow.db.tables import FAILED, PENDING, SENT, notifications
from estateflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


class Emitter(Protocol):
    async def emit(self, user_id: int, payload: dict[str, Any]) -> bool: ...


class LogEmitter:
    """Writes notifications to the log; used when no webhook is configured."""

    async def emit(self, user_id: int, payload: dict[str, Any]) -> bool:
        logger.info("Notification (log) → user %s: %s", user_id, payload.get("message"))
        return True


class WebhookEmitter:
    def __init__(self, url: str, *, session: httpx.AsyncClient | None = None, timeout: float = 15.0) -> None:
        self.url = url
        self.session = session or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self.session.aclose()

    async def emit(self, user_id: int, payload: dict[str, Any]) -> bool:
        try:
            response = await self.session.post(self.url, json={"user_id": user_id, **payload})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery to user %s failed: %s", user_id, exc)
            return False
        return True


def emitter_from_config(config: NotificationConfig) -> LogEmitter | WebhookEmitter:
    if config.webhook_url:
        return WebhookEmitter(config.webhook_url)
    return LogEmitter()


@dataclass(slots=True)
class DispatchSummary:
    attempted: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        engine: Engine,
        emitter: Emitter,
        config: NotificationConfig | None = None,
        *,
        batch_size: int = 100,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.emitter = emitter
        self.config = config or NotificationConfig()
        self.batch_size = batch_size
        self._now = now

    async def _db(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _due(self) -> list[Any]:
        now = self._now()
        with self.engine.connect() as conn:
            return conn.execute(
                select(
                    notifications.c.id,
                    notifications.c.user_id,
                    notifications.c.saved_filter_id,
                    notifications.c.post_id,
                    notifications.c.message,
                    notifications.c.payload,
                    notifications.c.attempt_count,
                )
                .where(
                    notifications.c.status == PENDING,
                    or_(notifications.c.next_attempt_at.is_(None), notifications.c.next_attempt_at <= now),
                )
                .order_by(notifications.c.created_at, notifications.c.id)
                .limit(self.batch_size)
            ).all()

    async def dispatch_due(self) -> DispatchSummary:
        summary = DispatchSummary()
        for row in await self._db(self._due):
            summary.attempted += 1
            payload = {
                "notification_id": row.id,
                "saved_filter_id": row.saved_filter_id,
                "post_id": row.post_id,
                "message": row.message,
                "data": row.payload,
            }
            try:
                delivered = await self.emitter.emit(row.user_id, payload)
                error = None if delivered else "emitter reported failure"
            except Exception as exc:
                logger.exception("Emitter raised for notification %s", row.id)
                delivered, error = False, str(exc)
            status = await self._db(self._record, row, delivered, error)
            if status == SENT:
                summary.sent += 1
            elif status == FAILED:
                summary.failed += 1
            else:
                summary.retried += 1
        if summary.attempted:
            logger.info(
                "Dispatched %d notifications: sent=%d retried=%d failed=%d",
                summary.attempted,
                summary.sent,
                summary.retried,
                summary.failed,
            )
        return summary

    def _record(self, row: Any, delivered: bool, error: str | None) -> str:
        now = self._now()
        attempts = row.attempt_count + 1
        if delivered:
            values: dict[str, Any] = {"status": SENT, "attempt_count": attempts, "delivered_at": now, "last_error": None}
        elif attempts >= self.config.max_attempts:
            values = {"status": FAILED, "attempt_count": attempts, "last_error": error}
            logger.warning(
                "Notification %s exhausted delivery attempts (%d)", row.id, self.config.max_attempts
            )
        else:
            values = {
                "status": PENDING,
                "attempt_count": attempts,
                "last_error": error,
                "next_attempt_at": now + timedelta(seconds=self.config.retry_interval),
            }
            logger.info("Scheduled retry #%d for notification %s", attempts, row.id)
        with self.engine.begin() as conn:
            conn.execute(update(notifications).where(notifications.c.id == row.id).values(**values))
        return values["status"]
