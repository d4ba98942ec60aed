"""Authenticated upstream sessions used for detail fetches."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from estateflow.db.tables import upstream_sessions
from estateflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UpstreamSession:
    id: int | None
    label: str
    cookie: str


class SessionPool:
    """Pick the freshest active session, falling back to a configured cookie.

    A session rejected with 401/403 is deactivated immediately. The configured
    cookie has no row, so it is disabled for the lifetime of the pool instead.
    """

    def __init__(self, engine: Engine, fallback_cookie: str | None = None) -> None:
        self.engine = engine
        self.fallback_cookie = fallback_cookie
        self._fallback_disabled = False

    def current(self) -> UpstreamSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(upstream_sessions.c.id, upstream_sessions.c.label, upstream_sessions.c.cookie)
                .where(upstream_sessions.c.active.is_(True))
                .order_by(upstream_sessions.c.updated_at.desc(), upstream_sessions.c.id.desc())
                .limit(1)
            ).first()
        if row is not None:
            return UpstreamSession(id=row.id, label=row.label, cookie=row.cookie)
        if self.fallback_cookie and not self._fallback_disabled:
            return UpstreamSession(id=None, label="configured", cookie=self.fallback_cookie)
        return None

    def deactivate(self, session: UpstreamSession) -> None:
        if session.id is None:
            self._fallback_disabled = True
            logger.warning("Configured session cookie rejected; disabled for this run")
            return
        with self.engine.begin() as conn:
            conn.execute(
                update(upstream_sessions)
                .where(upstream_sessions.c.id == session.id)
                .values(active=False, updated_at=utcnow())
            )
        logger.warning("Deactivated upstream session %s (%s) after authorization failure", session.id, session.label)
