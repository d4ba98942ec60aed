"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import pendulum

DEFAULT_TZ = "Asia/Tehran"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def local_hour(moment: datetime | None = None, tz_name: str | None = None) -> int:
    """Hour of day for ``moment`` (default: now) in the configured timezone."""
    tz = pendulum.timezone(tz_name or timezone_name())
    if moment is None:
        return pendulum.now(tz).hour
    return pendulum.instance(ensure_utc(moment)).in_timezone(tz).hour


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from drivers that drop the offset."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    reference = now or utcnow()
    return max((ensure_utc(retry_at) - ensure_utc(reference)).total_seconds(), 0.0)
