"""Environment-driven settings for every pipeline stage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "postgresql+psycopg://estateflow:estateflow@db:5432/estateflow"


def _env_int(key: str, default: int | None) -> int | None:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(float(value))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _page_limit(value: int | None, fallback: int) -> int | None:
    """Resolve a page cap: unset uses the fallback, zero or negative disables the cap."""
    if value is None:
        return fallback
    if value <= 0:
        return None
    return value


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(url=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))


@dataclass(frozen=True)
class DivarConfig:
    search_url: str = "https://api.divar.ir/v8/postlist/w/search"
    detail_url: str = "https://api.divar.ir/v8/posts-v2/web"
    session_cookie: str | None = None
    max_requests_per_second: int = 3

    @classmethod
    def from_env(cls) -> DivarConfig:
        return cls(session_cookie=os.environ.get("DIVAR_SESSION_COOKIE") or None)


@dataclass(frozen=True)
class HarvestConfig:
    max_pages: int | None = 20
    night_max_pages: int | None = 5
    night_start_hour: int | None = None
    night_end_hour: int | None = None
    page_delay: float = 0.75
    request_timeout: float = 15.0
    refetch_window_minutes: int = 4 * 60

    @classmethod
    def from_env(cls) -> HarvestConfig:
        return cls(
            max_pages=_page_limit(_env_int("DIVAR_HARVEST_MAX_PAGES", None), 20),
            night_max_pages=_page_limit(_env_int("DIVAR_HARVEST_MAX_PAGES_NIGHT", None), 5),
            night_start_hour=_env_int("DIVAR_HARVEST_NIGHT_START_HOUR", None),
            night_end_hour=_env_int("DIVAR_HARVEST_NIGHT_END_HOUR", None),
            page_delay=_env_float("DIVAR_HARVEST_DELAY_MS", 750.0) / 1000.0,
            request_timeout=_env_float("DIVAR_HARVEST_TIMEOUT_MS", 15000.0) / 1000.0,
            refetch_window_minutes=_env_int("DIVAR_REFETCH_WINDOW_MINUTES", 4 * 60) or 4 * 60,
        )

    @property
    def refetch_window_seconds(self) -> float:
        return max(self.refetch_window_minutes, 60) * 60.0


@dataclass(frozen=True)
class FetchConfig:
    batch_size: int = 2
    request_timeout: float = 15.0
    max_attempts: int = 5
    min_batch_interval: float = 1.0
    default_retry_after: float = 5.0
    processing_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> FetchConfig:
        return cls(
            batch_size=_env_int("DIVAR_POST_FETCH_BATCH_SIZE", 2) or 2,
            request_timeout=_env_float("DIVAR_POST_FETCH_TIMEOUT_MS", 15000.0) / 1000.0,
        )


@dataclass(frozen=True)
class AnalyzeConfig:
    batch_size: int = 100
    chunk_size: int = 50
    chunk_interval: float = 1.0
    max_attempts: int = 5

    @classmethod
    def from_env(cls) -> AnalyzeConfig:
        return cls(batch_size=_env_int("DIVAR_POST_ANALYZE_BATCH_SIZE", 100) or 100)


@dataclass(frozen=True)
class NotificationConfig:
    scan_window_minutes: int = 10
    scan_batch_size: int = 50
    retry_interval: float = 180.0
    max_attempts: int = 3
    webhook_url: str | None = None

    @classmethod
    def from_env(cls) -> NotificationConfig:
        return cls(
            scan_window_minutes=_env_int("NOTIFICATION_WINDOW_MINUTES", 10) or 10,
            scan_batch_size=_env_int("NOTIFICATION_SCAN_BATCH_SIZE", 50) or 50,
            retry_interval=_env_float("NOTIFICATION_RETRY_INTERVAL_MS", 180000.0) / 1000.0,
            max_attempts=_env_int("NOTIFICATION_MAX_ATTEMPTS", 3) or 3,
            webhook_url=os.environ.get("NOTIFICATION_WEBHOOK_URL") or None,
        )


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = False
    harvest_interval: float = 10.0
    fetch_interval: float = 10.0
    analyze_interval: float = 10.0
    match_interval: float = 60.0
    dispatch_interval: float = 30.0

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            enabled=_env_bool("ENABLE_CRON_JOBS"),
            harvest_interval=_env_float("HARVEST_INTERVAL_SECONDS", 10.0),
            fetch_interval=_env_float("FETCH_INTERVAL_SECONDS", 10.0),
            analyze_interval=_env_float("ANALYZE_INTERVAL_SECONDS", 10.0),
            match_interval=_env_float("MATCH_INTERVAL_SECONDS", 60.0),
            dispatch_interval=_env_float("DISPATCH_INTERVAL_SECONDS", 30.0),
        )


@dataclass
class Settings:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    divar: DivarConfig = field(default_factory=DivarConfig.from_env)
    harvest: HarvestConfig = field(default_factory=HarvestConfig.from_env)
    fetch: FetchConfig = field(default_factory=FetchConfig.from_env)
    analyze: AnalyzeConfig = field(default_factory=AnalyzeConfig.from_env)
    notifications: NotificationConfig = field(default_factory=NotificationConfig.from_env)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig.from_env)
