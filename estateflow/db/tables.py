"""Schema for queues, normalized posts, reference data and notifications."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(20, 2)
Measure = Numeric(14, 2)
Coordinate = Numeric(10, 7)


def _timestamp(name: str, **kwargs) -> Column:
    return Column(name, DateTime(timezone=True), **kwargs)


# Queue statuses
PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
SENT = "SENT"

SOURCE_DIVAR = "DIVAR"

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slug", String(128), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("path", Text, nullable=False),
    Column("depth", Integer, nullable=False, default=0),
    Column("position", Integer, nullable=False, default=0),
    Column("allow_posting", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

provinces = Table(
    "provinces",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("slug", String(128), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("allow_posting", Boolean, nullable=False, default=False),
)

cities = Table(
    "cities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("slug", String(128), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("province_id", Integer, ForeignKey("provinces.id"), nullable=False),
    Column("allow_posting", Boolean, nullable=False, default=False),
)

districts = Table(
    "districts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slug", String(128), nullable=False),
    Column("name", Text, nullable=False),
    Column("city_id", Integer, ForeignKey("cities.id"), nullable=False),
    UniqueConstraint("slug", "city_id", name="uq_districts_slug_city"),
)

read_queue = Table(
    "read_queue",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source", String(32), nullable=False, default=SOURCE_DIVAR),
    Column("external_id", String(64), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("category_slug", String(128)),
    Column("location_scope", String(16), nullable=False),
    Column("province_id", Integer, ForeignKey("provinces.id")),
    Column("city_id", Integer, ForeignKey("cities.id")),
    Column("payload", JSONType),
    Column("status", String(16), nullable=False, default=PENDING),
    Column("fetch_attempts", Integer, nullable=False, default=0),
    _timestamp("requested_at", nullable=False),
    _timestamp("last_fetched_at"),
    _timestamp("created_at", nullable=False),
    _timestamp("updated_at", nullable=False),
    UniqueConstraint("source", "external_id", name="uq_read_queue_source_external"),
    Index("ix_read_queue_status_requested", "status", "requested_at"),
)

analyze_queue = Table(
    "analyze_queue",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("read_queue_id", Integer, ForeignKey("read_queue.id"), nullable=False, unique=True),
    Column("source", String(32), nullable=False, default=SOURCE_DIVAR),
    Column("external_id", String(64), nullable=False),
    Column("payload", JSONType, nullable=False),
    Column("status", String(16), nullable=False, default=PENDING),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("error_message", Text),
    _timestamp("created_at", nullable=False),
    _timestamp("updated_at", nullable=False),
    Index("ix_analyze_queue_status_created", "status", "created_at"),
)

posts = Table(
    "posts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("read_queue_id", Integer, ForeignKey("read_queue.id"), nullable=False, unique=True),
    Column("source", String(32), nullable=False),
    Column("external_id", String(64), nullable=False),
    Column("status", String(16), nullable=False, default=COMPLETED),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("category_slug", String(128), nullable=False),
    Column("cat1", String(128)),
    Column("cat2", String(128)),
    Column("cat3", String(128), nullable=False),
    Column("title", Text),
    Column("seo_title", Text),
    Column("seo_description", Text),
    Column("display_title", Text),
    Column("display_subtitle", Text),
    Column("share_title", Text),
    Column("share_url", Text),
    Column("permalink", Text),
    Column("description", Text),
    Column("contact_uuid", String(64)),
    Column("business_type", String(64)),
    Column("conversion_type", Text),
    _timestamp("expires_at"),
    _timestamp("published_at"),
    Column("published_at_jalali", String(16)),
    Column("jalali_gregorian_date", Date),
    Column("relative_publish_ms", BigInteger),
    Column("relative_publish_text", Text),
    Column("price_total", Money),
    Column("price_per_square", Money),
    Column("deposit_amount", Money),
    Column("rent_amount", Money),
    Column("daily_rate_normal", Money),
    Column("daily_rate_weekend", Money),
    Column("daily_rate_holiday", Money),
    Column("extra_person_fee", Money),
    Column("area", Measure),
    Column("area_label", Text),
    Column("land_area", Measure),
    Column("land_area_label", Text),
    Column("rooms", Integer),
    Column("rooms_label", Text),
    Column("floor", Integer),
    Column("floor_label", Text),
    Column("floors_count", Integer),
    Column("unit_per_floor", Integer),
    Column("year_built", Integer),
    Column("year_built_label", Text),
    Column("capacity", Integer),
    Column("capacity_label", Text),
    Column("has_parking", Boolean),
    Column("has_elevator", Boolean),
    Column("has_warehouse", Boolean),
    Column("has_balcony", Boolean),
    Column("is_rebuilt", Boolean),
    Column("photos_verified", Boolean),
    Column("image_count", Integer),
    Column("latitude", Coordinate),
    Column("longitude", Coordinate),
    Column("province_id", Integer),
    Column("province_name", Text),
    Column("city_id", Integer),
    Column("city_slug", String(128)),
    Column("city_name", Text),
    Column("district_id", Integer, ForeignKey("districts.id")),
    Column("district_slug", String(128)),
    Column("district_name", Text),
    Column("raw_payload", JSONType),
    Column("notifications_checked", Boolean, nullable=False, default=False),
    _timestamp("notifications_checked_at"),
    _timestamp("created_at", nullable=False),
    _timestamp("updated_at", nullable=False),
    Index("ix_posts_unchecked_created", "notifications_checked", "created_at"),
)

post_media = Table(
    "post_media",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("post_id", Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("url", Text, nullable=False),
    Column("thumbnail_url", Text),
    Column("alt", Text),
    UniqueConstraint("post_id", "position", name="uq_post_media_position"),
)

post_attributes = Table(
    "post_attributes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("post_id", Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False),
    Column("key", String(128), nullable=False),
    Column("label", Text),
    Column("type", String(16)),
    Column("string_value", Text),
    Column("number_value", Numeric(20, 4)),
    Column("bool_value", Boolean),
    Column("unit", String(32)),
    Column("raw_value", JSONType),
    Index("ix_post_attributes_post", "post_id"),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text),
    Column("is_active", Boolean, nullable=False, default=True),
)

saved_filters = Table(
    "saved_filters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("payload", JSONType, nullable=False),
    Column("notifications_enabled", Boolean, nullable=False, default=True),
    _timestamp("created_at", nullable=False),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("saved_filter_id", Integer, ForeignKey("saved_filters.id"), nullable=False),
    Column("post_id", Integer, ForeignKey("posts.id"), nullable=False),
    Column("message", Text),
    Column("payload", JSONType),
    Column("status", String(16), nullable=False, default=PENDING),
    Column("attempt_count", Integer, nullable=False, default=0),
    _timestamp("next_attempt_at"),
    Column("last_error", Text),
    _timestamp("delivered_at"),
    _timestamp("created_at", nullable=False),
    UniqueConstraint("saved_filter_id", "post_id", name="uq_notifications_filter_post"),
)

upstream_sessions = Table(
    "upstream_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("label", Text, nullable=False),
    Column("cookie", Text, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    _timestamp("updated_at", nullable=False),
)
