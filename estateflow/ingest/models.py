"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

PROVINCE = "PROVINCE"
CITY = "CITY"


@dataclass(slots=True)
class CategoryScope:
    id: int
    slug: str
    path: str
    name: str = ""
    depth: int = 0


@dataclass(slots=True)
class LocationScope:
    kind: str  # PROVINCE or CITY
    id: int
    slug: str
    name: str = ""
    parent_id: int | None = None

    @property
    def label(self) -> str:
        return f"{self.kind.lower()}:{self.slug}"

    @property
    def city_ids(self) -> list[str]:
        return [str(self.id)]

    @property
    def province_id(self) -> int | None:
        return self.id if self.kind == PROVINCE else self.parent_id

    @property
    def city_id(self) -> int | None:
        return self.id if self.kind == CITY else None


@dataclass(slots=True)
class SearchPage:
    rows: list[dict[str, Any]]
    next_cursor: str | None
    cumulative: int


@dataclass(slots=True)
class ParsedMedia:
    url: str
    position: int
    thumbnail_url: str | None = None
    alt: str | None = None


@dataclass(slots=True)
class ParsedAttribute:
    key: str
    label: str | None = None
    type: str | None = None
    string_value: str | None = None
    number_value: Decimal | None = None
    bool_value: bool | None = None
    unit: str | None = None
    raw_value: Any = None


@dataclass(slots=True)
class ParsedPost:
    title: str | None = None
    seo_title: str | None = None
    seo_description: str | None = None
    display_title: str | None = None
    display_subtitle: str | None = None
    share_title: str | None = None
    share_url: str | None = None
    permalink: str | None = None
    description: str | None = None
    contact_uuid: str | None = None
    business_type: str | None = None
    conversion_type: str | None = None
    cat1: str | None = None
    cat2: str | None = None
    cat3: str | None = None
    province_id: int | None = None
    city_id: int | None = None
    city_slug: str | None = None
    city_name: str | None = None
    district_slug: str | None = None
    district_name: str | None = None
    price_total: Decimal | None = None
    price_per_square: Decimal | None = None
    deposit_amount: Decimal | None = None
    rent_amount: Decimal | None = None
    daily_rate_normal: Decimal | None = None
    daily_rate_weekend: Decimal | None = None
    daily_rate_holiday: Decimal | None = None
    extra_person_fee: Decimal | None = None
    area: Decimal | None = None
    area_label: str | None = None
    land_area: Decimal | None = None
    land_area_label: str | None = None
    rooms: int | None = None
    rooms_label: str | None = None
    floor: int | None = None
    floor_label: str | None = None
    floors_count: int | None = None
    unit_per_floor: int | None = None
    year_built: int | None = None
    year_built_label: str | None = None
    capacity: int | None = None
    capacity_label: str | None = None
    has_parking: bool | None = None
    has_elevator: bool | None = None
    has_warehouse: bool | None = None
    has_balcony: bool | None = None
    is_rebuilt: bool | None = None
    photos_verified: bool | None = None
    image_count: int | None = None
    latitude: Decimal | None = None
    longitude: Decimal | None = None
    expires_at: datetime | None = None
    published_at_jalali: str | None = None
    jalali_gregorian_date: date | None = None
    relative_publish_ms: int | None = None
    relative_publish_text: str | None = None
    medias: list[ParsedMedia] = field(default_factory=list)
    attributes: list[ParsedAttribute] = field(default_factory=list)


@dataclass(slots=True)
class HarvestSummary:
    categories: int = 0
    locations: int = 0
    combinations: int = 0
    enqueued: int = 0
    reactivated: int = 0


@dataclass(slots=True)
class FetchSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    throttled: int = 0


@dataclass(slots=True)
class AnalyzeSummary:
    processed: int = 0
    failed: int = 0


@dataclass(slots=True)
class MatchSummary:
    batches: int = 0
    posts: int = 0
    notifications: int = 0
