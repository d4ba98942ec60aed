"""Translate saved-filter criteria into a Core query over normalized posts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import Select, and_, exists, or_, select
from sqlalchemy.sql.elements import ColumnElement

from estateflow.db.tables import post_attributes, posts
from estateflow.logic.saved_filters import SavedFilterPayload, parse_optional_number
from estateflow.utils.dates import utcnow
from estateflow.utils.persian import current_jalali_year, to_persian_digits

logger = logging.getLogger(__name__)

DECIMAL = "decimal"
INT = "int"


@dataclass(frozen=True, slots=True)
class RangeField:
    column: str
    kind: str
    age_to_year_built: bool = False


NUMBER_RANGE_FIELDS = {
    "price": RangeField("price_total", DECIMAL),
    "price_per_square": RangeField("price_per_square", DECIMAL),
    "rent": RangeField("rent_amount", DECIMAL),
    "credit": RangeField("deposit_amount", DECIMAL),
    "size": RangeField("area", INT),
    "floor": RangeField("floor", INT),
    "floors_count": RangeField("floors_count", INT),
    "unit_per_floor": RangeField("unit_per_floor", INT),
    "land_area": RangeField("land_area", INT),
    "person_capacity": RangeField("capacity", INT),
    "daily_rent": RangeField("daily_rate_normal", DECIMAL),
    "building-age": RangeField("year_built", INT, age_to_year_built=True),
}

BOOLEAN_COLUMNS = {
    "parking": "has_parking",
    "elevator": "has_elevator",
    "warehouse": "has_warehouse",
    "balcony": "has_balcony",
    "rebuilt": "is_rebuilt",
}


def _value_map(entries: dict[str, str]) -> dict[str, str]:
    """Accept both the client key and the stored Persian label."""
    mapping = dict(entries)
    mapping.update({label: label for label in entries.values()})
    return mapping


ATTRIBUTE_STRING_VALUES = {
    "building_direction": _value_map(
        {"north": "شمالی", "south": "جنوبی", "east": "شرقی", "west": "غربی"}
    ),
    "cooling_system": _value_map(
        {
            "water_cooler": "سرمایش کولر آبی",
            "air_conditioner": "سرمایش کولر گازی",
            "duct_split": "سرمایش داکت اسپلیت",
            "split": "سرمایش اسپلیت",
            "fan_coil": "سرمایش فن کوئل",
        }
    ),
    "heating_system": _value_map(
        {
            "heater": "گرمایش بخاری",
            "shoofaj": "گرمایش شوفاژ",
            "fan_coil": "گرمایش فن کوئل",
            "floor_heating": "گرمایش از کف",
            "duct_split": "گرمایش داکت اسپلیت",
            "split": "گرمایش اسپلیت",
            "fireplace": "گرمایش شومینه",
        }
    ),
    "floor_type": _value_map(
        {
            "ceramic": "جنس کف سرامیک",
            "wood_parquet": "جنس کف پارکت چوب",
            "laminate_parquet": "جنس کف پارکت لمینت",
            "stone": "جنس کف سنگ",
            "floor_covering": "جنس کف کفپوش PVC",
            "carpet": "جنس کف موکت",
            "mosaic": "جنس کف موزائیک",
        }
    ),
    "warm_water_provider": _value_map(
        {
            "water_heater": "تأمین‌کننده آب گرم آبگرم‌کن",
            "powerhouse": "تأمین‌کننده آب گرم موتورخانه",
            "package": "تأمین‌کننده آب گرم پکیج",
        }
    ),
    "toilet": _value_map(
        {
            "squat": "سرویس بهداشتی ایرانی",
            "seat": "سرویس بهداشتی فرنگی",
            "squat_seat": "سرویس بهداشتی ایرانی و فرنگی",
        }
    ),
    "deed_type": _value_map(
        {
            "single_page": "تک‌برگ",
            "multi_page": "منگوله‌دار",
            "written_agreement": "قول‌نامه‌ای",
            "other": "سایر",
        }
    ),
}

NO_ROOMS_LABEL = "بدون اتاق"
FOUR_PLUS_LABELS = ("+۴", "۴+")
PLUS = "PLUS"
ROOM_VALUES: dict[str, int | str] = {
    NO_ROOMS_LABEL: 0,
    "بدون": 0,
    "یک": 1,
    "دو": 2,
    "سه": 3,
    "چهار": 4,
    "۴": 4,
    "چهار+": PLUS,
    "بیشتر": PLUS,
    "+۴": PLUS,
    "۴+": PLUS,
}

BUSINESS_TYPES = {
    "personal": ["personal"],
    "real-estate-business": ["premium-panel", "real-estate-business"],
    "premium-panel": ["premium-panel"],
}

RECENT_AD_WINDOWS = {
    "3h": timedelta(hours=3),
    "12h": timedelta(hours=12),
    "1d": timedelta(days=1),
    "3d": timedelta(days=3),
    "7d": timedelta(days=7),
}


@dataclass(slots=True)
class PostCriteria:
    province_id: int | None = None
    city_ids: list[int] | None = None
    district_ids: list[int] | None = None
    category_slug: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_saved_filter(cls, payload: SavedFilterPayload) -> PostCriteria:
        return cls(
            province_id=payload.province_id,
            city_ids=payload.cities.custom_ids,
            district_ids=payload.districts.custom_ids,
            category_slug=payload.category.slug,
            filters=payload.filters_for_category() or {},
        )


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]


def _range_bounds(value: Any) -> tuple[Any, Any] | None:
    if not isinstance(value, dict):
        return None
    low = parse_optional_number(value.get("min"))
    high = parse_optional_number(value.get("max"))
    if low is None and high is None:
        return None
    return low, high


def age_to_year_built(low: Any, high: Any, *, today: date | None = None) -> tuple[int | None, int | None] | None:
    """An age range in years becomes a Jalali build-year range; the bounds swap roles."""
    current = current_jalali_year(today)
    year_min = max(0, current - max(0, int(high))) if high is not None else None
    year_max = max(0, current - max(0, int(low))) if low is not None else None
    if year_min is not None and year_max is not None and year_min > year_max:
        year_min, year_max = year_max, year_min
    if year_min is None and year_max is None:
        return None
    return year_min, year_max


def _number_range_clauses(key: str, range_field: RangeField, value: Any, today: date | None) -> list[ColumnElement]:
    bounds = _range_bounds(value)
    if bounds is None:
        logger.debug("Post filter %s has an invalid range payload", key)
        return []
    low, high = bounds
    if range_field.age_to_year_built:
        converted = age_to_year_built(low, high, today=today)
        if converted is None:
            logger.debug("Post filter %s has an invalid age range", key)
            return []
        low, high = converted
    column = posts.c[range_field.column]
    cast = (lambda v: Decimal(str(v))) if range_field.kind == DECIMAL else int
    clauses = []
    if low is not None:
        clauses.append(column >= cast(low))
    if high is not None:
        clauses.append(column <= cast(high))
    return clauses


def _rooms_clause(value: Any) -> ColumnElement | None:
    four_plus = or_(posts.c.rooms >= 4, posts.c.rooms_label.in_(FOUR_PLUS_LABELS))
    options: list[ColumnElement] = []
    for selection in _string_list(value):
        if selection == NO_ROOMS_LABEL:
            options.append(or_(posts.c.rooms == 0, posts.c.rooms_label == NO_ROOMS_LABEL))
            continue
        mapped = ROOM_VALUES.get(selection)
        if mapped == PLUS:
            options.append(four_plus)
            continue
        if mapped is None:
            parsed = parse_optional_number("".join(ch for ch in selection if ch.isdigit() or ch in ".-"))
            if parsed is None:
                continue
            mapped = int(parsed)
        rooms = int(mapped)
        persian = to_persian_digits(rooms)
        labels = {persian, str(rooms)}
        if rooms >= 4:
            labels.update({f"+{persian}", f"{persian}+"})
        options.append(or_(posts.c.rooms == rooms, posts.c.rooms_label.in_(sorted(labels))))
    return or_(*options) if options else None


def _attribute_clause(key: str, value: Any) -> ColumnElement | None:
    mapping = ATTRIBUTE_STRING_VALUES[key]
    resolved = sorted({mapping.get(entry, entry) for entry in _string_list(value)})
    if not resolved:
        return None
    return exists().where(
        post_attributes.c.post_id == posts.c.id,
        post_attributes.c.string_value.in_(resolved),
    )


def _business_type_clause(value: Any) -> ColumnElement | None:
    resolved: set[str] = set()
    for entry in _string_list(value):
        resolved.update(BUSINESS_TYPES.get(entry, [entry]))
    return posts.c.business_type.in_(sorted(resolved)) if resolved else None


def category_filter_clauses(
    filters: dict[str, Any],
    *,
    now: datetime | None = None,
) -> list[ColumnElement]:
    clauses: list[ColumnElement] = []
    unhandled: list[str] = []
    for key, value in filters.items():
        if key in NUMBER_RANGE_FIELDS:
            clauses += _number_range_clauses(key, NUMBER_RANGE_FIELDS[key], value, now.date() if now else None)
        elif key in BOOLEAN_COLUMNS:
            if value is True:
                clauses.append(posts.c[BOOLEAN_COLUMNS[key]].is_(True))
        elif key == "has-photo":
            if value is True:
                clauses.append(posts.c.image_count > 0)
        elif key == "rooms":
            clause = _rooms_clause(value)
            if clause is not None:
                clauses.append(clause)
        elif key == "business-type":
            clause = _business_type_clause(value)
            if clause is not None:
                clauses.append(clause)
        elif key == "recent_ads":
            window = RECENT_AD_WINDOWS.get(value) if isinstance(value, str) else None
            if window is not None:
                clauses.append(posts.c.published_at >= (now or utcnow()) - window)
        elif key in ATTRIBUTE_STRING_VALUES:
            clause = _attribute_clause(key, value)
            if clause is not None:
                clauses.append(clause)
        else:
            unhandled.append(key)
    for key in unhandled:
        logger.debug("Post filter key %r is unsupported; ignored", key)
    return clauses


def build_post_query(
    criteria: PostCriteria,
    post_ids: Iterable[int] | None = None,
    *,
    now: datetime | None = None,
) -> Select:
    """Select matching post ids, optionally restricted to ``post_ids``."""
    clauses: list[ColumnElement] = []
    if post_ids is not None:
        clauses.append(posts.c.id.in_(list(post_ids)))
    if criteria.province_id is not None:
        clauses.append(posts.c.province_id == criteria.province_id)
    if criteria.city_ids:
        clauses.append(posts.c.city_id.in_(criteria.city_ids))
    if criteria.district_ids:
        clauses.append(posts.c.district_id.in_(criteria.district_ids))
    if criteria.category_slug:
        slug = criteria.category_slug
        clauses.append(
            or_(
                posts.c.category_slug == slug,
                posts.c.cat3 == slug,
                posts.c.cat2 == slug,
                posts.c.cat1 == slug,
            )
        )
    if criteria.filters:
        clauses += category_filter_clauses(criteria.filters, now=now)
    query = select(posts.c.id).order_by(posts.c.created_at, posts.c.id)
    if clauses:
        query = query.where(and_(*clauses))
    return query
