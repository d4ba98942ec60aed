"""Turn a Divar post detail payload into a flat :class:`ParsedPost`.

The payload is a tree of sections, widgets and typed data blocks. A single
depth-first visit dispatches each block on its ``@type`` tag and accumulates
into a mutable parse state; nested modal pages are visited through the same
dispatcher. Unknown block types are ignored.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

import pendulum

from estateflow.ingest.models import ParsedAttribute, ParsedMedia, ParsedPost
from estateflow.utils.dates import ensure_utc
from estateflow.utils.persian import (
    extract_jalali_date,
    normalize_label,
    parse_number,
    relative_duration_ms,
)

logger = logging.getLogger(__name__)

MAX_DEPTH = 32

GROUP_INFO_ROW = "type.googleapis.com/widgets.GroupInfoRow"
UNEXPANDABLE_ROW = "type.googleapis.com/widgets.UnexpandableRowData"
GROUP_FEATURE_ROW = "type.googleapis.com/widgets.GroupFeatureRow"
LEGEND_TITLE_ROW = "type.googleapis.com/widgets.LegendTitleRowData"
DESCRIPTION_ROW = "type.googleapis.com/widgets.DescriptionRowData"
IMAGE_CAROUSEL = "type.googleapis.com/widgets.ImageCarouselData"
MAP_ROW = "type.googleapis.com/widgets.MapRowData"
FEATURE_ROW = "type.googleapis.com/widgets.FeatureRowData"

LABEL_AREA = normalize_label("متراژ")
LABEL_BUILT = normalize_label("ساخت")
LABEL_ROOMS = normalize_label("اتاق")
LABEL_PHOTOS_VERIFIED = normalize_label("تصویر‌ها برای همین ملک است؟")
LABEL_PRICE_TOTAL = normalize_label("قیمت کل")
LABEL_PRICE_PER_SQUARE = normalize_label("قیمت هر متر")
LABEL_FLOOR = normalize_label("طبقه")
LABEL_DEPOSIT = normalize_label("ودیعه")
LABEL_RENT = normalize_label("اجارهٔ ماهانه")
LABEL_CONVERSION = normalize_label("ودیعه و اجاره")
LABEL_LAND_AREA = normalize_label("متراژ زمین")
LABEL_CAPACITY = normalize_label("ظرفیت")
LABEL_WEEKEND = normalize_label("آخر هفته")
LABEL_NORMAL_DAYS = normalize_label("روزهای عادی")
LABEL_HOLIDAYS = normalize_label("تعطیلات و مناسبت‌ها")
LABEL_EXTRA_PERSON = normalize_label("هزینهٔ هر نفرِ اضافه")
LABEL_FLOORS_COUNT = normalize_label("تعداد طبقات")
LABEL_UNIT_PER_FLOOR = normalize_label("تعداد واحد در هر طبقه")
LABEL_UNIT_CONDITION = normalize_label("وضعیت واحد")

PRIMARY_GROUP_LABELS = frozenset({LABEL_AREA, LABEL_BUILT, LABEL_ROOMS})
PRIMARY_UNEXPANDABLE_LABELS = frozenset(
    {
        LABEL_PHOTOS_VERIFIED,
        LABEL_PRICE_TOTAL,
        LABEL_PRICE_PER_SQUARE,
        LABEL_FLOOR,
        LABEL_DEPOSIT,
        LABEL_RENT,
        LABEL_CONVERSION,
        LABEL_LAND_AREA,
        LABEL_CAPACITY,
        LABEL_WEEKEND,
        LABEL_NORMAL_DAYS,
        LABEL_HOLIDAYS,
        LABEL_EXTRA_PERSON,
        LABEL_FLOORS_COUNT,
        LABEL_UNIT_PER_FLOOR,
    }
)

FEATURE_FLAGS = {
    normalize_label("آسانسور"): "has_elevator",
    normalize_label("پارکینگ"): "has_parking",
    normalize_label("انباری"): "has_warehouse",
    normalize_label("بالکن"): "has_balcony",
}

ATTRIBUTE_KEYS = {
    normalize_label(label): key
    for label, key in (
        ("سند", "deed_type"),
        ("جهت ساختمان", "building_direction"),
        ("وضعیت واحد", "unit_condition"),
        ("سیستم گرمایشی", "heating_system"),
        ("سیستم سرمایشی", "cooling_system"),
        ("سرویس بهداشتی", "toilet_type"),
        ("مبدا تامین آب گرم", "warm_water_provider"),
        ("جنس کف", "floor_material"),
        ("نوع واحد‌ها", "unit_types"),
        ("نوع ملک", "property_type"),
        ("کمترین متراژ", "min_area"),
        ("تحویل", "handover"),
        ("سازنده", "builder"),
        ("وضعیت فعلی پروژه", "project_status"),
        ("پیشرفت فیزیکی کل پروژه", "project_progress"),
        ("پیش پرداخت اولیه", "down_payment"),
        ("پرداختی در زمان تحویل", "handover_payment"),
        ("قیمت پایه برای هر متر مربع", "base_price_per_sqm"),
    )
}

ROOM_WORDS = {
    "بدون اتاق": 0,
    "یک": 1,
    "دو": 2,
    "سه": 3,
    "چهار": 4,
    "پنج": 5,
    "شش": 6,
    "هفت": 7,
    "هشت": 8,
    "نه": 9,
    "ده": 10,
}

FLOOR_WORDS = {"همکف": 0, "زیرهمکف": -1}

TRUE_VALUES = frozenset({"بله", "بلی", "true", "yes", "1"})
FALSE_VALUES = frozenset({"خیر", "false", "no", "0"})

NEGATION_SUFFIX_RE = re.compile(r"\s*ندارد$")


class PayloadError(ValueError):
    """Raised when a detail payload is not a JSON object."""


def _obj(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _number(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        return parse_number(value)
    return None


def _to_int(value: Decimal | None) -> int | None:
    return int(value) if value is not None else None


def _parse_bool(value: str | None) -> bool | None:
    if not value:
        return None
    value = value.strip()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return None


def _parse_rooms(value: str) -> int | None:
    value = value.strip()
    if value in ROOM_WORDS:
        return ROOM_WORDS[value]
    if "بدون" in value:
        return 0
    return _to_int(parse_number(value))


def _parse_floor(value: str) -> int | None:
    value = value.strip()
    if value in FLOOR_WORDS:
        return FLOOR_WORDS[value]
    return _to_int(parse_number(value))


def _parse_rebuilt(value: str) -> bool | None:
    if "بازسازی شده" in value:
        return True
    if "بازسازی نشده" in value:
        return False
    return None


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = pendulum.parse(value)
    except ValueError:
        return None
    if not isinstance(parsed, datetime):
        return None
    return ensure_utc(parsed)


def attribute_key(label: str) -> str:
    """Stable key for an attribute label: a known name or a hash of the label."""
    normalized = normalize_label(label)
    known = ATTRIBUTE_KEYS.get(normalized)
    if known:
        return known
    return "attr_" + hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:10]


class _ParseState:
    def __init__(self, root: dict[str, Any]) -> None:
        self.root = root
        self.post = ParsedPost()
        self.group_values: dict[str, str] = {}
        self.row_values: dict[str, str] = {}
        self.flags: dict[str, bool] = {}
        self.webengage: dict[str, Decimal | None] = {}
        self.schema_area: Decimal | None = None
        self.schema_area_label: str | None = None
        self.primary_description = False
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            GROUP_INFO_ROW: self._on_group_info,
            UNEXPANDABLE_ROW: self._on_unexpandable_row,
            GROUP_FEATURE_ROW: self._on_group_feature,
            LEGEND_TITLE_ROW: self._on_legend_title,
            DESCRIPTION_ROW: self._on_description,
            IMAGE_CAROUSEL: self._on_image_carousel,
            MAP_ROW: self._on_map,
            FEATURE_ROW: self._on_feature,
        }

    def parse(self) -> ParsedPost:
        self._read_seo()
        self._read_share()
        self._read_contact()
        self._read_analytics()
        self._read_city()
        self._read_webengage()
        for section in _list(self.root.get("sections")):
            section = _obj(section)
            if section:
                self.visit(_list(section.get("widgets")), depth=0)
        return self._build()

    # top-level blocks

    def _take_jalali(self, text: str | None) -> None:
        if self.post.published_at_jalali:
            return
        found = extract_jalali_date(text)
        if found:
            self.post.published_at_jalali, self.post.jalali_gregorian_date = found

    def _read_seo(self) -> None:
        seo = _obj(self.root.get("seo"))
        if not seo:
            return
        post = self.post
        post.seo_title = _str(seo.get("title"))
        post.seo_description = _str(seo.get("description"))
        self._take_jalali(post.seo_title)
        post.expires_at = _parse_timestamp(_str(seo.get("unavailable_after")))

        web_info = _obj(seo.get("web_info"))
        if web_info:
            post.title = _str(web_info.get("title")) or post.title
            post.city_name = post.city_name or _str(web_info.get("city_persian"))
            post.district_name = post.district_name or _str(web_info.get("district_persian"))
            self._take_jalali(post.title)

        schema = _obj(seo.get("post_seo_schema"))
        if schema:
            post.permalink = _str(schema.get("url")) or post.permalink
            geo = _obj(schema.get("geo"))
            if geo:
                self._set_point(geo)
            floor_size = _obj(schema.get("floorSize"))
            if floor_size:
                value = floor_size.get("value")
                label = value if isinstance(value, str) else None
                if label is None and isinstance(value, (int, float)) and not isinstance(value, bool):
                    label = str(value)
                if label:
                    self.schema_area = parse_number(label)
                    self.schema_area_label = label

    def _read_share(self) -> None:
        share = _obj(self.root.get("share"))
        if share:
            self.post.share_title = _str(share.get("title"))
            self.post.share_url = _str(share.get("web_url"))

    def _read_contact(self) -> None:
        contact = _obj(self.root.get("contact"))
        if contact:
            self.post.contact_uuid = _str(contact.get("contact_uuid"))

    def _read_analytics(self) -> None:
        analytics = _obj(self.root.get("analytics"))
        if not analytics:
            return
        post = self.post
        post.cat1 = post.cat1 or _str(analytics.get("cat1"))
        post.cat2 = post.cat2 or _str(analytics.get("cat2"))
        post.cat3 = post.cat3 or _str(analytics.get("cat3"))
        post.city_slug = post.city_slug or _str(analytics.get("city"))

    def _read_city(self) -> None:
        city = _obj(self.root.get("city"))
        if not city:
            return
        post = self.post
        city_id = _to_int(_number(city.get("city_id")))
        if city_id is not None:
            post.city_id = city_id
        province_id = _to_int(_number(city.get("parent_id")))
        if province_id is not None:
            post.province_id = province_id
        post.city_slug = post.city_slug or _str(city.get("second_slug"))
        post.city_name = post.city_name or _str(city.get("name"))

    def _read_webengage(self) -> None:
        webengage = _obj(self.root.get("webengage"))
        if not webengage:
            return
        post = self.post
        for key in ("price", "rent", "credit", "image_count"):
            self.webengage[key] = _number(webengage.get(key))
        post.business_type = _str(webengage.get("business_type")) or post.business_type
        post.city_slug = post.city_slug or _str(webengage.get("city"))
        post.district_slug = post.district_slug or _str(webengage.get("district"))
        post.cat1 = post.cat1 or _str(webengage.get("cat_1"))
        post.cat2 = post.cat2 or _str(webengage.get("cat_2"))
        post.cat3 = post.cat3 or _str(webengage.get("cat_3")) or _str(webengage.get("category"))

    # widget traversal

    def visit(self, widgets: list[Any], depth: int) -> None:
        if depth > MAX_DEPTH:
            logger.warning("Widget tree deeper than %d levels; skipping nested widgets", MAX_DEPTH)
            return
        for widget in widgets:
            widget = _obj(widget)
            if not widget:
                continue
            data = _obj(widget.get("data"))
            if not data:
                continue
            handler = self._handlers.get(_str(data.get("@type")) or "")
            if handler is not None:
                handler(data)
            self._visit_modal(widget, depth)
            self._visit_modal(data, depth)

    def _visit_modal(self, source: dict[str, Any], depth: int) -> None:
        action = _obj(source.get("action"))
        if action:
            payload = _obj(action.get("payload")) or {}
            page = _obj(payload.get("modal_page")) or _obj(action.get("modal_page"))
            if page:
                self.visit(_list(page.get("widget_list")), depth + 1)
        page = _obj(source.get("modal_page"))
        if page:
            self.visit(_list(page.get("widget_list")), depth + 1)

    # handlers

    def _on_group_info(self, data: dict[str, Any]) -> None:
        for item in _list(data.get("items")):
            item = _obj(item)
            if not item:
                continue
            title = _str(item.get("title"))
            value = _str(item.get("value"))
            if not title or not value:
                continue
            key = normalize_label(title)
            self.group_values.setdefault(key, value)
            if key not in PRIMARY_GROUP_LABELS:
                self._add_valued_attribute(title, value)

    def _on_unexpandable_row(self, data: dict[str, Any]) -> None:
        title = _str(data.get("title"))
        value = _str(data.get("value"))
        if not title or not value:
            return
        key = normalize_label(title)
        self.row_values.setdefault(key, value)
        post = self.post
        if key == LABEL_PHOTOS_VERIFIED:
            post.photos_verified = _parse_bool(value)
        elif key == LABEL_CONVERSION:
            post.conversion_type = value
        elif key == LABEL_UNIT_CONDITION:
            post.is_rebuilt = _parse_rebuilt(value)
        if key not in PRIMARY_UNEXPANDABLE_LABELS:
            self._add_valued_attribute(title, value)

    def _on_group_feature(self, data: dict[str, Any]) -> None:
        for item in _list(data.get("items")):
            item = _obj(item)
            if not item:
                continue
            title = _str(item.get("title"))
            if not title:
                continue
            negated = NEGATION_SUFFIX_RE.search(title) is not None
            available = item.get("available")
            value = False if negated else (available if isinstance(available, bool) else True)
            flag = FEATURE_FLAGS.get(normalize_label(NEGATION_SUFFIX_RE.sub("", title)))
            if flag:
                self.flags[flag] = value
            else:
                self._add_attribute(title, attr_type="feature", string_value=title, bool_value=value)

    def _on_legend_title(self, data: dict[str, Any]) -> None:
        post = self.post
        post.display_title = _str(data.get("title")) or post.display_title
        subtitle = _str(data.get("subtitle"))
        if subtitle:
            post.display_subtitle = subtitle
            post.relative_publish_text = subtitle
            relative = relative_duration_ms(subtitle)
            if relative is not None:
                post.relative_publish_ms = relative

    def _on_description(self, data: dict[str, Any]) -> None:
        text = _str(data.get("text"))
        if not text or self.primary_description:
            return
        if data.get("is_primary") is not False:
            self.primary_description = True
            self.post.description = text
        elif self.post.description is None:
            self.post.description = text

    def _on_image_carousel(self, data: dict[str, Any]) -> None:
        medias = self.post.medias
        for item in _list(data.get("items")):
            item = _obj(item)
            if not item:
                continue
            image = _obj(item.get("image")) or item
            url = _str(image.get("url"))
            if not url:
                continue
            medias.append(
                ParsedMedia(
                    url=url,
                    position=len(medias),
                    thumbnail_url=_str(image.get("thumbnail_url")),
                    alt=_str(image.get("alt")),
                )
            )

    def _on_map(self, data: dict[str, Any]) -> None:
        location = _obj(data.get("location"))
        if not location:
            return
        exact = _obj(location.get("exact_data")) or {}
        approx = _obj(location.get("approx_data")) or {}
        point = _obj(exact.get("point")) or _obj(approx.get("point"))
        if point:
            self._set_point(point)

    def _on_feature(self, data: dict[str, Any]) -> None:
        title = _str(data.get("title"))
        if title:
            self._add_attribute(title, attr_type="feature", string_value=title)

    # helpers

    def _set_point(self, point: dict[str, Any]) -> None:
        latitude = _number(point.get("latitude"))
        longitude = _number(point.get("longitude"))
        if latitude is not None and longitude is not None:
            self.post.latitude = latitude
            self.post.longitude = longitude

    def _add_valued_attribute(self, label: str, value: str) -> None:
        number = parse_number(value)
        self._add_attribute(
            label,
            attr_type="string" if number is None else "number",
            string_value=value,
            number_value=number,
        )

    def _add_attribute(
        self,
        label: str,
        *,
        attr_type: str | None = None,
        string_value: str | None = None,
        number_value: Decimal | None = None,
        bool_value: bool | None = None,
    ) -> None:
        raw: Any = string_value
        if raw is None:
            raw = str(number_value) if number_value is not None else bool_value
        self.post.attributes.append(
            ParsedAttribute(
                key=attribute_key(label),
                label=label,
                type=attr_type,
                string_value=string_value,
                number_value=number_value,
                bool_value=bool_value,
                raw_value=raw,
            )
        )

    def _row(self, label: str) -> str | None:
        return self.row_values.get(label)

    def _build(self) -> ParsedPost:
        post = self.post

        post.area_label = self.group_values.get(LABEL_AREA) or self.schema_area_label
        post.area = _first(parse_number(post.area_label), self.schema_area)

        post.rooms_label = self.group_values.get(LABEL_ROOMS)
        post.rooms = _parse_rooms(post.rooms_label) if post.rooms_label else None

        post.year_built_label = self.group_values.get(LABEL_BUILT)
        post.year_built = _to_int(parse_number(post.year_built_label))

        post.floor_label = self._row(LABEL_FLOOR)
        post.floor = _parse_floor(post.floor_label) if post.floor_label else None

        post.land_area_label = self._row(LABEL_LAND_AREA)
        post.land_area = parse_number(post.land_area_label)

        post.price_total = _first(parse_number(self._row(LABEL_PRICE_TOTAL)), self.webengage.get("price"))
        post.price_per_square = parse_number(self._row(LABEL_PRICE_PER_SQUARE))
        post.deposit_amount = _first(parse_number(self._row(LABEL_DEPOSIT)), self.webengage.get("credit"))
        post.rent_amount = _first(parse_number(self._row(LABEL_RENT)), self.webengage.get("rent"))
        post.daily_rate_normal = parse_number(self._row(LABEL_NORMAL_DAYS))
        post.daily_rate_weekend = parse_number(self._row(LABEL_WEEKEND))
        post.daily_rate_holiday = parse_number(self._row(LABEL_HOLIDAYS))
        post.extra_person_fee = parse_number(self._row(LABEL_EXTRA_PERSON))

        post.capacity_label = self._row(LABEL_CAPACITY)
        post.capacity = _to_int(parse_number(post.capacity_label))
        post.floors_count = _to_int(parse_number(self._row(LABEL_FLOORS_COUNT)))
        post.unit_per_floor = _to_int(parse_number(self._row(LABEL_UNIT_PER_FLOOR)))

        post.has_parking = self.flags.get("has_parking")
        post.has_elevator = self.flags.get("has_elevator")
        post.has_warehouse = self.flags.get("has_warehouse")
        post.has_balcony = self.flags.get("has_balcony")

        image_count = _to_int(self.webengage.get("image_count"))
        if image_count is None and post.medias:
            image_count = len(post.medias)
        post.image_count = image_count

        post.title = post.title or post.display_title or post.seo_title
        share_url, permalink = post.share_url, post.permalink
        post.share_url = share_url or permalink
        post.permalink = permalink or share_url
        return post


def _first(*values: Decimal | None) -> Decimal | None:
    for value in values:
        if value is not None:
            return value
    return None


def parse_post(payload: Any) -> ParsedPost:
    """Parse one detail payload. Absent source data is left as ``None``."""
    if not isinstance(payload, dict):
        raise PayloadError("Divar payload must be a JSON object")
    return _ParseState(payload).parse()
