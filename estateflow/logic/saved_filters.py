"""Normalization of stored saved-filter payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

ALL = "all"
CUSTOM = "custom"

NUMBER_RANGE = "numberRange"
MULTI_SELECT = "multiSelect"
SINGLE_SELECT = "singleSelect"
BOOLEAN = "boolean"


@dataclass(slots=True)
class Selection:
    mode: str = ALL
    ids: list[int] = field(default_factory=list)

    @property
    def custom_ids(self) -> list[int] | None:
        if self.mode == CUSTOM and self.ids:
            return self.ids
        return None


@dataclass(slots=True)
class CategorySelection:
    slug: str | None = None
    depth: int | None = None


@dataclass(slots=True)
class SavedFilterPayload:
    province_id: int | None = None
    cities: Selection = field(default_factory=Selection)
    districts: Selection = field(default_factory=Selection)
    category: CategorySelection = field(default_factory=CategorySelection)
    category_filters: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)

    def filters_for_category(self) -> dict[str, Any] | None:
        """Criteria for the selected category only; buckets for other categories are ignored."""
        if not self.category.slug:
            return None
        return serialize_category_filter_values(self.category_filters.get(self.category.slug))


def parse_optional_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def _parse_id_list(values: list[Any]) -> list[int]:
    result: list[int] = []
    for value in values:
        parsed = parse_optional_number(value)
        if parsed is None:
            continue
        parsed = int(parsed)
        if parsed not in result:
            result.append(parsed)
    return result


def _normalize_selection(value: Any, legacy_ids: Any, ids_key: str) -> Selection:
    if isinstance(value, dict):
        mode = CUSTOM if value.get("mode") == CUSTOM else ALL
        source = value.get(ids_key)
        ids = _parse_id_list(source) if isinstance(source, list) else []
        if mode == CUSTOM and ids:
            return Selection(mode, ids)
    fallback = _parse_id_list(legacy_ids) if isinstance(legacy_ids, list) else []
    if fallback:
        return Selection(CUSTOM, fallback)
    return Selection()


def _normalize_category_selection(value: Any) -> CategorySelection:
    if not isinstance(value, dict):
        return CategorySelection()
    slug = value.get("slug")
    depth = parse_optional_number(value.get("depth"))
    return CategorySelection(
        slug=slug if isinstance(slug, str) and slug else None,
        depth=int(depth) if depth is not None else None,
    )


def normalize_filter_value(value: Any) -> dict[str, Any] | None:
    """Validate one category filter value; empty or malformed values collapse to ``None``."""
    if not isinstance(value, dict) or not isinstance(value.get("kind"), str):
        return None
    kind = value["kind"]
    if kind == NUMBER_RANGE:
        low = parse_optional_number(value.get("min"))
        high = parse_optional_number(value.get("max"))
        if low is None and high is None:
            return None
        normalized: dict[str, Any] = {"kind": NUMBER_RANGE}
        if low is not None:
            normalized["min"] = low
        if high is not None:
            normalized["max"] = high
        return normalized
    if kind == MULTI_SELECT:
        raw = value.get("values")
        values = [entry for entry in raw if isinstance(entry, str) and entry] if isinstance(raw, list) else []
        return {"kind": MULTI_SELECT, "values": values} if values else None
    if kind == SINGLE_SELECT:
        entry = value.get("value")
        return {"kind": SINGLE_SELECT, "value": entry} if isinstance(entry, str) and entry else None
    if kind == BOOLEAN:
        return {"kind": BOOLEAN, "value": True} if value.get("value") is True else None
    return None


def _normalize_category_filters(value: Any) -> dict[str, dict[str, dict[str, Any]]]:
    if not isinstance(value, dict):
        return {}
    result: dict[str, dict[str, dict[str, Any]]] = {}
    for slug, raw_bucket in value.items():
        if not isinstance(slug, str) or not isinstance(raw_bucket, dict):
            continue
        bucket = {}
        for key, raw_value in raw_bucket.items():
            normalized = normalize_filter_value(raw_value) if isinstance(key, str) else None
            if normalized:
                bucket[key] = normalized
        if bucket:
            result[slug] = bucket
    return result


def normalize_saved_filter_payload(payload: Any) -> SavedFilterPayload:
    """Coerce a stored payload of any vintage into a :class:`SavedFilterPayload`.

    Legacy payloads kept bare ``cityIds``/``districtIds`` lists at the top level;
    those still select a custom set when the nested selection is absent or empty.
    """
    if not isinstance(payload, dict):
        return SavedFilterPayload()
    province_id = parse_optional_number(payload.get("provinceId"))
    return SavedFilterPayload(
        province_id=int(province_id) if province_id is not None else None,
        cities=_normalize_selection(payload.get("citySelection"), payload.get("cityIds"), "cityIds"),
        districts=_normalize_selection(payload.get("districtSelection"), payload.get("districtIds"), "districtIds"),
        category=_normalize_category_selection(payload.get("categorySelection")),
        category_filters=_normalize_category_filters(payload.get("categoryFilters")),
    )


def serialize_category_filter_values(bucket: dict[str, dict[str, Any]] | None) -> dict[str, Any] | None:
    """Flatten a normalized bucket into the plain criteria the post query understands."""
    if not bucket:
        return None
    result: dict[str, Any] = {}
    for key, value in bucket.items():
        kind = value.get("kind")
        if kind == NUMBER_RANGE:
            result[key] = {bound: value[bound] for bound in ("min", "max") if bound in value}
        elif kind == MULTI_SELECT:
            result[key] = list(value["values"])
        elif kind == SINGLE_SELECT:
            result[key] = value["value"]
        elif kind == BOOLEAN:
            result[key] = True
    return result or None
