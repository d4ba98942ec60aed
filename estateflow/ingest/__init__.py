"""Ingestion helpers."""

from __future__ import annotations

import pathlib
from typing import Any

import yaml

SCOPES_PATH = pathlib.Path(__file__).with_name("scopes.yml")


def load_scopes(path: pathlib.Path = SCOPES_PATH) -> dict[str, list[dict[str, Any]]]:
    """Reference categories, provinces, cities and districts keyed by table name."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return {key: list(data.get(key) or []) for key in ("categories", "provinces", "cities", "districts")}
