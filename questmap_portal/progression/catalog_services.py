"""Progression catalog: tier bands, achievement categories and rarities."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierBand:
    name: str
    min_level: int


@dataclass(frozen=True)
class ProgressionCatalog:
    tiers: tuple[TierBand, ...]
    achievement_categories: tuple[str, ...]
    rarities: tuple[str, ...]
    error: str | None = None


DEFAULT_TIERS: tuple[TierBand, ...] = (
    TierBand(name="bronze", min_level=1),
    TierBand(name="silver", min_level=10),
    TierBand(name="gold", min_level=20),
    TierBand(name="platinum", min_level=30),
    TierBand(name="diamond", min_level=50),
)
DEFAULT_ACHIEVEMENT_CATEGORIES: tuple[str, ...] = (
    "first_steps",
    "milestone",
    "mastery",
    "social",
    "special",
    "competitive",
    "speed",
)
DEFAULT_RARITIES: tuple[str, ...] = ("common", "rare", "epic", "legendary")

_CATALOG_CACHE: dict[str, Any] = {"path": None, "mtime": None, "data": None}


def clear_catalog_cache() -> None:
    _CATALOG_CACHE["path"] = None
    _CATALOG_CACHE["mtime"] = None
    _CATALOG_CACHE["data"] = None


def _default_catalog(error: str | None = None) -> ProgressionCatalog:
    return ProgressionCatalog(
        tiers=DEFAULT_TIERS,
        achievement_categories=DEFAULT_ACHIEVEMENT_CATEGORIES,
        rarities=DEFAULT_RARITIES,
        error=error,
    )


def _normalize_tiers(raw_values: Any) -> tuple[TierBand, ...]:
    if not isinstance(raw_values, list) or not raw_values:
        raise ValueError("tiers must be a non-empty array")

    bands: list[TierBand] = []
    seen_names: set[str] = set()
    for entry in raw_values:
        if not isinstance(entry, dict):
            raise ValueError("tier entries must be objects")
        name = str(entry.get("name") or "").strip().lower()
        if not name:
            raise ValueError("tier name is required")
        if name in seen_names:
            raise ValueError(f"duplicate tier name: {name}")
        min_level = entry.get("min_level")
        if not isinstance(min_level, int) or min_level < 1:
            raise ValueError(f"tier {name} needs an integer min_level >= 1")
        bands.append(TierBand(name=name, min_level=min_level))
        seen_names.add(name)

    bands.sort(key=lambda band: band.min_level)
    if len({band.min_level for band in bands}) != len(bands):
        raise ValueError("tier min_level values must be unique")
    return tuple(bands)


def _normalize_names(raw_values: Any, *, fallback: tuple[str, ...]) -> tuple[str, ...]:
    if raw_values is None:
        return fallback
    if not isinstance(raw_values, list):
        raise ValueError("name lists must be arrays of strings")
    names: list[str] = []
    for value in raw_values:
        name = str(value or "").strip().lower()
        if name and name not in names:
            names.append(name)
    return tuple(names) or fallback


def load_progression_catalog() -> ProgressionCatalog:
    path = Path(settings.QUESTMAP_PROGRESSION_CATALOG_PATH)
    if not path.exists():
        return _default_catalog(error="Progression catalog not found; using defaults.")

    try:
        mtime = path.stat().st_mtime_ns
    except OSError:
        logger.warning("Unable to stat progression catalog: %s", path, exc_info=True)
        return _default_catalog(error="Progression catalog could not be read; using defaults.")

    cache_hit = (
        _CATALOG_CACHE.get("path") == str(path)
        and _CATALOG_CACHE.get("mtime") == mtime
        and isinstance(_CATALOG_CACHE.get("data"), ProgressionCatalog)
    )
    if cache_hit:
        return _CATALOG_CACHE["data"]

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("catalog root must be an object")
        if payload.get("version") != 1:
            raise ValueError("unsupported catalog version")

        catalog = ProgressionCatalog(
            tiers=_normalize_tiers(payload.get("tiers")),
            achievement_categories=_normalize_names(
                payload.get("achievement_categories"),
                fallback=DEFAULT_ACHIEVEMENT_CATEGORIES,
            ),
            rarities=_normalize_names(payload.get("rarities"), fallback=DEFAULT_RARITIES),
        )
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValueError):
        logger.warning("Unable to parse progression catalog: %s", path, exc_info=True)
        catalog = _default_catalog(error="Progression catalog could not be parsed; using defaults.")

    _CATALOG_CACHE["path"] = str(path)
    _CATALOG_CACHE["mtime"] = mtime
    _CATALOG_CACHE["data"] = catalog
    return catalog
