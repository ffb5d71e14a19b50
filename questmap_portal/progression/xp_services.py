"""XP, level and tier derivation.

All functions here are stateless; callers pass every input explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from django.conf import settings

from .catalog_services import TierBand, load_progression_catalog
from .scoring_services import round_half_up

DIFFICULTY_XP_STEP = 0.25
STREAK_BONUS_STEP = 0.05
STREAK_BONUS_CAP = 0.5


@dataclass(frozen=True)
class LevelSnapshot:
    xp_total: int
    level: int
    tier: str
    xp_into_level: int
    xp_for_next_level: int


def _xp_per_level() -> int:
    value = int(getattr(settings, "QUESTMAP_XP_PER_LEVEL", 500))
    return max(1, value)


def calculate_xp(score: float, difficulty: float, streak: int = 0) -> int:
    """XP for a scored attempt.

    ``streak`` is part of the signature for callers that already have it at
    hand, but it is not weighted here; streaks drive achievements instead.
    """
    return max(0, round_half_up(score * (1 + difficulty * DIFFICULTY_XP_STEP)))


def streak_multiplier(streak: int) -> float:
    """Display-only multiplier shown next to a streak counter."""
    if streak <= 0:
        return 1.0
    return 1 + min(streak * STREAK_BONUS_STEP, STREAK_BONUS_CAP)


def calculate_level(xp: int, *, xp_per_level: int | None = None) -> int:
    per_level = xp_per_level if xp_per_level is not None else _xp_per_level()
    return max(0, int(xp)) // max(1, per_level) + 1


def calculate_tier(level: int, tiers: Sequence[TierBand] | None = None) -> str:
    bands = sorted(tiers if tiers is not None else load_progression_catalog().tiers, key=lambda band: band.min_level)
    if not bands:
        raise ValueError("At least one tier band is required.")
    tier = bands[0].name
    for band in bands:
        if level >= band.min_level:
            tier = band.name
    return tier


def xp_for_level(level: int, *, xp_per_level: int | None = None) -> int:
    per_level = xp_per_level if xp_per_level is not None else _xp_per_level()
    return max(0, level) * per_level


def xp_progress(xp: int, *, xp_per_level: int | None = None) -> int:
    per_level = xp_per_level if xp_per_level is not None else _xp_per_level()
    return max(0, int(xp)) % per_level


def level_snapshot(xp: int, *, tiers: Sequence[TierBand] | None = None) -> LevelSnapshot:
    level = calculate_level(xp)
    return LevelSnapshot(
        xp_total=max(0, int(xp)),
        level=level,
        tier=calculate_tier(level, tiers),
        xp_into_level=xp_progress(xp),
        xp_for_next_level=xp_for_level(level),
    )
