"""Rule-based achievement evaluation, showcase and notification services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone
from django.utils.module_loading import import_string

from .models import (
    AchievementDefinition,
    ContentStatus,
    Region,
    RegionProgress,
    UserAchievement,
    UserWorldMapProgress,
)
from .profile_services import lock_profile, selected_users, sync_level_and_tier

logger = logging.getLogger(__name__)

RequirementType = AchievementDefinition.RequirementType


class AchievementNotUnlockedError(LookupError):
    """Raised when a showcase/view operation targets a locked achievement."""


class ShowcaseLimitError(RuntimeError):
    """Raised when enabling one more showcase would exceed the limit."""


@dataclass(frozen=True)
class UserStats:
    missions_completed: int = 0
    level: int = 1
    xp: int = 0
    streak_days: int = 0
    perfect_scores: int = 0
    total_stars: int = 0
    challenges_created: int = 0
    regions_completed: int = 0
    completed_region_ids: frozenset[int] = frozenset()
    regions_mastered: int = 0
    total_regions: int = 0


@dataclass(frozen=True)
class AchievementUnlock:
    achievement_id: int
    code: str
    reward_xp: int
    progress_current: int
    progress_target: int


@dataclass(frozen=True)
class EvaluationResult:
    newly_unlocked: tuple[AchievementUnlock, ...]
    xp_delta: int


@dataclass(frozen=True)
class AchievementAward:
    unlocked: tuple[UserAchievement, ...]
    xp_delta: int


RequirementHandler = Callable[[UserStats, Any], tuple[int, int]]


def _first_mission(stats: UserStats, definition) -> tuple[int, int]:
    return stats.missions_completed, 1


def _missions_completed(stats: UserStats, definition) -> tuple[int, int]:
    return stats.missions_completed, definition.requirement_value


def _level_reached(stats: UserStats, definition) -> tuple[int, int]:
    return stats.level, definition.requirement_value


def _xp_earned(stats: UserStats, definition) -> tuple[int, int]:
    return stats.xp, definition.requirement_value


def _streak_days(stats: UserStats, definition) -> tuple[int, int]:
    return stats.streak_days, definition.requirement_value


def _perfect_scores(stats: UserStats, definition) -> tuple[int, int]:
    return stats.perfect_scores, definition.requirement_value


def _stars_earned(stats: UserStats, definition) -> tuple[int, int]:
    return stats.total_stars, definition.requirement_value


def _challenges_created(stats: UserStats, definition) -> tuple[int, int]:
    return stats.challenges_created, definition.requirement_value


def _region_completed(stats: UserStats, definition) -> tuple[int, int]:
    region_id = getattr(definition, "requirement_region_id", None)
    if region_id is not None:
        return int(region_id in stats.completed_region_ids), 1
    return stats.regions_completed, definition.requirement_value


def _all_regions_mastered(stats: UserStats, definition) -> tuple[int, int]:
    if stats.total_regions <= 0:
        return 0, 1
    return stats.regions_mastered, stats.total_regions


REQUIREMENT_HANDLERS: dict[str, RequirementHandler] = {
    RequirementType.FIRST_MISSION: _first_mission,
    RequirementType.MISSIONS_COMPLETED: _missions_completed,
    RequirementType.LEVEL_REACHED: _level_reached,
    RequirementType.XP_EARNED: _xp_earned,
    RequirementType.STREAK_DAYS: _streak_days,
    RequirementType.PERFECT_SCORES: _perfect_scores,
    RequirementType.STARS_EARNED: _stars_earned,
    RequirementType.CHALLENGES_CREATED: _challenges_created,
    RequirementType.REGION_COMPLETED: _region_completed,
    RequirementType.ALL_REGIONS_MASTERED: _all_regions_mastered,
}

_unhandled_requirements = set(RequirementType.values) - {str(key) for key in REQUIREMENT_HANDLERS}
if _unhandled_requirements:
    raise ImproperlyConfigured(
        f"Missing achievement requirement handlers: {', '.join(sorted(_unhandled_requirements))}"
    )


def requirement_progress(stats: UserStats, definition) -> tuple[int, int]:
    handler = REQUIREMENT_HANDLERS.get(str(definition.requirement_type))
    if handler is None:
        raise ValueError(f"Unknown requirement type: {definition.requirement_type!r}")
    return handler(stats, definition)


def evaluate(
    stats: UserStats,
    definitions: Iterable[Any],
    already_unlocked_ids: Iterable[int],
) -> EvaluationResult:
    """Decide which definitions newly unlock for ``stats``.

    Inactive and already-unlocked definitions are skipped, so running this
    twice against unchanged stats never unlocks or pays twice.
    """
    unlocked_ids = set(already_unlocked_ids)
    newly_unlocked: list[AchievementUnlock] = []
    xp_delta = 0
    for definition in definitions:
        if not definition.is_active or definition.pk in unlocked_ids:
            continue
        current, target = requirement_progress(stats, definition)
        if current < target:
            continue
        unlocked_ids.add(definition.pk)
        reward_xp = max(0, int(definition.reward_xp or 0))
        newly_unlocked.append(
            AchievementUnlock(
                achievement_id=definition.pk,
                code=definition.code,
                reward_xp=reward_xp,
                progress_current=current,
                progress_target=target,
            )
        )
        xp_delta += reward_xp
    return EvaluationResult(newly_unlocked=tuple(newly_unlocked), xp_delta=xp_delta)


def _showcase_limit() -> int:
    return max(0, int(getattr(settings, "QUESTMAP_SHOWCASE_LIMIT", 3)))


def challenge_count_for_user(user) -> int:
    provider_path = str(getattr(settings, "QUESTMAP_CHALLENGE_COUNT_PROVIDER", "") or "").strip()
    if not provider_path:
        return 0
    provider = import_string(provider_path)
    return max(0, int(provider(user)))


def collect_user_stats(user, *, profile=None) -> UserStats:
    if profile is None:
        profile = lock_profile(user)

    world = UserWorldMapProgress.objects.filter(user=user).first()
    completed_region_ids: frozenset[int] = frozenset()
    regions_mastered = 0
    active_regions = Region.objects.filter(status=ContentStatus.ACTIVE).annotate(
        active_quest_count=Count("quests", filter=Q(quests__status=ContentStatus.ACTIVE))
    )
    total_regions = active_regions.count()

    if world is not None:
        entries = {
            entry.region_id: entry
            for entry in RegionProgress.objects.filter(progress=world)
        }
        completed_region_ids = frozenset(
            region_id for region_id, entry in entries.items() if entry.is_completed
        )
        for region in active_regions:
            entry = entries.get(region.pk)
            if entry is None or not entry.is_completed:
                continue
            if entry.total_stars >= region.active_quest_count * 3:
                regions_mastered += 1

    return UserStats(
        missions_completed=profile.missions_completed,
        level=profile.current_level,
        xp=profile.xp_total,
        streak_days=profile.streak_days,
        perfect_scores=profile.perfect_scores,
        total_stars=world.total_stars if world is not None else 0,
        challenges_created=challenge_count_for_user(user),
        regions_completed=world.regions_completed if world is not None else 0,
        completed_region_ids=completed_region_ids,
        regions_mastered=regions_mastered,
        total_regions=total_regions,
    )


@transaction.atomic
def evaluate_user_achievements(user, *, now=None) -> AchievementAward:
    """Unlock newly eligible achievements and credit their XP once.

    Level and tier are not re-derived here; callers that care about them
    run ``profile_services.sync_level_and_tier`` afterwards.
    """
    profile = lock_profile(user)
    stats = collect_user_stats(user, profile=profile)
    definitions = list(AchievementDefinition.objects.filter(is_active=True).order_by("order", "id"))
    unlocked_ids = set(UserAchievement.objects.filter(user=user).values_list("achievement_id", flat=True))

    result = evaluate(stats, definitions, unlocked_ids)
    if not result.newly_unlocked:
        return AchievementAward(unlocked=tuple(), xp_delta=0)

    unlocked_at = now or timezone.now()
    rows = [
        UserAchievement.objects.create(
            user=user,
            achievement_id=unlock.achievement_id,
            unlocked_at=unlocked_at,
            progress_current=unlock.progress_current,
            progress_target=unlock.progress_target,
        )
        for unlock in result.newly_unlocked
    ]
    if result.xp_delta:
        profile.xp_total += result.xp_delta
        profile.save(update_fields=["xp_total", "updated_at"])

    logger.info(
        "User %s unlocked %s achievement(s): %s (+%s XP)",
        user.pk,
        len(rows),
        ", ".join(unlock.code for unlock in result.newly_unlocked),
        result.xp_delta,
    )
    return AchievementAward(unlocked=tuple(rows), xp_delta=result.xp_delta)


def evaluate_many(*, usernames: list[str] | None = None) -> tuple[int, int]:
    """Backfill unlocks per user; returns (users processed, achievements unlocked)."""
    processed = 0
    unlocked = 0
    for user in selected_users(usernames).iterator():
        with transaction.atomic():
            award = evaluate_user_achievements(user)
            if award.xp_delta:
                profile = lock_profile(user)
                if sync_level_and_tier(profile):
                    profile.save(update_fields=["current_level", "tier", "updated_at"])
        unlocked += len(award.unlocked)
        processed += 1
    return processed, unlocked


@transaction.atomic
def set_showcase(*, user, achievement_id: int, showcased: bool) -> UserAchievement:
    lock_profile(user)
    row = (
        UserAchievement.objects.select_for_update()
        .filter(user=user, achievement_id=achievement_id)
        .first()
    )
    if row is None:
        raise AchievementNotUnlockedError("Achievement not unlocked")

    if showcased and not row.is_showcased:
        showcased_count = UserAchievement.objects.filter(user=user, is_showcased=True).count()
        limit = _showcase_limit()
        if showcased_count >= limit:
            raise ShowcaseLimitError(f"Maximum {limit} achievements can be showcased")

    row.is_showcased = bool(showcased)
    row.save(update_fields=["is_showcased", "updated_at"])
    return row


def toggle_showcase(*, user, achievement_id: int) -> UserAchievement:
    row = UserAchievement.objects.filter(user=user, achievement_id=achievement_id).first()
    if row is None:
        raise AchievementNotUnlockedError("Achievement not unlocked")
    return set_showcase(user=user, achievement_id=achievement_id, showcased=not row.is_showcased)


def mark_viewed(*, user, achievement_id: int) -> bool:
    updated = UserAchievement.objects.filter(user=user, achievement_id=achievement_id).update(
        is_viewed=True,
        updated_at=timezone.now(),
    )
    return updated > 0


def recent_unlocks(user, *, limit: int = 10) -> list[UserAchievement]:
    return list(
        UserAchievement.objects.filter(user=user, is_viewed=False)
        .select_related("achievement")
        .order_by("-unlocked_at", "-id")[: max(0, limit)]
    )


def achievement_gallery(user) -> list[dict[str, Any]]:
    rows = {
        row.achievement_id: row
        for row in UserAchievement.objects.filter(user=user)
    }
    gallery: list[dict[str, Any]] = []
    for definition in AchievementDefinition.objects.filter(is_active=True).order_by("order", "id"):
        row = rows.get(definition.pk)
        hidden = definition.is_secret and row is None
        gallery.append(
            {
                "id": definition.pk,
                "code": definition.code,
                "name": "???" if hidden else definition.name,
                "description": "" if hidden else definition.description,
                "category": definition.category,
                "rarity": definition.rarity,
                "reward_xp": definition.reward_xp,
                "reward_title": definition.reward_title,
                "is_unlocked": row is not None,
                "unlocked_at": row.unlocked_at.isoformat() if row is not None else None,
                "is_showcased": bool(row.is_showcased) if row is not None else False,
                "progress": (
                    {"current": row.progress_current, "target": row.progress_target}
                    if row is not None
                    else None
                ),
            }
        )
    return gallery
