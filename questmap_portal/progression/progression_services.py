"""World-map progression: quest stars, region aggregation and unlock gating."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from .achievement_services import evaluate_user_achievements
from .models import (
    ContentStatus,
    Quest,
    QuestProgress,
    Region,
    RegionProgress,
    UserWorldMapProgress,
)
from .profile_services import get_or_create_profile, lock_profile, selected_users, sync_level_and_tier
from .scoring_services import round_half_up
from .xp_services import level_snapshot

logger = logging.getLogger(__name__)

MAX_STARS_PER_QUEST = 3


class ProgressionInputError(ValueError):
    """Raised when a quest attempt carries an out-of-range score."""


class ProgressionNotFoundError(LookupError):
    """Raised when a quest or region does not exist or is not active."""


@dataclass(frozen=True)
class StarThresholds:
    one: int = 50
    two: int = 75
    three: int = 90

    @classmethod
    def for_quest(cls, quest: Quest) -> "StarThresholds":
        return cls(
            one=quest.star_threshold_one,
            two=quest.star_threshold_two,
            three=quest.star_threshold_three,
        )


def calculate_stars(score: float, thresholds: StarThresholds | None = None) -> int:
    """Inclusive step function from a 0-100 score to 0-3 stars."""
    bands = thresholds or StarThresholds()
    if score >= bands.three:
        return 3
    if score >= bands.two:
        return 2
    if score >= bands.one:
        return 1
    return 0


def quest_xp_for_score(score: float, *, xp_reward: int, bonus_xp: int, stars: int) -> int:
    xp = round_half_up(score / 100 * xp_reward)
    if stars == MAX_STARS_PER_QUEST:
        xp += bonus_xp
    return max(0, xp)


@dataclass(frozen=True)
class QuestAttemptOutcome:
    stars: int
    previous_stars: int
    improved_best: bool
    is_new_completion: bool
    xp_earned: int


def apply_quest_attempt(
    quest_progress: Any,
    *,
    score: float,
    thresholds: StarThresholds,
    xp_reward: int,
    bonus_xp: int,
    now: datetime,
) -> QuestAttemptOutcome:
    """Fold one attempt into ``quest_progress`` in place.

    ``best_score`` and ``stars`` only move when ``score`` strictly beats the
    stored best. XP is only earned when the attempt raises the star count.
    """
    previous_stars = int(quest_progress.stars or 0)
    was_completed = bool(quest_progress.is_completed)

    quest_progress.attempts = int(quest_progress.attempts or 0) + 1
    quest_progress.last_attempt_at = now

    improved_best = score > float(quest_progress.best_score or 0)
    if improved_best:
        quest_progress.best_score = score
        quest_progress.stars = max(previous_stars, calculate_stars(score, thresholds))

    if not was_completed and quest_progress.stars >= 1:
        quest_progress.is_completed = True
        quest_progress.completed_at = now

    xp_earned = 0
    if quest_progress.stars > previous_stars:
        xp_earned = quest_xp_for_score(
            score,
            xp_reward=xp_reward,
            bonus_xp=bonus_xp,
            stars=quest_progress.stars,
        )

    return QuestAttemptOutcome(
        stars=quest_progress.stars,
        previous_stars=previous_stars,
        improved_best=improved_best,
        is_new_completion=not was_completed and bool(quest_progress.is_completed),
        xp_earned=xp_earned,
    )


def aggregate_region(
    region_progress: Any,
    quest_entries: Iterable[Any],
    *,
    total_quests: int,
    now: datetime,
) -> bool:
    """Recompute a region's counters from its quest rows; return True on a fresh completion."""
    entries = list(quest_entries)
    region_progress.total_stars = sum(int(entry.stars or 0) for entry in entries)
    region_progress.quests_completed = sum(1 for entry in entries if entry.is_completed)
    region_progress.total_quests = total_quests

    if region_progress.is_completed:
        return False
    if total_quests > 0 and region_progress.quests_completed >= total_quests:
        region_progress.is_completed = True
        region_progress.completed_at = now
        return True
    return False


@dataclass(frozen=True)
class RegionGate:
    region_id: int
    required_level: int = 1
    prerequisite_ids: frozenset[int] = frozenset()
    required_stars_from_previous: int = 0

    @classmethod
    def from_region(cls, region: Region) -> "RegionGate":
        return cls(
            region_id=region.pk,
            required_level=region.required_level,
            prerequisite_ids=frozenset(item.pk for item in region.prerequisite_regions.all()),
            required_stars_from_previous=region.required_stars_from_previous,
        )


def _is_completed(progress: Any | None) -> bool:
    return bool(progress is not None and progress.is_completed)


def region_unlock_states(
    gates: Sequence[RegionGate],
    progress_by_region: Mapping[int, Any],
    *,
    level: int,
) -> dict[int, bool]:
    """Unlock flag per region id for regions given in display order.

    A region stays unlocked once its stored progress says so.
    """
    states: dict[int, bool] = {}
    for index, gate in enumerate(gates):
        progress = progress_by_region.get(gate.region_id)
        if progress is not None and progress.is_unlocked:
            states[gate.region_id] = True
            continue
        if index == 0:
            states[gate.region_id] = True
            continue
        if level < gate.required_level:
            states[gate.region_id] = False
            continue

        if gate.prerequisite_ids:
            states[gate.region_id] = all(
                _is_completed(progress_by_region.get(region_id)) for region_id in gate.prerequisite_ids
            )
            continue

        previous = progress_by_region.get(gates[index - 1].region_id)
        previous_stars = int(previous.total_stars or 0) if previous is not None else 0
        states[gate.region_id] = _is_completed(previous) or previous_stars >= gate.required_stars_from_previous
    return states


def quest_unlock_states(quests: Sequence[Any], stars_by_quest: Mapping[int, int]) -> dict[int, bool]:
    """Unlock flag per quest id for quests of one region given in order."""
    states: dict[int, bool] = {}
    cumulative_stars = 0
    for index, quest in enumerate(quests):
        states[quest.pk] = index == 0 or cumulative_stars >= int(quest.required_stars or 0)
        cumulative_stars += int(stars_by_quest.get(quest.pk, 0))
    return states


def _active_regions():
    return Region.objects.filter(status=ContentStatus.ACTIVE).prefetch_related("prerequisite_regions").order_by(
        "order", "id"
    )


def _active_quests(region: Region):
    return Quest.objects.filter(region=region, status=ContentStatus.ACTIVE).order_by("order", "id")


def _lock_world_progress(user) -> UserWorldMapProgress:
    progress, _ = UserWorldMapProgress.objects.get_or_create(user=user)
    return UserWorldMapProgress.objects.select_for_update().get(pk=progress.pk)


def _refresh_rollups(progress: UserWorldMapProgress) -> None:
    region_totals = RegionProgress.objects.filter(progress=progress).aggregate(total=Sum("total_stars"))
    progress.total_stars = int(region_totals["total"] or 0)
    progress.regions_completed = RegionProgress.objects.filter(progress=progress, is_completed=True).count()
    progress.quests_completed = QuestProgress.objects.filter(progress=progress, is_completed=True).count()


@dataclass(frozen=True)
class QuestCompletion:
    """Result of one quest attempt.

    ``is_new_completion`` is true only when this attempt moved the quest from
    not completed to completed, i.e. earned its first star. A first attempt
    that scores zero stars records the attempt but is not a completion.
    """

    quest_progress: QuestProgress
    region_progress: RegionProgress
    outcome: QuestAttemptOutcome
    region_newly_completed: bool
    achievements_unlocked: tuple[str, ...]

    @property
    def xp_earned(self) -> int:
        return self.outcome.xp_earned

    @property
    def is_new_completion(self) -> bool:
        return self.outcome.is_new_completion


@transaction.atomic
def complete_quest(*, user, quest_id: int, score: float, now: datetime | None = None) -> QuestCompletion:
    if not isinstance(score, (int, float)) or isinstance(score, bool) or not 0 <= score <= 100:
        raise ProgressionInputError("score must be a number between 0 and 100.")
    quest = (
        Quest.objects.select_related("region")
        .filter(pk=quest_id, status=ContentStatus.ACTIVE, region__status=ContentStatus.ACTIVE)
        .first()
    )
    if quest is None:
        raise ProgressionNotFoundError(f"Quest not found: {quest_id}")

    timestamp = now or timezone.now()
    progress = _lock_world_progress(user)
    profile = lock_profile(user)

    quest_progress, _ = QuestProgress.objects.get_or_create(
        progress=progress,
        quest=quest,
        defaults={"region": quest.region},
    )
    outcome = apply_quest_attempt(
        quest_progress,
        score=float(score),
        thresholds=StarThresholds.for_quest(quest),
        xp_reward=quest.xp_reward,
        bonus_xp=quest.bonus_xp,
        now=timestamp,
    )
    quest_progress.save()

    region_progress, _ = RegionProgress.objects.get_or_create(
        progress=progress,
        region=quest.region,
        defaults={"is_unlocked": True, "first_entered_at": timestamp},
    )
    region_progress.is_unlocked = True
    if region_progress.first_entered_at is None:
        region_progress.first_entered_at = timestamp
    region_newly_completed = aggregate_region(
        region_progress,
        QuestProgress.objects.filter(progress=progress, region=quest.region),
        total_quests=_active_quests(quest.region).count(),
        now=timestamp,
    )
    region_progress.save()

    _refresh_rollups(progress)
    progress.total_world_map_xp += outcome.xp_earned
    progress.active_region = quest.region
    progress.last_active_quest = quest
    progress.version += 1
    progress.save()

    if outcome.xp_earned:
        profile.xp_total += outcome.xp_earned
        sync_level_and_tier(profile)
        profile.save(update_fields=["xp_total", "current_level", "tier", "updated_at"])

    if outcome.is_new_completion:
        logger.info("User %s completed quest %s with %s star(s)", user.pk, quest.pk, outcome.stars)
    if region_newly_completed:
        logger.info("User %s completed region %s", user.pk, quest.region.code)

    award = evaluate_user_achievements(user, now=timestamp)
    if award.xp_delta:
        profile = lock_profile(user)
        sync_level_and_tier(profile)
        profile.save(update_fields=["current_level", "tier", "updated_at"])

    return QuestCompletion(
        quest_progress=quest_progress,
        region_progress=region_progress,
        outcome=outcome,
        region_newly_completed=region_newly_completed,
        achievements_unlocked=tuple(row.achievement.code for row in award.unlocked),
    )


def refresh_region_stats(region: Region) -> Region:
    quests = _active_quests(region)
    region.total_quests = quests.count()
    region.max_stars = region.total_quests * MAX_STARS_PER_QUEST
    region.total_xp = int(quests.aggregate(total=Sum("xp_reward"))["total"] or 0)
    region.save(update_fields=["total_quests", "max_stars", "total_xp", "updated_at"])
    return region


def _region_progress_map(user) -> dict[int, RegionProgress]:
    progress = UserWorldMapProgress.objects.filter(user=user).first()
    if progress is None:
        return {}
    return {entry.region_id: entry for entry in RegionProgress.objects.filter(progress=progress)}


def get_world_map(user) -> dict[str, Any]:
    profile = get_or_create_profile(user)
    regions = list(_active_regions())
    entries = _region_progress_map(user)
    unlocked = region_unlock_states(
        [RegionGate.from_region(region) for region in regions],
        entries,
        level=profile.current_level,
    )
    progress = UserWorldMapProgress.objects.filter(user=user).first()

    region_payload = []
    for region in regions:
        entry = entries.get(region.pk)
        region_payload.append(
            {
                "id": region.pk,
                "code": region.code,
                "name": region.name,
                "order": region.order,
                "required_level": region.required_level,
                "required_stars_from_previous": region.required_stars_from_previous,
                "prerequisite_ids": sorted(item.pk for item in region.prerequisite_regions.all()),
                "total_quests": region.total_quests,
                "max_stars": region.max_stars,
                "is_unlocked": unlocked[region.pk],
                "is_completed": _is_completed(entry),
                "total_stars": entry.total_stars if entry is not None else 0,
                "quests_completed": entry.quests_completed if entry is not None else 0,
            }
        )

    return {
        "level": profile.current_level,
        "tier": profile.tier,
        "total_stars": progress.total_stars if progress is not None else 0,
        "regions_completed": progress.regions_completed if progress is not None else 0,
        "quests_completed": progress.quests_completed if progress is not None else 0,
        "total_world_map_xp": progress.total_world_map_xp if progress is not None else 0,
        "active_region_id": progress.active_region_id if progress is not None else None,
        "regions": region_payload,
    }


def get_region_detail(user, region_id: int) -> dict[str, Any]:
    region = _active_regions().filter(pk=region_id).first()
    if region is None:
        raise ProgressionNotFoundError(f"Region not found: {region_id}")

    world_map = get_world_map(user)
    region_summary = next(item for item in world_map["regions"] if item["id"] == region.pk)
    quests = list(_active_quests(region))
    progress = UserWorldMapProgress.objects.filter(user=user).first()
    quest_entries: dict[int, QuestProgress] = {}
    if progress is not None:
        quest_entries = {
            entry.quest_id: entry
            for entry in QuestProgress.objects.filter(progress=progress, region=region)
        }
    quest_unlocked = quest_unlock_states(
        quests,
        {quest_id: entry.stars for quest_id, entry in quest_entries.items()},
    )

    return {
        "region": region_summary,
        "quests": [
            {
                "id": quest.pk,
                "title": quest.title,
                "order": quest.order,
                "difficulty": quest.difficulty,
                "xp_reward": quest.xp_reward,
                "bonus_xp": quest.bonus_xp,
                "required_stars": quest.required_stars,
                "star_thresholds": {
                    "one": quest.star_threshold_one,
                    "two": quest.star_threshold_two,
                    "three": quest.star_threshold_three,
                },
                "is_unlocked": region_summary["is_unlocked"] and quest_unlocked[quest.pk],
                "is_completed": bool(quest_entries.get(quest.pk) and quest_entries[quest.pk].is_completed),
                "stars": quest_entries[quest.pk].stars if quest.pk in quest_entries else 0,
                "best_score": quest_entries[quest.pk].best_score if quest.pk in quest_entries else 0,
                "attempts": quest_entries[quest.pk].attempts if quest.pk in quest_entries else 0,
            }
            for quest in quests
        ],
    }


def get_progress_summary(user) -> dict[str, Any]:
    profile = get_or_create_profile(user)
    snapshot = level_snapshot(profile.xp_total)
    progress = UserWorldMapProgress.objects.filter(user=user).first()
    return {
        "xp_total": snapshot.xp_total,
        "level": snapshot.level,
        "tier": snapshot.tier,
        "xp_into_level": snapshot.xp_into_level,
        "xp_for_next_level": snapshot.xp_for_next_level,
        "streak_days": profile.streak_days,
        "longest_streak": profile.longest_streak,
        "missions_completed": profile.missions_completed,
        "perfect_scores": profile.perfect_scores,
        "total_stars": progress.total_stars if progress is not None else 0,
        "regions_completed": progress.regions_completed if progress is not None else 0,
        "quests_completed": progress.quests_completed if progress is not None else 0,
        "total_regions": Region.objects.filter(status=ContentStatus.ACTIVE).count(),
    }


@transaction.atomic
def recompute_user_progress(user) -> UserWorldMapProgress:
    """Rebuild region counters and rollups from stored quest rows."""
    progress = _lock_world_progress(user)
    timestamp = timezone.now()
    for region_progress in RegionProgress.objects.select_related("region").filter(progress=progress):
        aggregate_region(
            region_progress,
            QuestProgress.objects.filter(progress=progress, region=region_progress.region),
            total_quests=_active_quests(region_progress.region).count(),
            now=timestamp,
        )
        region_progress.save()

    _refresh_rollups(progress)
    progress.version += 1
    progress.save()

    profile = lock_profile(user)
    if sync_level_and_tier(profile):
        profile.save(update_fields=["current_level", "tier", "updated_at"])
    return progress


def recompute_many(*, usernames: list[str] | None = None) -> int:
    processed = 0
    for user in selected_users(usernames).iterator():
        recompute_user_progress(user)
        processed += 1
    return processed
