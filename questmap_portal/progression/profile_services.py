"""Per-user gamification profile: XP crediting, level/tier and streaks."""

from __future__ import annotations

import logging
from datetime import date

from django.contrib.auth import get_user_model
from django.db import transaction

from .models import UserGamificationProfile
from .xp_services import calculate_level, calculate_tier

logger = logging.getLogger(__name__)


def selected_users(usernames: list[str] | None = None):
    """All users, or only the named ones when ``usernames`` is given."""
    queryset = get_user_model().objects.all()
    if usernames:
        queryset = queryset.filter(username__in=usernames)
    return queryset


def get_or_create_profile(user) -> UserGamificationProfile:
    profile, _ = UserGamificationProfile.objects.get_or_create(user=user)
    return profile


def lock_profile(user) -> UserGamificationProfile:
    """Fetch the profile row under a row lock; call inside ``transaction.atomic``."""
    profile = get_or_create_profile(user)
    return UserGamificationProfile.objects.select_for_update().get(pk=profile.pk)


def sync_level_and_tier(profile: UserGamificationProfile) -> bool:
    level = calculate_level(profile.xp_total)
    tier = calculate_tier(level)
    changed = level != profile.current_level or tier != profile.tier
    if level > profile.current_level:
        logger.info("User %s reached level %s (%s)", profile.user_id, level, tier)
    profile.current_level = level
    profile.tier = tier
    return changed


@transaction.atomic
def award_xp(*, user, amount: int) -> UserGamificationProfile:
    profile = lock_profile(user)
    profile.xp_total += max(0, int(amount))
    sync_level_and_tier(profile)
    profile.save(update_fields=["xp_total", "current_level", "tier", "updated_at"])
    return profile


def advance_streak(
    *,
    streak_days: int,
    longest_streak: int,
    last_active_date: date | None,
    today: date,
) -> tuple[int, int]:
    """Return ``(streak_days, longest_streak)`` after activity on ``today``."""
    if last_active_date is None:
        return 1, max(longest_streak, 1)

    gap_days = (today - last_active_date).days
    if gap_days <= 0:
        return streak_days, longest_streak
    if gap_days == 1:
        streak = streak_days + 1
        return streak, max(longest_streak, streak)
    return 1, max(longest_streak, 1)


def touch_streak(profile: UserGamificationProfile, *, today: date) -> None:
    profile.streak_days, profile.longest_streak = advance_streak(
        streak_days=profile.streak_days,
        longest_streak=profile.longest_streak,
        last_active_date=profile.last_active_date,
        today=today,
    )
    if profile.last_active_date is None or today > profile.last_active_date:
        profile.last_active_date = today
