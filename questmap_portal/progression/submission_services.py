"""Answer and mission submission flows.

Each flow is one atomic unit: score, update counters, credit XP, re-derive
level/tier and evaluate achievements. Any failure rolls the whole request
back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from .achievement_services import evaluate_user_achievements
from .models import ContentStatus, MissionCompletion, Question
from .profile_services import lock_profile, sync_level_and_tier, touch_streak
from .progression_services import ProgressionInputError, ProgressionNotFoundError
from .scoring_services import (
    AnswerOption,
    QuestionDefinition,
    ScoreResult,
    ScoringOptions,
    generate_feedback,
    round_half_up,
    score_question,
    validate_question,
    validate_selection,
)
from .xp_services import calculate_xp

logger = logging.getLogger(__name__)


class DuplicateCompletionError(RuntimeError):
    """Raised when a mission completion is recorded twice for a user."""


def _perfect_score_threshold() -> int:
    return int(getattr(settings, "QUESTMAP_PERFECT_SCORE_THRESHOLD", 90))


def question_definition(question: Question) -> QuestionDefinition:
    return QuestionDefinition(
        prompt=question.prompt,
        question_type=question.question_type,
        max_points=question.max_points,
        difficulty=question.difficulty,
        answers=tuple(
            AnswerOption(
                answer_id=answer.answer_key,
                label=answer.label,
                code=answer.code,
                is_correct=answer.is_correct,
                weight=answer.weight,
            )
            for answer in question.answers.all()
        ),
    )


def _record_question_stats(question_id: int, score: int) -> None:
    """Fold one score into the running stats; the row lock is held only for this step."""
    question = Question.objects.select_for_update().get(pk=question_id)
    answered = question.times_answered + 1
    running_total = question.average_score * question.times_answered + score
    question.times_answered = answered
    question.average_score = round(running_total / answered, 1)
    question.save(update_fields=["times_answered", "average_score", "updated_at"])


@dataclass(frozen=True)
class AnswerSubmission:
    result: ScoreResult
    feedback: str
    xp_earned: int
    level: int
    tier: str
    achievements_unlocked: tuple[str, ...]


@transaction.atomic
def submit_answer(
    *,
    user,
    question_id: int,
    selection: str | Iterable[str] | None,
    options: ScoringOptions | None = None,
) -> AnswerSubmission:
    question = (
        Question.objects.prefetch_related("answers")
        .filter(pk=question_id, status=ContentStatus.ACTIVE)
        .first()
    )
    if question is None:
        raise ProgressionNotFoundError(f"Question not found: {question_id}")

    definition = question_definition(question)
    validate_question(definition)
    answer_ids = validate_selection(definition, selection)
    result = score_question(definition, answer_ids, options or ScoringOptions.from_settings())

    profile = lock_profile(user)
    xp_earned = calculate_xp(result.score, definition.difficulty, profile.streak_days)
    profile.xp_total += xp_earned
    profile.total_decisions += 1
    if result.is_correct or result.is_partially_correct:
        profile.correct_decisions += 1
    sync_level_and_tier(profile)
    profile.save()

    award = evaluate_user_achievements(user)
    profile = lock_profile(user)
    if award.xp_delta and sync_level_and_tier(profile):
        profile.save(update_fields=["current_level", "tier", "updated_at"])
    _record_question_stats(question.pk, result.score)

    return AnswerSubmission(
        result=result,
        feedback=generate_feedback(result),
        xp_earned=xp_earned,
        level=profile.current_level,
        tier=profile.tier,
        achievements_unlocked=tuple(row.achievement.code for row in award.unlocked),
    )


@dataclass(frozen=True)
class MissionResult:
    completion: MissionCompletion
    xp_earned: int
    is_perfect: bool
    streak_days: int
    level: int
    tier: str
    achievements_unlocked: tuple[str, ...]


@transaction.atomic
def record_mission_completion(
    *,
    user,
    mission_key: str,
    score: int,
    max_points: int = 100,
    difficulty: int = 1,
    today: date | None = None,
) -> MissionResult:
    key = str(mission_key or "").strip()
    if not key:
        raise ProgressionInputError("mission_key is required.")
    if max_points <= 0 or not 0 <= score <= max_points:
        raise ProgressionInputError("score must be between 0 and max_points.")

    profile = lock_profile(user)
    if MissionCompletion.objects.filter(user=user, mission_key=key).exists():
        raise DuplicateCompletionError(f"Mission already completed: {key}")

    xp_earned = calculate_xp(score, difficulty, profile.streak_days)
    try:
        with transaction.atomic():
            completion = MissionCompletion.objects.create(
                user=user,
                mission_key=key,
                score=score,
                max_points=max_points,
                difficulty=difficulty,
                xp_awarded=xp_earned,
            )
    except IntegrityError as exc:
        raise DuplicateCompletionError(f"Mission already completed: {key}") from exc

    percentage = round_half_up(score / max_points * 100)
    is_perfect = percentage >= _perfect_score_threshold()
    profile.missions_completed += 1
    if is_perfect:
        profile.perfect_scores += 1
    profile.xp_total += xp_earned
    touch_streak(profile, today=today or timezone.localdate())
    sync_level_and_tier(profile)
    profile.save()
    logger.info("User %s completed mission %s (%s%%, +%s XP)", user.pk, key, percentage, xp_earned)

    award = evaluate_user_achievements(user)
    profile = lock_profile(user)
    if award.xp_delta and sync_level_and_tier(profile):
        profile.save(update_fields=["current_level", "tier", "updated_at"])

    return MissionResult(
        completion=completion,
        xp_earned=xp_earned,
        is_perfect=is_perfect,
        streak_days=profile.streak_days,
        level=profile.current_level,
        tier=profile.tier,
        achievements_unlocked=tuple(row.achievement.code for row in award.unlocked),
    )
