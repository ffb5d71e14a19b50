"""Weighted answer scoring for single-best and multi-select questions.

Everything in this module is pure: a question definition plus a learner
selection goes in, an immutable ``ScoreResult`` comes out. Persistence and
XP bookkeeping live in ``submission_services``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from django.conf import settings

QUESTION_TYPE_SINGLE = "single"
QUESTION_TYPE_MULTI = "multi"
QUESTION_TYPES = frozenset({QUESTION_TYPE_SINGLE, QUESTION_TYPE_MULTI})


class QuestionDefinitionError(ValueError):
    """Raised when a question cannot be scored at all."""


class SelectionError(ValueError):
    """Raised when a learner selection is rejected before scoring."""


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class AnswerOption:
    answer_id: str
    label: str
    code: str
    is_correct: bool
    weight: float = 1.0


@dataclass(frozen=True)
class QuestionDefinition:
    prompt: str
    question_type: str
    max_points: int
    answers: tuple[AnswerOption, ...]
    difficulty: int = 3

    def answer_by_id(self, answer_id: str) -> AnswerOption | None:
        for answer in self.answers:
            if answer.answer_id == answer_id:
                return answer
        return None

    @property
    def correct_answers(self) -> tuple[AnswerOption, ...]:
        return tuple(answer for answer in self.answers if answer.is_correct)

    @property
    def best_answer(self) -> AnswerOption | None:
        """Highest-weight correct answer; the first one wins a weight tie."""
        best: AnswerOption | None = None
        for answer in self.correct_answers:
            if best is None or answer.weight > best.weight:
                best = answer
        return best


@dataclass(frozen=True)
class ScoringOptions:
    wrong_penalty: float = 0.0
    penalty_factor: float = 0.5
    perfect_bonus: float = 1.1

    @classmethod
    def from_settings(cls) -> "ScoringOptions":
        return cls(
            wrong_penalty=float(getattr(settings, "QUESTMAP_SCORING_WRONG_PENALTY", 0.0)),
            penalty_factor=float(getattr(settings, "QUESTMAP_SCORING_PENALTY_FACTOR", 0.5)),
            perfect_bonus=float(getattr(settings, "QUESTMAP_SCORING_PERFECT_BONUS", 1.1)),
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    message: str = ""
    invalid_selection: bool = False
    error: str | None = None
    earned_weight: float = 0.0
    total_correct_weight: float = 0.0
    correct_selected: int = 0
    total_correct: int = 0
    wrong_selections: int = 0
    perfect_bonus_applied: bool = False
    penalty_applied: float = 0.0


@dataclass(frozen=True)
class ScoreResult:
    score: int
    max_points: int
    question_type: str
    is_correct: bool
    is_optimal: bool = False
    is_perfect: bool = False
    is_partially_correct: bool = False
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    selected_answers: tuple[AnswerOption, ...] = ()
    best_answer: AnswerOption | None = None
    selected_correct: tuple[AnswerOption, ...] = ()
    selected_wrong: tuple[AnswerOption, ...] = ()
    missed_correct: tuple[AnswerOption, ...] = ()

    @property
    def percentage(self) -> int:
        if self.max_points <= 0:
            return 0
        return round_half_up(self.score / self.max_points * 100)


def validate_question(question: QuestionDefinition) -> None:
    if question.question_type not in QUESTION_TYPES:
        raise QuestionDefinitionError(f"Unknown question type: {question.question_type!r}")
    if question.max_points <= 0:
        raise QuestionDefinitionError("max_points must be greater than zero.")
    if len(question.answers) < 2:
        raise QuestionDefinitionError("Question must have at least 2 answers.")


def normalize_selection(selection: str | Iterable[str] | None) -> tuple[str, ...]:
    if selection is None:
        return ()
    if isinstance(selection, str):
        raw_values: Iterable[str] = [selection]
    else:
        raw_values = selection
    ordered: list[str] = []
    for value in raw_values:
        answer_id = str(value or "").strip()
        if answer_id and answer_id not in ordered:
            ordered.append(answer_id)
    return tuple(ordered)


def validate_selection(question: QuestionDefinition, selection: str | Iterable[str] | None) -> tuple[str, ...]:
    """Reject empty, over-long or unknown selections; return the normalized ids."""
    answer_ids = normalize_selection(selection)
    if not answer_ids:
        raise SelectionError("No answers selected.")
    if question.question_type == QUESTION_TYPE_SINGLE and len(answer_ids) > 1:
        raise SelectionError("Single-answer question allows only one selection.")
    invalid_ids = [answer_id for answer_id in answer_ids if question.answer_by_id(answer_id) is None]
    if invalid_ids:
        raise SelectionError(f"Invalid answer IDs: {', '.join(invalid_ids)}")
    return answer_ids


def score_single_answer(
    question: QuestionDefinition,
    selected_answer_id: str | None,
    *,
    wrong_penalty: float = 0.0,
) -> ScoreResult:
    selected = question.answer_by_id(selected_answer_id) if selected_answer_id else None
    best = question.best_answer

    if selected is None:
        return ScoreResult(
            score=0,
            max_points=question.max_points,
            question_type=QUESTION_TYPE_SINGLE,
            is_correct=False,
            breakdown=ScoreBreakdown(message="Invalid answer selected", invalid_selection=True),
        )

    if not selected.is_correct:
        penalty = round_half_up(question.max_points * wrong_penalty)
        if wrong_penalty > 0:
            message = f"Incorrect answer selected. Penalty: -{penalty} points"
        else:
            message = "Incorrect answer selected"
        return ScoreResult(
            score=max(0, -penalty),
            max_points=question.max_points,
            question_type=QUESTION_TYPE_SINGLE,
            is_correct=False,
            breakdown=ScoreBreakdown(message=message, wrong_selections=1, penalty_applied=float(penalty)),
            selected_answers=(selected,),
            best_answer=best,
            selected_wrong=(selected,),
        )

    is_optimal = best is not None and selected.answer_id == best.answer_id
    score = round_half_up(question.max_points * selected.weight)
    if is_optimal:
        message = f"Best answer selected - {score}/{question.max_points} points!"
    else:
        best_label = best.label if best is not None else ""
        message = (
            f"Correct answer! {round_half_up(selected.weight * 100)}% credit "
            f"({score}/{question.max_points} points). The optimal answer was \"{best_label}\"."
        )
    return ScoreResult(
        score=max(0, min(question.max_points, score)),
        max_points=question.max_points,
        question_type=QUESTION_TYPE_SINGLE,
        is_correct=True,
        is_optimal=is_optimal,
        is_partially_correct=not is_optimal,
        breakdown=ScoreBreakdown(
            message=message,
            earned_weight=selected.weight,
            correct_selected=1,
            total_correct=len(question.correct_answers),
        ),
        selected_answers=(selected,),
        best_answer=best,
        selected_correct=(selected,),
    )


def score_multi_answer(
    question: QuestionDefinition,
    selected_answer_ids: Sequence[str],
    *,
    penalty_factor: float = 0.5,
    perfect_bonus: float = 1.1,
) -> ScoreResult:
    correct_answers = question.correct_answers
    if not correct_answers:
        return ScoreResult(
            score=0,
            max_points=question.max_points,
            question_type=QUESTION_TYPE_MULTI,
            is_correct=False,
            breakdown=ScoreBreakdown(error="Question has no correct answers defined"),
        )

    total_correct_weight = sum(answer.weight for answer in correct_answers)
    selected: list[AnswerOption] = []
    selected_correct: list[AnswerOption] = []
    selected_wrong: list[AnswerOption] = []
    for answer_id in normalize_selection(selected_answer_ids):
        answer = question.answer_by_id(answer_id)
        if answer is None:
            continue
        selected.append(answer)
        if answer.is_correct:
            selected_correct.append(answer)
        else:
            selected_wrong.append(answer)

    selected_ids = {answer.answer_id for answer in selected_correct}
    missed_correct = tuple(answer for answer in correct_answers if answer.answer_id not in selected_ids)
    earned_weight = sum(answer.weight for answer in selected_correct)

    is_perfect = len(selected_correct) == len(correct_answers) and not selected_wrong
    ratio = earned_weight / total_correct_weight if total_correct_weight > 0 else 0.0
    ratio -= len(selected_wrong) * penalty_factor / len(correct_answers)
    if is_perfect:
        ratio *= perfect_bonus

    score = max(0, min(question.max_points, round_half_up(ratio * question.max_points)))
    return ScoreResult(
        score=score,
        max_points=question.max_points,
        question_type=QUESTION_TYPE_MULTI,
        is_correct=is_perfect,
        is_perfect=is_perfect,
        is_partially_correct=bool(selected_correct),
        breakdown=ScoreBreakdown(
            earned_weight=round(earned_weight, 2),
            total_correct_weight=round(total_correct_weight, 2),
            correct_selected=len(selected_correct),
            total_correct=len(correct_answers),
            wrong_selections=len(selected_wrong),
            perfect_bonus_applied=is_perfect,
            penalty_applied=len(selected_wrong) * penalty_factor,
        ),
        selected_answers=tuple(selected),
        best_answer=question.best_answer,
        selected_correct=tuple(selected_correct),
        selected_wrong=tuple(selected_wrong),
        missed_correct=missed_correct,
    )


def score_question(
    question: QuestionDefinition,
    selection: str | Iterable[str] | None,
    options: ScoringOptions | None = None,
) -> ScoreResult:
    validate_question(question)
    scoring = options or ScoringOptions()
    answer_ids = normalize_selection(selection)
    if question.question_type == QUESTION_TYPE_MULTI:
        return score_multi_answer(
            question,
            answer_ids,
            penalty_factor=scoring.penalty_factor,
            perfect_bonus=scoring.perfect_bonus,
        )
    return score_single_answer(
        question,
        answer_ids[0] if answer_ids else None,
        wrong_penalty=scoring.wrong_penalty,
    )


def generate_feedback(result: ScoreResult) -> str:
    """Display text for a result; never feeds back into scoring."""
    if result.breakdown.error:
        return "This question cannot be scored right now. It has been flagged for review."

    if result.question_type == QUESTION_TYPE_SINGLE:
        best_label = result.best_answer.label if result.best_answer is not None else ""
        if result.is_optimal:
            return "Perfect! You identified the most specific threat classification."
        if result.is_correct:
            return f"Correct, but there's a more specific answer. \"{best_label}\" would earn full points."
        return f"Incorrect. The correct answer was \"{best_label}\"."

    if result.is_perfect:
        return (
            "Perfect! You identified all correct classifications without any false positives. "
            "Bonus applied!"
        )
    if result.is_partially_correct:
        breakdown = result.breakdown
        message = (
            f"Partially correct. You got {breakdown.correct_selected}/{breakdown.total_correct} correct answers."
        )
        if breakdown.wrong_selections > 0:
            message += f" However, {breakdown.wrong_selections} wrong selection(s) reduced your score."
        if result.missed_correct:
            message += f" You missed: {', '.join(answer.label for answer in result.missed_correct)}."
        return message
    return "Incorrect. None of your selections were correct."
