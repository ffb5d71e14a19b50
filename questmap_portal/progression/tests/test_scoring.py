from __future__ import annotations

from django.test import SimpleTestCase, override_settings

from progression.scoring_services import (
    QUESTION_TYPE_MULTI,
    QUESTION_TYPE_SINGLE,
    AnswerOption,
    QuestionDefinition,
    QuestionDefinitionError,
    ScoringOptions,
    SelectionError,
    generate_feedback,
    normalize_selection,
    round_half_up,
    score_multi_answer,
    score_question,
    score_single_answer,
    validate_selection,
)


def _single_question() -> QuestionDefinition:
    return QuestionDefinition(
        prompt="Which classification fits best?",
        question_type=QUESTION_TYPE_SINGLE,
        max_points=100,
        answers=(
            AnswerOption(answer_id="A", label="Phishing", code="T1566", is_correct=True, weight=0.7),
            AnswerOption(answer_id="B", label="Spearphishing link", code="T1566.002", is_correct=True, weight=1.0),
            AnswerOption(answer_id="C", label="Ransomware", code="T1486", is_correct=False, weight=0.0),
        ),
    )


def _multi_question() -> QuestionDefinition:
    return QuestionDefinition(
        prompt="Select every indicator.",
        question_type=QUESTION_TYPE_MULTI,
        max_points=100,
        answers=(
            AnswerOption(answer_id="X", label="Spoofed sender", code="IND-1", is_correct=True, weight=0.4),
            AnswerOption(answer_id="Y", label="Urgent tone", code="IND-2", is_correct=True, weight=0.6),
            AnswerOption(answer_id="Z", label="Company logo", code="IND-3", is_correct=False, weight=0.0),
        ),
    )


class RoundHalfUpTests(SimpleTestCase):
    def test_halves_round_towards_positive_infinity(self) -> None:
        self.assertEqual(round_half_up(0.5), 1)
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(-0.5), 0)
        self.assertEqual(round_half_up(74.49), 74)


class SingleAnswerScoringTests(SimpleTestCase):
    def test_best_weighted_answer_earns_full_points(self) -> None:
        result = score_question(_single_question(), "B")
        self.assertEqual(result.score, 100)
        self.assertTrue(result.is_correct)
        self.assertTrue(result.is_optimal)
        self.assertFalse(result.is_partially_correct)

    def test_lower_weighted_correct_answer_earns_partial_credit(self) -> None:
        result = score_question(_single_question(), "A")
        self.assertEqual(result.score, 70)
        self.assertTrue(result.is_correct)
        self.assertFalse(result.is_optimal)
        self.assertEqual(result.best_answer.answer_id, "B")

    def test_best_answer_below_full_weight_scores_its_weight(self) -> None:
        question = QuestionDefinition(
            prompt="Which classification fits best?",
            question_type=QUESTION_TYPE_SINGLE,
            max_points=100,
            answers=(
                AnswerOption(answer_id="A", label="Credential harvesting", code="T1056", is_correct=True, weight=0.8),
                AnswerOption(answer_id="B", label="Phishing", code="T1566", is_correct=True, weight=0.5),
                AnswerOption(answer_id="C", label="Ransomware", code="T1486", is_correct=False, weight=0.0),
            ),
        )
        best = score_question(question, "A")
        self.assertEqual(best.score, 80)
        self.assertTrue(best.is_optimal)
        self.assertIn("80/100", best.breakdown.message)
        self.assertEqual(score_question(question, "B").score, 50)

    def test_wrong_answer_without_penalty_scores_zero(self) -> None:
        result = score_question(_single_question(), "C")
        self.assertEqual(result.score, 0)
        self.assertFalse(result.is_correct)
        self.assertEqual(result.selected_wrong[0].answer_id, "C")

    def test_wrong_answer_penalty_is_clamped_at_zero(self) -> None:
        result = score_single_answer(_single_question(), "C", wrong_penalty=0.25)
        self.assertEqual(result.score, 0)
        self.assertEqual(result.breakdown.penalty_applied, 25.0)

    def test_unknown_answer_is_flagged_invalid(self) -> None:
        result = score_single_answer(_single_question(), "nope")
        self.assertEqual(result.score, 0)
        self.assertFalse(result.is_correct)
        self.assertTrue(result.breakdown.invalid_selection)

    def test_weight_tie_keeps_first_correct_answer_as_best(self) -> None:
        question = QuestionDefinition(
            prompt="Tie",
            question_type=QUESTION_TYPE_SINGLE,
            max_points=10,
            answers=(
                AnswerOption(answer_id="first", label="First", code="1", is_correct=True, weight=1.0),
                AnswerOption(answer_id="second", label="Second", code="2", is_correct=True, weight=1.0),
            ),
        )
        self.assertEqual(question.best_answer.answer_id, "first")
        self.assertFalse(score_question(question, "second").is_optimal)

    def test_score_stays_within_bounds_for_every_answer(self) -> None:
        question = _single_question()
        for answer in question.answers:
            result = score_question(question, answer.answer_id, ScoringOptions(wrong_penalty=1.0))
            self.assertGreaterEqual(result.score, 0)
            self.assertLessEqual(result.score, question.max_points)


class MultiAnswerScoringTests(SimpleTestCase):
    def test_exact_correct_set_is_bonus_adjusted_and_clamped(self) -> None:
        result = score_question(_multi_question(), ["X", "Y"])
        self.assertEqual(result.score, 100)
        self.assertTrue(result.is_perfect)
        self.assertTrue(result.breakdown.perfect_bonus_applied)

    def test_partial_selection_earns_weight_share(self) -> None:
        result = score_question(_multi_question(), ["X"])
        self.assertEqual(result.score, 40)
        self.assertFalse(result.is_perfect)
        self.assertTrue(result.is_partially_correct)
        self.assertEqual([answer.answer_id for answer in result.missed_correct], ["Y"])

    def test_wrong_selection_is_penalized_per_correct_answer(self) -> None:
        result = score_question(_multi_question(), ["X", "Y", "Z"])
        self.assertEqual(result.score, 75)
        self.assertFalse(result.is_perfect)
        self.assertEqual(result.breakdown.wrong_selections, 1)

    def test_only_wrong_selection_never_goes_negative(self) -> None:
        result = score_question(_multi_question(), ["Z"])
        self.assertEqual(result.score, 0)
        self.assertFalse(result.is_partially_correct)

    def test_question_without_correct_answers_is_degenerate(self) -> None:
        question = QuestionDefinition(
            prompt="Broken",
            question_type=QUESTION_TYPE_MULTI,
            max_points=100,
            answers=(
                AnswerOption(answer_id="a", label="A", code="A", is_correct=False),
                AnswerOption(answer_id="b", label="B", code="B", is_correct=False),
            ),
        )
        result = score_multi_answer(question, ["a"])
        self.assertEqual(result.score, 0)
        self.assertEqual(result.breakdown.error, "Question has no correct answers defined")
        self.assertIn("flagged for review", generate_feedback(result))

    @override_settings(QUESTMAP_SCORING_PENALTY_FACTOR=1.0, QUESTMAP_SCORING_PERFECT_BONUS=1.0)
    def test_options_can_be_read_from_settings(self) -> None:
        options = ScoringOptions.from_settings()
        self.assertEqual(options.penalty_factor, 1.0)
        result = score_question(_multi_question(), ["X", "Y", "Z"], options)
        self.assertEqual(result.score, 50)


class SelectionValidationTests(SimpleTestCase):
    def test_normalize_selection_dedupes_and_keeps_order(self) -> None:
        self.assertEqual(normalize_selection(["Y", " X ", "Y", ""]), ("Y", "X"))
        self.assertEqual(normalize_selection("B"), ("B",))
        self.assertEqual(normalize_selection(None), ())

    def test_empty_selection_is_rejected(self) -> None:
        with self.assertRaises(SelectionError):
            validate_selection(_single_question(), [])

    def test_multiple_ids_rejected_for_single_question(self) -> None:
        with self.assertRaises(SelectionError):
            validate_selection(_single_question(), ["A", "B"])

    def test_unknown_ids_are_rejected(self) -> None:
        with self.assertRaisesMessage(SelectionError, "Invalid answer IDs: Q"):
            validate_selection(_multi_question(), ["X", "Q"])

    def test_question_with_single_answer_cannot_be_scored(self) -> None:
        question = QuestionDefinition(
            prompt="Too short",
            question_type=QUESTION_TYPE_SINGLE,
            max_points=10,
            answers=(AnswerOption(answer_id="a", label="A", code="A", is_correct=True),),
        )
        with self.assertRaises(QuestionDefinitionError):
            score_question(question, "a")


class FeedbackTests(SimpleTestCase):
    def test_feedback_names_best_answer_for_partial_single(self) -> None:
        feedback = generate_feedback(score_question(_single_question(), "A"))
        self.assertIn("Spearphishing link", feedback)

    def test_feedback_lists_missed_answers_for_multi(self) -> None:
        feedback = generate_feedback(score_question(_multi_question(), ["X", "Z"]))
        self.assertIn("1/2", feedback)
        self.assertIn("Urgent tone", feedback)
