from __future__ import annotations

from datetime import date
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db.models.query import QuerySet
from django.test import TestCase, override_settings

from progression.achievement_services import evaluate_user_achievements
from progression.models import (
    AchievementDefinition,
    Answer,
    ContentStatus,
    MissionCompletion,
    Quest,
    Question,
    Region,
    UserGamificationProfile,
)
from progression.profile_services import award_xp
from progression.progression_services import ProgressionInputError, ProgressionNotFoundError
from progression.scoring_services import SelectionError
from progression.submission_services import (
    DuplicateCompletionError,
    question_definition,
    record_mission_completion,
    submit_answer,
)


class AnswerSubmissionTests(TestCase):
    def setUp(self) -> None:
        self.user = User.objects.create_user(username="trainee", password="Secret123!!")
        self.question = Question.objects.create(prompt="Classify the email.", difficulty=3)
        Answer.objects.create(question=self.question, answer_key="A", label="Phishing", code="T1566", is_correct=True, weight=0.7, sort_order=1)
        Answer.objects.create(question=self.question, answer_key="B", label="Spearphishing link", code="T1566.002", is_correct=True, weight=1.0, sort_order=2)
        Answer.objects.create(question=self.question, answer_key="C", label="Ransomware", code="T1486", is_correct=False, weight=0.0, sort_order=3)

    def test_question_definition_follows_answer_order(self) -> None:
        definition = question_definition(self.question)
        self.assertEqual([answer.answer_id for answer in definition.answers], ["A", "B", "C"])
        self.assertEqual(definition.best_answer.answer_id, "B")

    def test_submission_scores_and_awards_xp(self) -> None:
        submission = submit_answer(user=self.user, question_id=self.question.pk, selection="B")

        self.assertEqual(submission.result.score, 100)
        self.assertTrue(submission.result.is_optimal)
        self.assertEqual(submission.xp_earned, 175)
        self.assertIn("Perfect", submission.feedback)

        profile = UserGamificationProfile.objects.get(user=self.user)
        self.assertEqual(profile.xp_total, 175)
        self.assertEqual(profile.correct_decisions, 1)
        self.assertEqual(profile.total_decisions, 1)

    def test_question_running_stats_and_decision_counters(self) -> None:
        submit_answer(user=self.user, question_id=self.question.pk, selection="B")
        submit_answer(user=self.user, question_id=self.question.pk, selection="A")
        submit_answer(user=self.user, question_id=self.question.pk, selection="C")

        self.question.refresh_from_db()
        self.assertEqual(self.question.times_answered, 3)
        self.assertEqual(self.question.average_score, 56.7)
        profile = UserGamificationProfile.objects.get(user=self.user)
        self.assertEqual(profile.correct_decisions, 2)
        self.assertEqual(profile.total_decisions, 3)
        self.assertEqual(profile.xp_total, 175 + 123)

    @patch("progression.submission_services.evaluate_user_achievements", side_effect=RuntimeError("boom"))
    def test_failure_during_achievements_rolls_back_the_submission(self, mock_evaluate) -> None:
        with self.assertRaises(RuntimeError):
            submit_answer(user=self.user, question_id=self.question.pk, selection="B")

        mock_evaluate.assert_called_once()
        self.question.refresh_from_db()
        self.assertEqual(self.question.times_answered, 0)
        self.assertEqual(self.question.average_score, 0)
        self.assertFalse(
            UserGamificationProfile.objects.filter(user=self.user)
            .exclude(xp_total=0, total_decisions=0, correct_decisions=0)
            .exists()
        )

    def test_question_row_is_locked_only_after_achievements(self) -> None:
        events: list[str] = []
        real_select_for_update = QuerySet.select_for_update

        def recording_select_for_update(queryset, *args, **kwargs):
            events.append(f"lock:{queryset.model.__name__}")
            return real_select_for_update(queryset, *args, **kwargs)

        def recording_evaluate(user, **kwargs):
            events.append("achievements")
            return evaluate_user_achievements(user, **kwargs)

        with patch.object(QuerySet, "select_for_update", recording_select_for_update), patch(
            "progression.submission_services.evaluate_user_achievements",
            side_effect=recording_evaluate,
        ):
            submit_answer(user=self.user, question_id=self.question.pk, selection="A")

        self.assertEqual(events.count("lock:Question"), 1)
        self.assertGreater(events.index("lock:Question"), events.index("achievements"))
        self.question.refresh_from_db()
        self.assertEqual(self.question.times_answered, 1)
        self.assertEqual(self.question.average_score, 70.0)

    def test_invalid_selection_is_rejected_without_changes(self) -> None:
        with self.assertRaises(SelectionError):
            submit_answer(user=self.user, question_id=self.question.pk, selection="Z")
        with self.assertRaises(SelectionError):
            submit_answer(user=self.user, question_id=self.question.pk, selection=["A", "B"])

        self.question.refresh_from_db()
        self.assertEqual(self.question.times_answered, 0)
        self.assertFalse(UserGamificationProfile.objects.filter(user=self.user, total_decisions__gt=0).exists())

    def test_unknown_or_hidden_question_is_not_found(self) -> None:
        with self.assertRaises(ProgressionNotFoundError):
            submit_answer(user=self.user, question_id=999_999, selection="A")
        Question.objects.filter(pk=self.question.pk).update(status=ContentStatus.HIDDEN)
        with self.assertRaises(ProgressionNotFoundError):
            submit_answer(user=self.user, question_id=self.question.pk, selection="A")

    def test_authoring_checks_reject_bad_answer_sets(self) -> None:
        lonely = Question.objects.create(prompt="Only one answer")
        Answer.objects.create(question=lonely, answer_key="A", label="A", code="A", is_correct=True)
        with self.assertRaises(ValidationError):
            lonely.validate_answer_set()

        no_correct = Question.objects.create(prompt="Nothing correct")
        Answer.objects.create(question=no_correct, answer_key="A", label="A", code="A")
        Answer.objects.create(question=no_correct, answer_key="B", label="B", code="B")
        with self.assertRaises(ValidationError):
            no_correct.validate_answer_set()
        self.question.validate_answer_set()

        with self.assertRaises(ValidationError):
            Answer(question=self.question, answer_key="D", label="D", code="D", weight=1.5).clean()
        with self.assertRaises(ValidationError):
            Question(prompt="x", max_points=100, difficulty=9).clean()

    def test_quest_threshold_ordering_is_validated(self) -> None:
        region = Region.objects.create(code="lab", name="Lab")
        quest = Quest(region=region, title="Bad", order=1, star_threshold_one=80, star_threshold_two=70)
        with self.assertRaises(ValidationError):
            quest.clean()


class MissionCompletionTests(TestCase):
    def setUp(self) -> None:
        self.user = User.objects.create_user(username="operator", password="Secret123!!")

    def test_completion_counts_mission_and_starts_streak(self) -> None:
        result = record_mission_completion(
            user=self.user,
            mission_key="m-001",
            score=80,
            difficulty=2,
            today=date(2026, 4, 1),
        )
        self.assertEqual(result.xp_earned, 120)
        self.assertFalse(result.is_perfect)
        self.assertEqual(result.streak_days, 1)
        self.assertEqual(result.completion.xp_awarded, 120)

        profile = UserGamificationProfile.objects.get(user=self.user)
        self.assertEqual(profile.missions_completed, 1)
        self.assertEqual(profile.perfect_scores, 0)
        self.assertEqual(profile.last_active_date, date(2026, 4, 1))

    def test_duplicate_completion_is_a_conflict(self) -> None:
        record_mission_completion(user=self.user, mission_key="m-001", score=80, today=date(2026, 4, 1))
        with self.assertRaises(DuplicateCompletionError):
            record_mission_completion(user=self.user, mission_key="m-001", score=100, today=date(2026, 4, 2))

        profile = UserGamificationProfile.objects.get(user=self.user)
        self.assertEqual(profile.missions_completed, 1)
        self.assertEqual(MissionCompletion.objects.filter(user=self.user).count(), 1)

    def test_streak_follows_daily_activity(self) -> None:
        days = [date(2026, 4, 1), date(2026, 4, 1), date(2026, 4, 2), date(2026, 4, 3), date(2026, 4, 6)]
        streaks = [
            record_mission_completion(user=self.user, mission_key=f"m-{index}", score=50, today=day).streak_days
            for index, day in enumerate(days)
        ]
        self.assertEqual(streaks, [1, 1, 2, 3, 1])
        self.assertEqual(UserGamificationProfile.objects.get(user=self.user).longest_streak, 3)

    @override_settings(QUESTMAP_PERFECT_SCORE_THRESHOLD=90)
    def test_perfect_scores_use_percentage_threshold(self) -> None:
        self.assertTrue(record_mission_completion(user=self.user, mission_key="a", score=18, max_points=20).is_perfect)
        self.assertFalse(record_mission_completion(user=self.user, mission_key="b", score=17, max_points=20).is_perfect)
        self.assertEqual(UserGamificationProfile.objects.get(user=self.user).perfect_scores, 1)

    def test_first_mission_achievement_and_level_rederived(self) -> None:
        AchievementDefinition.objects.create(
            code="FIRST_MISSION",
            name="First mission",
            requirement_type=AchievementDefinition.RequirementType.FIRST_MISSION,
            reward_xp=500,
        )
        result = record_mission_completion(user=self.user, mission_key="m-001", score=100)

        self.assertEqual(result.achievements_unlocked, ("FIRST_MISSION",))
        profile = UserGamificationProfile.objects.get(user=self.user)
        self.assertEqual(profile.xp_total, 125 + 500)
        self.assertEqual(profile.current_level, 2)
        self.assertEqual(result.level, 2)

    @patch("progression.submission_services.evaluate_user_achievements", side_effect=RuntimeError("boom"))
    def test_failure_during_achievements_rolls_back_the_completion(self, mock_evaluate) -> None:
        with self.assertRaises(RuntimeError):
            record_mission_completion(user=self.user, mission_key="m-001", score=100, today=date(2026, 4, 1))

        mock_evaluate.assert_called_once()
        self.assertFalse(MissionCompletion.objects.filter(user=self.user).exists())
        self.assertFalse(
            UserGamificationProfile.objects.filter(user=self.user)
            .exclude(xp_total=0, missions_completed=0, perfect_scores=0, streak_days=0)
            .exists()
        )

        result = record_mission_completion(user=self.user, mission_key="m-001", score=100, today=date(2026, 4, 1))
        self.assertEqual(result.streak_days, 1)

    def test_invalid_mission_input(self) -> None:
        with self.assertRaises(ProgressionInputError):
            record_mission_completion(user=self.user, mission_key=" ", score=10)
        with self.assertRaises(ProgressionInputError):
            record_mission_completion(user=self.user, mission_key="m", score=120)

    def test_award_xp_rederives_level_and_ignores_negative_amounts(self) -> None:
        profile = award_xp(user=self.user, amount=1000)
        self.assertEqual(profile.current_level, 3)
        self.assertEqual(profile.tier, "bronze")

        profile = award_xp(user=self.user, amount=-50)
        self.assertEqual(profile.xp_total, 1000)
