"""Data model for questions, the world map, user progress and achievements."""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .catalog_services import load_progression_catalog


class ContentStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    DRAFT = "draft", "Draft"
    HIDDEN = "hidden", "Hidden"


class Question(models.Model):
    class QuestionType(models.TextChoices):
        SINGLE = "single", "Single best answer"
        MULTI = "multi", "Select all that apply"

    prompt = models.TextField()
    question_type = models.CharField(
        max_length=8,
        choices=QuestionType.choices,
        default=QuestionType.SINGLE,
    )
    max_points = models.PositiveIntegerField(default=100)
    difficulty = models.PositiveSmallIntegerField(default=3)
    explanation = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=ContentStatus.choices, default=ContentStatus.ACTIVE)
    times_answered = models.PositiveIntegerField(default=0)
    average_score = models.FloatField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "difficulty"], name="question_status_diff_idx"),
        ]

    def clean(self) -> None:
        super().clean()
        errors: dict[str, str] = {}
        if self.max_points <= 0:
            errors["max_points"] = "max_points must be greater than zero."
        if not 1 <= self.difficulty <= 5:
            errors["difficulty"] = "difficulty must be between 1 and 5."
        if errors:
            raise ValidationError(errors)

    def validate_answer_set(self) -> None:
        """Authoring check: at least two answers and at least one correct answer."""
        answers = list(self.answers.all())
        if len(answers) < 2:
            raise ValidationError("Question must have at least 2 answers.")
        if not any(answer.is_correct for answer in answers):
            raise ValidationError("Question must have at least one correct answer.")

    def __str__(self) -> str:
        return f"{self.pk}:{self.question_type}:{self.prompt[:40]}"


class Answer(models.Model):
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="answers")
    answer_key = models.CharField(max_length=64)
    label = models.CharField(max_length=255)
    code = models.CharField(max_length=64)
    is_correct = models.BooleanField(default=False)
    weight = models.FloatField(default=1.0)
    sort_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["sort_order", "id"]
        constraints = [
            models.UniqueConstraint(fields=["question", "answer_key"], name="uq_question_answer_key"),
        ]

    def clean(self) -> None:
        super().clean()
        if not 0 <= self.weight <= 1:
            raise ValidationError({"weight": "weight must be between 0 and 1."})

    def __str__(self) -> str:
        marker = "+" if self.is_correct else "-"
        return f"{self.question_id}:{self.answer_key}:{marker}{self.weight}"


class Region(models.Model):
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=128)
    description = models.TextField(blank=True)
    order = models.PositiveIntegerField(default=0)
    required_level = models.PositiveIntegerField(default=1)
    prerequisite_regions = models.ManyToManyField(
        "self",
        symmetrical=False,
        blank=True,
        related_name="unlocks_regions",
    )
    required_stars_from_previous = models.PositiveIntegerField(default=0)
    total_quests = models.PositiveIntegerField(default=0)
    max_stars = models.PositiveIntegerField(default=0)
    total_xp = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=ContentStatus.choices, default=ContentStatus.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["order", "id"]
        indexes = [
            models.Index(fields=["status", "order"], name="region_status_order_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.code}:{self.order}"


class Quest(models.Model):
    region = models.ForeignKey(Region, on_delete=models.CASCADE, related_name="quests")
    title = models.CharField(max_length=255)
    order = models.PositiveIntegerField()
    question = models.ForeignKey(Question, on_delete=models.SET_NULL, blank=True, null=True)
    difficulty = models.PositiveSmallIntegerField(default=1)
    xp_reward = models.PositiveIntegerField(default=50)
    bonus_xp = models.PositiveIntegerField(default=20)
    star_threshold_one = models.PositiveSmallIntegerField(default=50)
    star_threshold_two = models.PositiveSmallIntegerField(default=75)
    star_threshold_three = models.PositiveSmallIntegerField(default=90)
    required_stars = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=ContentStatus.choices, default=ContentStatus.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["region", "order", "id"]
        indexes = [
            models.Index(fields=["region", "order"], name="quest_region_order_idx"),
            models.Index(fields=["status"], name="quest_status_idx"),
        ]

    def clean(self) -> None:
        super().clean()
        thresholds = (self.star_threshold_one, self.star_threshold_two, self.star_threshold_three)
        if not (0 <= thresholds[0] <= thresholds[1] <= thresholds[2] <= 100):
            raise ValidationError("Star thresholds must ascend within 0-100 (one <= two <= three).")
        if not 1 <= self.difficulty <= 5:
            raise ValidationError({"difficulty": "difficulty must be between 1 and 5."})

    def __str__(self) -> str:
        return f"{self.region_id}:{self.order}:{self.title}"


class UserGamificationProfile(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    xp_total = models.PositiveIntegerField(default=0)
    current_level = models.PositiveIntegerField(default=1)
    tier = models.CharField(max_length=32, default="bronze")
    streak_days = models.PositiveIntegerField(default=0)
    longest_streak = models.PositiveIntegerField(default=0)
    last_active_date = models.DateField(blank=True, null=True)
    missions_completed = models.PositiveIntegerField(default=0)
    perfect_scores = models.PositiveIntegerField(default=0)
    correct_decisions = models.PositiveIntegerField(default=0)
    total_decisions = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.user_id}:lvl={self.current_level}:xp={self.xp_total}:{self.tier}"


class UserWorldMapProgress(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    total_stars = models.PositiveIntegerField(default=0)
    regions_completed = models.PositiveIntegerField(default=0)
    quests_completed = models.PositiveIntegerField(default=0)
    total_world_map_xp = models.PositiveIntegerField(default=0)
    active_region = models.ForeignKey(
        Region,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="+",
    )
    last_active_quest = models.ForeignKey(
        Quest,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="+",
    )
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.user_id}:stars={self.total_stars}:v{self.version}"


class RegionProgress(models.Model):
    progress = models.ForeignKey(UserWorldMapProgress, on_delete=models.CASCADE, related_name="region_entries")
    region = models.ForeignKey(Region, on_delete=models.CASCADE)
    is_unlocked = models.BooleanField(default=False)
    total_stars = models.PositiveIntegerField(default=0)
    quests_completed = models.PositiveIntegerField(default=0)
    total_quests = models.PositiveIntegerField(default=0)
    is_completed = models.BooleanField(default=False)
    first_entered_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["progress", "region"], name="uq_progress_region"),
        ]
        indexes = [
            models.Index(fields=["progress", "is_completed"], name="region_prog_completed_idx"),
        ]

    def __str__(self) -> str:
        state = "done" if self.is_completed else ("open" if self.is_unlocked else "locked")
        return f"{self.progress_id}:{self.region_id}:{self.total_stars}*:{state}"


class QuestProgress(models.Model):
    progress = models.ForeignKey(UserWorldMapProgress, on_delete=models.CASCADE, related_name="quest_entries")
    quest = models.ForeignKey(Quest, on_delete=models.CASCADE)
    region = models.ForeignKey(Region, on_delete=models.CASCADE)
    is_completed = models.BooleanField(default=False)
    stars = models.PositiveSmallIntegerField(default=0)
    best_score = models.FloatField(default=0)
    attempts = models.PositiveIntegerField(default=0)
    completed_at = models.DateTimeField(blank=True, null=True)
    last_attempt_at = models.DateTimeField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["progress", "quest"], name="uq_progress_quest"),
        ]
        indexes = [
            models.Index(fields=["progress", "region"], name="quest_prog_region_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.progress_id}:{self.quest_id}:{self.stars}*:best={self.best_score}"


class MissionCompletion(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    mission_key = models.CharField(max_length=64)
    score = models.PositiveIntegerField(default=0)
    max_points = models.PositiveIntegerField(default=100)
    difficulty = models.PositiveSmallIntegerField(default=1)
    xp_awarded = models.PositiveIntegerField(default=0)
    completed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "mission_key"], name="uq_user_mission_completion"),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}:{self.mission_key}:{self.score}/{self.max_points}"


class AchievementDefinition(models.Model):
    class RequirementType(models.TextChoices):
        FIRST_MISSION = "first_mission", "First mission"
        MISSIONS_COMPLETED = "missions_completed", "Missions completed"
        LEVEL_REACHED = "level_reached", "Level reached"
        XP_EARNED = "xp_earned", "XP earned"
        STREAK_DAYS = "streak_days", "Streak days"
        PERFECT_SCORES = "perfect_scores", "Perfect scores"
        STARS_EARNED = "stars_earned", "Stars earned"
        CHALLENGES_CREATED = "challenges_created", "Challenges created"
        REGION_COMPLETED = "region_completed", "Region completed"
        ALL_REGIONS_MASTERED = "all_regions_mastered", "All regions mastered"

    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=128)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=32, default="milestone")
    rarity = models.CharField(max_length=32, default="common")
    requirement_type = models.CharField(max_length=32, choices=RequirementType.choices)
    requirement_value = models.PositiveIntegerField(default=1)
    requirement_region = models.ForeignKey(Region, on_delete=models.SET_NULL, blank=True, null=True)
    reward_xp = models.PositiveIntegerField(default=0)
    reward_title = models.CharField(max_length=128, blank=True)
    order = models.PositiveIntegerField(default=0)
    is_secret = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["order", "id"]
        indexes = [
            models.Index(fields=["is_active", "order"], name="achv_active_order_idx"),
            models.Index(fields=["category"], name="achv_category_idx"),
        ]

    def clean(self) -> None:
        super().clean()
        catalog = load_progression_catalog()
        errors: dict[str, str] = {}
        if self.category not in catalog.achievement_categories:
            errors["category"] = f"Unknown achievement category: {self.category}"
        if self.rarity not in catalog.rarities:
            errors["rarity"] = f"Unknown achievement rarity: {self.rarity}"
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        self.code = str(self.code or "").strip().upper()
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.code}:{self.requirement_type}>={self.requirement_value}"


class UserAchievement(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    achievement = models.ForeignKey(AchievementDefinition, on_delete=models.CASCADE)
    unlocked_at = models.DateTimeField(default=timezone.now)
    progress_current = models.PositiveIntegerField(default=0)
    progress_target = models.PositiveIntegerField(default=1)
    is_viewed = models.BooleanField(default=False)
    is_showcased = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "achievement"], name="uq_user_achievement"),
        ]
        indexes = [
            models.Index(fields=["user", "is_showcased"], name="user_achv_showcase_idx"),
            models.Index(
                fields=["user", "unlocked_at"],
                condition=Q(is_viewed=False),
                name="user_achv_unviewed_idx",
            ),
        ]

    def __str__(self) -> str:
        state = "showcased" if self.is_showcased else "listed"
        return f"{self.user_id}:{self.achievement_id}:{state}"
