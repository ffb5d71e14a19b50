from django.contrib import admin

from .models import (
    AchievementDefinition,
    Answer,
    MissionCompletion,
    Quest,
    QuestProgress,
    Question,
    Region,
    RegionProgress,
    UserAchievement,
    UserGamificationProfile,
    UserWorldMapProgress,
)


class AnswerInline(admin.TabularInline):
    model = Answer
    extra = 0


@admin.register(Question)
class QuestionAdmin(admin.ModelAdmin):
    list_display = ("id", "question_type", "max_points", "difficulty", "status", "times_answered", "average_score")
    search_fields = ("prompt",)
    list_filter = ("question_type", "status", "difficulty")
    inlines = [AnswerInline]


@admin.register(Region)
class RegionAdmin(admin.ModelAdmin):
    list_display = ("id", "code", "name", "order", "required_level", "total_quests", "max_stars", "status")
    search_fields = ("code", "name")
    list_filter = ("status", "required_level")
    filter_horizontal = ("prerequisite_regions",)


@admin.register(Quest)
class QuestAdmin(admin.ModelAdmin):
    list_display = ("id", "region", "order", "title", "difficulty", "xp_reward", "required_stars", "status")
    search_fields = ("title", "region__code")
    list_filter = ("region", "status", "difficulty")


@admin.register(AchievementDefinition)
class AchievementDefinitionAdmin(admin.ModelAdmin):
    list_display = ("id", "code", "name", "category", "rarity", "requirement_type", "requirement_value", "is_active")
    search_fields = ("code", "name")
    list_filter = ("category", "rarity", "requirement_type", "is_active", "is_secret")


@admin.register(UserGamificationProfile)
class UserGamificationProfileAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "xp_total", "current_level", "tier", "streak_days", "missions_completed")
    search_fields = ("user__username", "user__email")
    list_filter = ("tier", "updated_at")


@admin.register(UserWorldMapProgress)
class UserWorldMapProgressAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "total_stars", "regions_completed", "quests_completed", "version", "updated_at")
    search_fields = ("user__username", "user__email")


@admin.register(RegionProgress)
class RegionProgressAdmin(admin.ModelAdmin):
    list_display = ("id", "progress", "region", "is_unlocked", "is_completed", "total_stars", "quests_completed")
    search_fields = ("progress__user__username", "region__code")
    list_filter = ("is_unlocked", "is_completed", "region")


@admin.register(QuestProgress)
class QuestProgressAdmin(admin.ModelAdmin):
    list_display = ("id", "progress", "quest", "stars", "best_score", "attempts", "is_completed")
    search_fields = ("progress__user__username", "quest__title")
    list_filter = ("is_completed", "stars", "region")


@admin.register(MissionCompletion)
class MissionCompletionAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "mission_key", "score", "max_points", "xp_awarded", "completed_at")
    search_fields = ("user__username", "mission_key")
    list_filter = ("completed_at",)


@admin.register(UserAchievement)
class UserAchievementAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "achievement", "unlocked_at", "is_viewed", "is_showcased")
    search_fields = ("user__username", "achievement__code")
    list_filter = ("is_viewed", "is_showcased", "unlocked_at")
