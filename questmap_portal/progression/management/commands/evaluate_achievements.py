from __future__ import annotations

from django.core.management.base import BaseCommand

from progression.achievement_services import evaluate_many
from progression.management.selectors import add_user_selector_arguments, selected_usernames


class Command(BaseCommand):
    help = "Unlock any achievements users already qualify for."

    def add_arguments(self, parser) -> None:
        add_user_selector_arguments(parser, verb="evaluate")

    def handle(self, *args, **options):
        processed, unlocked = evaluate_many(usernames=selected_usernames(options))
        self.stdout.write(
            self.style.SUCCESS(f"Evaluated achievements for {processed} user(s); {unlocked} newly unlocked.")
        )
