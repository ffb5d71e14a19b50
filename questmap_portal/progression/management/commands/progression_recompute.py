from __future__ import annotations

from django.core.management.base import BaseCommand

from progression.management.selectors import add_user_selector_arguments, selected_usernames
from progression.progression_services import recompute_many


class Command(BaseCommand):
    help = "Rebuild world-map rollups and level/tier from stored quest progress."

    def add_arguments(self, parser) -> None:
        add_user_selector_arguments(parser, verb="recompute")

    def handle(self, *args, **options):
        processed = recompute_many(usernames=selected_usernames(options))
        self.stdout.write(self.style.SUCCESS(f"Recomputed progression for {processed} user(s)."))
