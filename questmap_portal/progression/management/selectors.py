"""`--all` / `--user` selection shared by the per-user management commands."""

from __future__ import annotations

from django.core.management.base import CommandError


def add_user_selector_arguments(parser, *, verb: str) -> None:
    parser.add_argument("--all", action="store_true", help=f"{verb.capitalize()} every user.")
    parser.add_argument(
        "--user",
        action="append",
        default=[],
        help=f"Username to {verb}. Can be provided multiple times.",
    )


def selected_usernames(options) -> list[str] | None:
    """None means every user; otherwise the stripped, non-empty usernames."""
    usernames = [str(item).strip() for item in options.get("user") or [] if str(item).strip()]
    if options.get("all"):
        return None
    if not usernames:
        raise CommandError("Provide --all or at least one --user")
    return usernames
