"""Settings for the questmap progression and scoring engine."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _as_bool_env(name: str, *, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _as_csv_env(name: str, *, default: str = "") -> list[str]:
    value = os.environ.get(name, default)
    return [part.strip() for part in value.split(",") if part.strip()]


SECRET_KEY = os.environ.get("QUESTMAP_SECRET_KEY", "dev-insecure-secret-change-me")

DEBUG = _as_bool_env("QUESTMAP_DEBUG", default="false")

ALLOWED_HOSTS = _as_csv_env("QUESTMAP_ALLOWED_HOSTS") or [
    "127.0.0.1",
    "localhost",
]
CSRF_TRUSTED_ORIGINS = _as_csv_env("QUESTMAP_CSRF_TRUSTED_ORIGINS")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "progression",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "questmap_portal.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "questmap_portal.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("QUESTMAP_DATABASE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

X_FRAME_OPTIONS = "SAMEORIGIN"

QUESTMAP_PROGRESSION_CATALOG_PATH = Path(
    os.environ.get(
        "QUESTMAP_PROGRESSION_CATALOG_PATH",
        BASE_DIR / "progression_catalog.json",
    )
)

QUESTMAP_XP_PER_LEVEL = int(os.environ.get("QUESTMAP_XP_PER_LEVEL", "500"))
QUESTMAP_SCORING_WRONG_PENALTY = float(os.environ.get("QUESTMAP_SCORING_WRONG_PENALTY", "0"))
QUESTMAP_SCORING_PENALTY_FACTOR = float(os.environ.get("QUESTMAP_SCORING_PENALTY_FACTOR", "0.5"))
QUESTMAP_SCORING_PERFECT_BONUS = float(os.environ.get("QUESTMAP_SCORING_PERFECT_BONUS", "1.1"))
QUESTMAP_SHOWCASE_LIMIT = int(os.environ.get("QUESTMAP_SHOWCASE_LIMIT", "3"))
QUESTMAP_PERFECT_SCORE_THRESHOLD = int(os.environ.get("QUESTMAP_PERFECT_SCORE_THRESHOLD", "90"))
QUESTMAP_CHALLENGE_COUNT_PROVIDER = os.environ.get("QUESTMAP_CHALLENGE_COUNT_PROVIDER", "").strip()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "console": {"class": "logging.StreamHandler"},
    },
    "loggers": {
        "progression": {
            "handlers": ["console"],
            "level": os.environ.get("QUESTMAP_LOG_LEVEL", "INFO").upper(),
        },
    },
}
