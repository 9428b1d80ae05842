"""
PlannerBot: Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # SQLite
    DATABASE_PATH: str = "data/planner.db"

    # Local civil timezone all dates are expressed in
    TIMEZONE: str = "Europe/Moscow"

    # Security: empty list means every chat is served
    ALLOWED_CHAT_IDS: list[int] = []

    # Planning horizons (days)
    PLAN_RANGE_DAYS: int = 8
    MATCH_HORIZON_DAYS: int = 6
    OVERVIEW_DAYS: int = 7

    # Reminder lead times before a session, descending
    REMINDER_OFFSETS_MINUTES: list[int] = [2880, 1440, 300, 180, 60, 10]
    REMINDER_POLL_SECONDS: int = 30

    # "counts_as_yes" | "completion_only" | "decline"
    PROBABLY_POLICY: str = "counts_as_yes"

    # Weekly "please run /plan" reminder (disabled when chat id is unset)
    WEEKLY_REMINDER_CHAT_ID: int | None = None
    WEEKLY_REMINDER_THREAD_ID: int | None = None
    WEEKLY_REMINDER_WEEKDAY: int = 6  # Monday=0 .. Sunday=6
    WEEKLY_REMINDER_HOUR: int = 12

    @field_validator("ALLOWED_CHAT_IDS", "REMINDER_OFFSETS_MINUTES", mode="before")
    @classmethod
    def parse_int_list(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(item.strip()) for item in v.split(",") if item.strip()]
        return []

    @field_validator("REMINDER_OFFSETS_MINUTES")
    @classmethod
    def sort_offsets(cls, v: list[int]) -> list[int]:
        if any(minutes <= 0 for minutes in v):
            raise ValueError("reminder offsets must be positive")
        return sorted(set(v), reverse=True)

    @field_validator("WEEKLY_REMINDER_CHAT_ID", "WEEKLY_REMINDER_THREAD_ID", mode="before")
    @classmethod
    def parse_optional_int(cls, v: str | int | None) -> int | None:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return int(v)

    @field_validator("PROBABLY_POLICY")
    @classmethod
    def check_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"counts_as_yes", "completion_only", "decline"}:
            raise ValueError(f"Unknown PROBABLY_POLICY: {v!r}")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/planner.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Moscow"),
        ALLOWED_CHAT_IDS=os.getenv("ALLOWED_CHAT_IDS", ""),
        PLAN_RANGE_DAYS=os.getenv("PLAN_RANGE_DAYS", "8"),
        MATCH_HORIZON_DAYS=os.getenv("MATCH_HORIZON_DAYS", "6"),
        OVERVIEW_DAYS=os.getenv("OVERVIEW_DAYS", "7"),
        REMINDER_OFFSETS_MINUTES=os.getenv(
            "REMINDER_OFFSETS_MINUTES", "2880,1440,300,180,60,10"
        ),
        REMINDER_POLL_SECONDS=os.getenv("REMINDER_POLL_SECONDS", "30"),
        PROBABLY_POLICY=os.getenv("PROBABLY_POLICY", "counts_as_yes"),
        WEEKLY_REMINDER_CHAT_ID=os.getenv("WEEKLY_REMINDER_CHAT_ID"),
        WEEKLY_REMINDER_THREAD_ID=os.getenv("WEEKLY_REMINDER_THREAD_ID"),
        WEEKLY_REMINDER_WEEKDAY=os.getenv("WEEKLY_REMINDER_WEEKDAY", "6"),
        WEEKLY_REMINDER_HOUR=os.getenv("WEEKLY_REMINDER_HOUR", "12"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
