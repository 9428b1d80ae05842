"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB and a frozen clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("TIMEZONE", "Europe/Moscow")
os.environ.setdefault("ALLOWED_CHAT_IDS", "")
os.environ.setdefault("PROBABLY_POLICY", "counts_as_yes")

from datetime import date, datetime, timezone

import pytest

# 2026-03-10 12:00 in Moscow (UTC+3, no DST)
FROZEN_NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)


class MutableNow:
    """Callable "now" that tests can move forward."""

    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now():
    return MutableNow(FROZEN_NOW)


@pytest.fixture
def clock(now):
    """LocalClock in Europe/Moscow pinned to FROZEN_NOW."""
    from src.core.clock import LocalClock
    return LocalClock("Europe/Moscow", now=now)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_planner.db")


@pytest.fixture
def database(tmp_db_path):
    """Return a Database backed by a temp file."""
    from src.data.db import Database
    return Database(db_path=tmp_db_path)


@pytest.fixture
def roster_db(database):
    from src.data.db import RosterDB
    return RosterDB(database)


@pytest.fixture
def ledger(database):
    from src.data.db import AvailabilityDB
    return AvailabilityDB(database)


@pytest.fixture
def session_db(database):
    from src.data.db import SessionDB
    return SessionDB(database)


@pytest.fixture
def job_db(database):
    from src.data.db import ReminderJobDB
    return ReminderJobDB(database)


@pytest.fixture
def engine(database, clock):
    """PlanningEngine over a temp DB with the frozen clock."""
    from src.core.planner import PlanningEngine
    return PlanningEngine(db=database, clock=clock, policy="counts_as_yes")
