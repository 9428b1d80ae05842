"""
PlannerBot: Clock / timezone adapter.

Every conversion between the fixed local civil timezone and storage-neutral
UTC instants goes through LocalClock. Nothing else in the code base decides
which calendar date an instant belongs to.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo


class LocalClock:
    """Supplies "now" and converts between local civil time and UTC."""

    def __init__(
        self,
        tz_name: str | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if tz_name is None:
            from src.config import settings
            tz_name = settings.TIMEZONE

        self.tz = ZoneInfo(tz_name)
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now_utc(self) -> datetime:
        return self._now().astimezone(timezone.utc)

    def now_local(self) -> datetime:
        return self._now().astimezone(self.tz)

    def today(self) -> date:
        """Current local civil date."""
        return self.now_local().date()

    def to_utc(self, value: datetime) -> datetime:
        """Convert to an aware UTC instant. Naive values are local civil time."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.tz)
        return value.astimezone(timezone.utc)

    def to_local(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz)

    def date_of(self, value: datetime) -> date:
        """Local calendar date an instant belongs to."""
        return self.to_local(value).date()

    def combine(self, day: date, at: time) -> datetime:
        """UTC instant of local `day` at local wall-clock time `at`."""
        return self.to_utc(datetime.combine(day, at.replace(tzinfo=None)))

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """Half-open [start, end) UTC bounds of a local calendar day."""
        start = self.combine(day, time.min)
        end = self.combine(day + timedelta(days=1), time.min)
        return start, end
