"""
PlanningEngine: the library surface the transport layer talks to.

Every availability write re-evaluates the written date in the same
transaction (the sweep), and a decline on a date with a planned session
cancels that session and its reminder jobs in that transaction too. There
is no background poller for evaluation: the write that could change the
outcome triggers it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from src.core import aggregator
from src.core.aggregator import ProbablyPolicy
from src.core.clock import LocalClock
from src.core.errors import IdentityMismatchError, InvalidResponseError, SessionNotFoundError
from src.core.scheduler import ReminderScheduler
from src.data.db import (
    AvailabilityDB,
    Database,
    PromotionResult,
    ReminderJobDB,
    RosterDB,
    SessionDB,
)
from src.data.models import Availability, AvailabilityResponse, Participant, PlannedSession

logger = logging.getLogger(__name__)


@dataclass
class Match:
    """A date that satisfies the group, and its common time if resolvable."""

    day: date
    common_time: datetime | None = None  # local civil time


@dataclass
class DayOverview:
    """Every active participant's answer (or None) for one day."""

    day: date
    entries: list[tuple[Participant, AvailabilityResponse | None]] = field(default_factory=list)


class PlanningEngine:
    """Availability aggregation, session promotion and reminder lifecycle."""

    def __init__(
        self,
        db: Database | None = None,
        clock: LocalClock | None = None,
        policy: ProbablyPolicy | str | None = None,
        reminder_offsets: list[int] | None = None,
        plan_range_days: int | None = None,
        match_horizon_days: int | None = None,
    ) -> None:
        from src.config import settings

        self.db = db if db is not None else Database()
        self.clock = clock if clock is not None else LocalClock()
        self.policy = ProbablyPolicy(policy or settings.PROBABLY_POLICY)
        self.plan_range_days = (
            plan_range_days if plan_range_days is not None else settings.PLAN_RANGE_DAYS
        )
        self.match_horizon_days = (
            match_horizon_days if match_horizon_days is not None else settings.MATCH_HORIZON_DAYS
        )

        self.roster = RosterDB(self.db)
        self.ledger = AvailabilityDB(self.db)
        self.sessions = SessionDB(self.db)
        self.jobs = ReminderJobDB(self.db)
        self.reminders = ReminderScheduler(self.jobs, self.clock, reminder_offsets)

    # -- availability ------------------------------------------------------

    def record_availability(
        self,
        handle: str,
        day: date,
        status: Availability,
        earliest_time: datetime | time | None = None,
        display_name: str | None = None,
        issued_to: str | None = None,
    ) -> datetime | None:
        """Upsert a response and return the date's common time, if any.

        `issued_to` is the identity an interactive control was created for;
        a different responder is refused with IdentityMismatchError.
        """
        if issued_to is not None and issued_to != handle:
            raise IdentityMismatchError(issued_to, handle)

        earliest_utc = self._validate_time(day, status, earliest_time)

        with self.db.transaction():
            self.ledger.upsert(handle, day, status, earliest_utc, display_name)
            common_time = self.evaluate(day)
            if status is Availability.UNKNOWN or aggregator.declines(status, self.policy):
                self._cancel_sessions_on(day)

        if common_time is not None:
            logger.info("Everyone is available on %s from %s", day.isoformat(), common_time.strftime("%H:%M"))
        return common_time

    def _validate_time(
        self, day: date, status: Availability, earliest_time: datetime | time | None,
    ) -> datetime | None:
        if earliest_time is None:
            return None
        if status not in (Availability.YES, Availability.PROBABLY):
            raise InvalidResponseError(f"A time can't be given with status {status.value!r}")

        if isinstance(earliest_time, datetime):
            instant = self.clock.to_utc(earliest_time)
        else:
            instant = self.clock.combine(day, earliest_time)

        if self.clock.date_of(instant) != day:
            raise InvalidResponseError(
                f"Earliest time {instant.isoformat()} is not on {day.isoformat()}"
            )
        return instant

    def evaluate(self, day: date) -> datetime | None:
        """Read-only group decision for one date."""
        return aggregator.evaluate(
            self.roster.list_active(), self.ledger.for_date(day), self.clock, self.policy,
        )

    def find_nearest_match(
        self, from_day: date | None = None, horizon_days: int | None = None,
    ) -> Match | None:
        """Nearest day with full coverage and no declines, plus its time."""
        if from_day is None:
            from_day = self.clock.today()
        if horizon_days is None:
            horizon_days = self.match_horizon_days

        with self.db.read():
            day = aggregator.find_nearest_matching_date(
                from_day,
                horizon_days,
                self.roster.list_active(),
                self.ledger.for_date,
                self.policy,
            )
            if day is None:
                return None
            return Match(day=day, common_time=self.evaluate(day))

    def sweep(self, from_day: date | None = None, days: int | None = None) -> list[Match]:
        """Every day in the range that resolves to a common time."""
        if from_day is None:
            from_day = self.clock.today()
        if days is None:
            days = self.plan_range_days

        matches = []
        with self.db.read():
            for offset in range(days):
                day = from_day + timedelta(days=offset)
                common_time = self.evaluate(day)
                if common_time is not None:
                    matches.append(Match(day=day, common_time=common_time))
        return matches

    def finish_planning(self, handle: str, days: int | None = None) -> list[Match]:
        """Mark untouched days of the planning range as NO, then sweep it.

        Each NO written here is a decline, so a session already planned on
        that day is cancelled with its reminders in the same transaction.
        """
        today = self.clock.today()
        if days is None:
            days = self.plan_range_days
        with self.db.transaction():
            declined = self.ledger.mark_unanswered(
                handle, [today + timedelta(days=i) for i in range(days)],
            )
            for day in declined:
                self._cancel_sessions_on(day)
            return self.sweep(today, days)

    def set_active(
        self, handle: str, active: bool, display_name: str | None = None,
    ) -> Participant:
        """Pause or unpause a participant. Counted only while active.

        Planned sessions and their reminders are left in place. Reminder
        audiences are resolved when each job fires, so a paused participant
        is not tagged.
        """
        return self.roster.set_active(handle, active, display_name)

    def overview(self, from_day: date | None = None, days: int | None = None) -> list[DayOverview]:
        """Per-day table of every active participant's answer."""
        from src.config import settings

        if from_day is None:
            from_day = self.clock.today()
        if days is None:
            days = settings.OVERVIEW_DAYS
        end = from_day + timedelta(days=days - 1)

        with self.db.read():
            participants = self.roster.list_active()
            responses = {
                (r.handle, r.day): r for r in self.ledger.range_for(from_day, end)
            }

        result = []
        for offset in range(days):
            day = from_day + timedelta(days=offset)
            result.append(DayOverview(
                day=day,
                entries=[(p, responses.get((p.handle, day))) for p in participants],
            ))
        return result

    # -- sessions ----------------------------------------------------------

    def promote_session(self, starts_at: datetime) -> PromotionResult:
        """Persist a planned session; at most one per local calendar date."""
        starts_utc = self.clock.to_utc(starts_at)
        return self.sessions.promote(
            starts_utc, self.clock.date_of(starts_utc), self.clock.today(),
        )

    def promote_and_schedule(
        self, starts_at: datetime, chat_id: int, thread_id: int | None = None,
    ) -> tuple[PromotionResult, list[int]]:
        """Promote and, when a new session was created, enroll its reminders."""
        with self.db.transaction():
            result = self.promote_session(starts_at)
            job_ids = []
            if result.created:
                job_ids = self.reminders.schedule(result.session, chat_id, thread_id)
        return result, job_ids

    def cancel_session(self, session_id: int) -> bool:
        """Delete a session and its reminder jobs in one transaction."""
        with self.db.transaction():
            deleted = self.sessions.cancel(session_id)
            self.reminders.cancel_for_session(session_id)
        return deleted > 0

    def session_on(self, day: date) -> PlannedSession | None:
        return self.sessions.for_date(day)

    def upcoming_sessions(self) -> list[PlannedSession]:
        return self.sessions.upcoming(self.clock.now_utc())

    def _cancel_sessions_on(self, day: date) -> PlannedSession | None:
        session = self.sessions.for_date(day)
        if session is not None:
            self.sessions.cancel(session.id)
            self.reminders.cancel_for_session(session.id)
            logger.info("Session #%d on %s cancelled after a decline", session.id, day.isoformat())
        self.reminders.cancel_for_date(day)
        return session

    # -- reminders ---------------------------------------------------------

    def schedule_reminders(
        self, session_id: int, chat_id: int, thread_id: int | None = None,
    ) -> list[int]:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return self.reminders.schedule(session, chat_id, thread_id)

    def cancel_reminders(self, session_id: int | None = None, day: date | None = None) -> int:
        """Cancel reminders by session id or by local date (exactly one)."""
        if (session_id is None) == (day is None):
            raise ValueError("Pass exactly one of session_id or day")
        if session_id is not None:
            return self.reminders.cancel_for_session(session_id)
        return self.reminders.cancel_for_date(day)
