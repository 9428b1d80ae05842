"""
PlannerBot: Reminder scheduling and dispatch.

Session reminders: when a session is promoted, one durable job is enqueued
per lead time (48h, 24h, 5h, 3h, 1h, 10m before start). A repeating
JobQueue tick hands due jobs to ReminderDispatcher, which re-resolves the
audience at fire time and sends the countdown message.

Weekly voting reminder: a weekly push asking every active participant to
plan the coming days.

This module is provider-agnostic: it depends on the JobBackendPort and
NotificationPort protocols, not on specific implementations.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import TYPE_CHECKING

from src.data.models import Availability, ReminderPayload

if TYPE_CHECKING:
    from src.core.clock import LocalClock
    from src.data.db import AvailabilityDB, RosterDB, SessionDB
    from src.data.models import PlannedSession, ReminderJob
    from src.ports.job_port import JobBackendPort
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

SEND_REMINDER = "send_reminder"
DEFAULT_OFFSETS_MINUTES = (2880, 1440, 300, 180, 60, 10)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class ReminderScheduler:
    """Enqueues and cancels the countdown jobs of planned sessions."""

    def __init__(
        self,
        jobs: JobBackendPort,
        clock: LocalClock,
        offsets_minutes: list[int] | tuple[int, ...] | None = None,
    ) -> None:
        if offsets_minutes is None:
            from src.config import settings
            offsets_minutes = settings.REMINDER_OFFSETS_MINUTES

        self._jobs = jobs
        self._clock = clock
        self._offsets = sorted(set(offsets_minutes), reverse=True)

    @property
    def offsets_minutes(self) -> list[int]:
        return list(self._offsets)

    def schedule(
        self,
        session: PlannedSession,
        chat_id: int,
        thread_id: int | None = None,
    ) -> list[int]:
        """Enqueue one job per lead time that is still in the future.

        Each offset is enqueued independently: a backend failure skips that
        offset only.
        """
        now = self._clock.now_utc()
        job_ids: list[int] = []

        for minutes in self._offsets:
            fire_at = session.starts_at - timedelta(minutes=minutes)
            if fire_at < now:
                logger.debug(
                    "Skipping %d min reminder for session #%d: already past",
                    minutes, session.id,
                )
                continue

            payload = ReminderPayload(
                chat_id=chat_id,
                thread_id=thread_id,
                offset_minutes=minutes,
                session_id=session.id,
                session_day=session.day,
            )
            try:
                job_id = self._jobs.enqueue(fire_at, SEND_REMINDER, payload)
            except Exception as exc:
                logger.error(
                    "Failed to schedule %d min reminder for session #%d: %s",
                    minutes, session.id, exc,
                )
                continue

            job_ids.append(job_id)
            logger.info("Reminder scheduled to %s (job #%d)", fire_at.isoformat(), job_id)

        return job_ids

    def cancel_for_session(self, session_id: int) -> int:
        """Delete every job referencing a session. Returns the number removed."""
        removed = self._jobs.cancel_batch(self._jobs.ids_for_session(session_id))
        if removed:
            logger.info("Cancelled %d reminder(s) for session #%d", removed, session_id)
        return removed

    def cancel_for_date(self, day: date) -> int:
        """Delete every job for sessions on a local calendar date."""
        removed = self._jobs.cancel_batch(self._jobs.ids_for_date(day))
        if removed:
            logger.info("Cancelled %d reminder(s) for %s", removed, day.isoformat())
        return removed


# ---------------------------------------------------------------------------
# Fire time
# ---------------------------------------------------------------------------


def format_lead_time(minutes: int) -> str:
    """Human-readable lead time, e.g. 2880 -> "2 days", 90 -> "1 hour 30 minutes"."""
    days, rest = divmod(minutes, 24 * 60)
    hours, mins = divmod(rest, 60)

    parts = []
    for value, unit in ((days, "day"), (hours, "hour"), (mins, "minute")):
        if value:
            parts.append(f"{value} {unit}{'' if value == 1 else 's'}")
    return " ".join(parts) or "0 minutes"


def build_reminder_message(handles: list[str], offset_minutes: int) -> str:
    tags = ", ".join(f"@{h}" for h in handles)
    text = f"🚨 The game starts in {format_lead_time(offset_minutes)}! 🚨"
    return f"{tags}\n\n{text}" if tags else text


class ReminderDispatcher:
    """Fires due reminder jobs through the notifier."""

    def __init__(
        self,
        jobs: JobBackendPort,
        sessions: SessionDB,
        ledger: AvailabilityDB,
        notifier: NotificationPort,
        clock: LocalClock,
    ) -> None:
        self._jobs = jobs
        self._sessions = sessions
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock

    def resolve_audience(self, day: date) -> list[str]:
        """Active participants answering YES or PROBABLY for `day`."""
        return [
            r.handle
            for r in self._ledger.for_date(day, active_only=True)
            if r.status in (Availability.YES, Availability.PROBABLY)
        ]

    async def dispatch_due(self) -> int:
        """Fire every job whose time has come. Returns the number sent."""
        sent = 0
        for job in self._jobs.due(self._clock.now_utc()):
            if await self.fire(job):
                sent += 1
        return sent

    async def fire(self, job: ReminderJob) -> bool:
        payload = job.payload
        session = self._sessions.get(payload.session_id)
        if session is None:
            logger.warning(
                "Session #%d for reminder job #%d not found", payload.session_id, job.id,
            )
            self._jobs.mark(job.id, "failed")
            return False

        if session.starts_at < self._clock.now_utc():
            logger.warning(
                "Session #%d already started, dropping reminder job #%d", session.id, job.id,
            )
            self._jobs.mark(job.id, "failed")
            return False

        audience = self.resolve_audience(session.day)
        message = build_reminder_message(audience, payload.offset_minutes)
        try:
            await self._notifier.send_message(payload.chat_id, message, payload.thread_id)
        except Exception as exc:
            logger.error("Failed to send reminder job #%d: %s", job.id, exc)
            self._jobs.mark(job.id, "failed")
            return False

        self._jobs.mark(job.id, "sent")
        logger.info(
            "Reminder sent for session #%d (%d min before, %d tagged)",
            session.id, payload.offset_minutes, len(audience),
        )
        return True


# ---------------------------------------------------------------------------
# Weekly voting reminder
# ---------------------------------------------------------------------------


async def send_weekly_voting_reminder(
    notifier: NotificationPort,
    roster: RosterDB,
    chat_id: int,
    thread_id: int | None = None,
) -> bool:
    """Ask every active participant to plan the coming days.

    Returns False (and sends nothing) when nobody is active.
    """
    handles = [p.handle for p in roster.list_active()]
    if not handles:
        logger.warning("No active participants found for weekly reminder")
        return False

    tags = ", ".join(f"@{h}" for h in handles)
    text = (
        f"{tags}\n\n"
        "⚔️ A new week is coming! Use /plan to mark the days you can play.\n\n"
        "🍀 Good luck! 🍀"
    )
    try:
        await notifier.send_message(chat_id, text, thread_id)
    except Exception as exc:
        logger.error("Failed to send weekly voting reminder to %d: %s", chat_id, exc)
        return False

    logger.info("Weekly voting reminder sent to %d", chat_id)
    return True
