"""Job backend port: durable timed jobs for reminders.

The reminder scheduler depends on this protocol; ReminderJobDB in
src.data.db is the SQLite implementation.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Protocol

from src.data.models import ReminderJob, ReminderPayload


class JobBackendPort(Protocol):
    """Abstract timed-job backend used by the reminder scheduler."""

    def enqueue(self, fire_at: datetime, function: str, payload: ReminderPayload) -> int: ...

    def cancel_batch(self, job_ids: Iterable[int]) -> int: ...

    def ids_for_session(self, session_id: int) -> list[int]: ...

    def ids_for_date(self, day: date) -> list[int]: ...

    def due(self, now: datetime) -> list[ReminderJob]: ...

    def mark(self, job_id: int, status: str) -> None: ...
