"""
PlannerBot: Data Models.

Participants, their per-day availability, planned sessions and the reminder
jobs counting down to them. All persisted in SQLite by src.data.db.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Availability(str, Enum):
    """A participant's answer for one day."""

    YES = "yes"
    NO = "no"
    PROBABLY = "probably"
    UNKNOWN = "unknown"  # default absence, never a real "maybe"

    @property
    def sign(self) -> str:
        return _SIGNS[self]

    def cycle(self) -> Availability:
        """Next status in the planning keyboard order."""
        order = list(Availability)
        return order[(order.index(self) + 1) % len(order)]


_SIGNS = {
    Availability.YES: "+",
    Availability.NO: "-",
    Availability.PROBABLY: "?",
    Availability.UNKNOWN: "???",
}


@dataclass
class Participant:
    """A roster member. Never hard-deleted; `active` toggles quorum membership."""

    handle: str            # stable identity, e.g. the Telegram username
    display_name: str
    active: bool = True


@dataclass
class AvailabilityResponse:
    """One participant's answer for one local calendar date.

    `earliest_time` is an aware UTC instant and is only set for YES answers
    that named a time. YES without a time means "free all day".
    """

    handle: str
    day: date
    status: Availability
    earliest_time: datetime | None = None
    display_name: str = ""
    active: bool = True


@dataclass
class PlannedSession:
    """A promoted session. At most one upcoming session per local date."""

    id: int
    starts_at: datetime    # aware UTC
    day: date              # local civil date of starts_at


@dataclass
class ReminderPayload:
    """What a reminder needs at fire time to rebuild its message.

    Holds references, not rendered text: the audience is resolved when the
    job fires so roster changes after scheduling are respected.
    """

    chat_id: int
    offset_minutes: int
    session_id: int
    session_day: date
    thread_id: int | None = None


@dataclass
class ReminderJob:
    """A durable timed job that fires a reminder before a session."""

    id: int
    fire_at: datetime      # aware UTC
    payload: ReminderPayload
    function: str = "send_reminder"
    status: str = field(default="pending")  # pending | sent | failed
