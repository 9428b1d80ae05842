"""Inline keyboards for the planning flow.

Every button that changes someone's availability carries the handle it was
issued to; the callback handlers refuse presses from anybody else.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from src.data.models import Availability

SEP = ";"

_STATUS_EMOJI = {
    Availability.YES: "✅ ",
    Availability.NO: "❌ ",
    Availability.PROBABLY: "❓ ",
    Availability.UNKNOWN: "",
}

DAYS_PER_ROW = 4
TIMES_PER_ROW = 4
TIME_START = time(9, 0)
TIME_END = time(22, 30)
TIME_STEP_MINUTES = 30


def plan_keyboard(
    handle: str,
    start: date,
    days: int,
    statuses: dict[date, Availability],
) -> InlineKeyboardMarkup:
    """One button per day showing the participant's current answer."""
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        status = statuses.get(day, Availability.UNKNOWN)
        row.append(InlineKeyboardButton(
            f"{_STATUS_EMOJI[status]}{day.strftime('%d.%m (%a)')}",
            callback_data=SEP.join(("plan", status.value, day.isoformat(), handle)),
        ))
        if len(row) == DAYS_PER_ROW:
            rows.append(row)
            row = []
    if row:
        rows.append(row)

    rows.append([InlineKeyboardButton("Done", callback_data=SEP.join(("pdone", handle)))])
    return InlineKeyboardMarkup(rows)


def time_keyboard(handle: str, day: date) -> InlineKeyboardMarkup:
    """Earliest-time picker for one day, in half-hour steps."""
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []

    current = datetime.combine(day, TIME_START)
    last = datetime.combine(day, TIME_END)
    while current <= last:
        hhmm = current.strftime("%H:%M")
        row.append(InlineKeyboardButton(
            hhmm, callback_data=SEP.join(("ptime", day.isoformat(), hhmm, handle)),
        ))
        if len(row) == TIMES_PER_ROW:
            rows.append(row)
            row = []
        current += timedelta(minutes=TIME_STEP_MINUTES)
    if row:
        rows.append(row)

    rows.append([InlineKeyboardButton("Back", callback_data=SEP.join(("pback", handle)))])
    return InlineKeyboardMarkup(rows)


def save_keyboard(day: date, at: time) -> InlineKeyboardMarkup:
    """Single "Save" button that promotes a proposed session."""
    return InlineKeyboardMarkup([[
        InlineKeyboardButton(
            "Save",
            callback_data=SEP.join(("save", day.isoformat(), at.strftime("%H:%M"))),
        ),
    ]])
