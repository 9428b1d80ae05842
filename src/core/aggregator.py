"""
PlannerBot: Availability aggregator, pure decision logic.

Merges the active roster's answers for a date into a group decision and
the common start time. No I/O: callers pass the roster and ledger rows in.
Timezone conversions are delegated to LocalClock.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Iterable

from src.core.clock import LocalClock
from src.data.models import Availability, AvailabilityResponse, Participant

logger = logging.getLogger(__name__)


class ProbablyPolicy(str, Enum):
    """How a PROBABLY answer takes part in the group decision."""

    COUNTS_AS_YES = "counts_as_yes"        # completes quorum, contributes its time
    COMPLETION_ONLY = "completion_only"    # completes quorum, time ignored
    DECLINE = "decline"                    # treated like NO


def _active_responses(
    active: Iterable[Participant],
    responses: Iterable[AvailabilityResponse],
) -> tuple[set[str], list[AvailabilityResponse]]:
    handles = {p.handle for p in active if p.active}
    counted = [r for r in responses if r.handle in handles]
    return handles, counted


def declines(status: Availability, policy: ProbablyPolicy) -> bool:
    if status is Availability.NO:
        return True
    return status is Availability.PROBABLY and policy is ProbablyPolicy.DECLINE


def evaluate(
    active: Iterable[Participant],
    responses: Iterable[AvailabilityResponse],
    clock: LocalClock,
    policy: ProbablyPolicy = ProbablyPolicy.COUNTS_AS_YES,
) -> datetime | None:
    """Return the local common start time for one date, or None.

    None when: nobody is active, not every active participant answered,
    anyone answered NO or UNKNOWN, or a YES came without a time (a concrete
    common time can't be derived from "free all day"). Otherwise the latest
    earliest-time among contributing answers.
    """
    handles, counted = _active_responses(active, responses)
    if not handles or len(counted) != len(handles):
        return None

    for r in counted:
        if r.status is Availability.UNKNOWN or declines(r.status, policy):
            return None

    if any(r.status is Availability.YES and r.earliest_time is None for r in counted):
        return None

    contributing = [
        r.earliest_time
        for r in counted
        if r.earliest_time is not None
        and (
            r.status is Availability.YES
            or (r.status is Availability.PROBABLY and policy is ProbablyPolicy.COUNTS_AS_YES)
        )
    ]
    if not contributing:
        return None

    return clock.to_local(max(contributing))


def has_full_coverage(
    active: Iterable[Participant],
    responses: Iterable[AvailabilityResponse],
    policy: ProbablyPolicy = ProbablyPolicy.COUNTS_AS_YES,
) -> bool:
    """Everyone active answered and nobody declined.

    Looser than evaluate(): UNKNOWN and untimed YES still pass.
    """
    handles, counted = _active_responses(active, responses)
    if not handles or len(counted) != len(handles):
        return False
    return not any(declines(r.status, policy) for r in counted)


def find_nearest_matching_date(
    from_day: date,
    horizon_days: int,
    active: list[Participant],
    responses_for: Callable[[date], list[AvailabilityResponse]],
    policy: ProbablyPolicy = ProbablyPolicy.COUNTS_AS_YES,
) -> date | None:
    """First day in [from_day, from_day + horizon_days) with full coverage."""
    for offset in range(horizon_days):
        day = from_day + timedelta(days=offset)
        if has_full_coverage(active, responses_for(day), policy):
            logger.debug("Nearest matching date: %s", day.isoformat())
            return day
    return None
