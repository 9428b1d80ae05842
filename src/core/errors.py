"""Planner exceptions.

State conflicts such as a session already planned for a date are normal
outcomes (see PromotionOutcome), not exceptions.
"""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for planner failures surfaced to the transport layer."""


class InvalidResponseError(PlannerError, ValueError):
    """Raised when an availability response is internally inconsistent."""


class IdentityMismatchError(PlannerError):
    """Raised when an interactive control is used by someone it wasn't issued to."""

    def __init__(self, issued_to: str, responder: str) -> None:
        super().__init__(f"Control issued to {issued_to!r} used by {responder!r}")
        self.issued_to = issued_to
        self.responder = responder


class SessionNotFoundError(PlannerError, LookupError):
    """Raised when an operation targets a planned session that doesn't exist."""
