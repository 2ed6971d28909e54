"""Invocation domain models.

Defines the core data structures shared by collectors, handles and hosts:

- Channel: the closed set of output streams
- StreamItem: one payload appended to one channel
- InvocationState: the invocation state machine and its transition rules
- ErrorSummary: what a FAILED invocation reports
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidParameterError, InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class Channel(str, Enum):
    """Named output streams of an invocation.

    The set is closed: every handle owns exactly one collector per member.
    """

    OUTPUT = "output"
    ERROR = "error"
    DEBUG = "debug"
    PROGRESS = "progress"
    WARNING = "warning"
    INFORMATION = "information"

    @classmethod
    def parse(cls, name: Channel | str) -> Channel:
        """Resolve a channel from a member or a case-insensitive name.

        Raises:
            InvalidParameterError: If *name* is not a known channel.
        """
        if isinstance(name, Channel):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise InvalidParameterError(f"Unknown channel: {name!r}").with_context(
                channel=str(name),
            ) from None


@dataclass(frozen=True)
class StreamItem:
    """One payload appended to a channel.

    Items are immutable once constructed; ``index`` is 0-based and grows by
    exactly one per append on the owning collector.
    """

    channel: Channel
    index: int
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (payload is passed through as-is)."""
        return {
            "channel": self.channel.value,
            "index": self.index,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class InvocationState(str, Enum):
    """Lifecycle of one invocation — the canonical state machine.

    Valid transition graph::

        NOT_STARTED → RUNNING | FAILED | STOPPED
        RUNNING     → COMPLETED | FAILED | STOPPED
        COMPLETED   → (terminal)
        FAILED      → (terminal)
        STOPPED     → (terminal)

    ``NOT_STARTED → FAILED`` covers an engine that cannot be created;
    ``NOT_STARTED → STOPPED`` covers a cancel issued before the worker ran.
    """

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[InvocationState] = frozenset({
    InvocationState.COMPLETED,
    InvocationState.FAILED,
    InvocationState.STOPPED,
})

VALID_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.NOT_STARTED: frozenset({
        InvocationState.RUNNING,
        InvocationState.FAILED,
        InvocationState.STOPPED,
    }),
    InvocationState.RUNNING: frozenset({
        InvocationState.COMPLETED,
        InvocationState.FAILED,
        InvocationState.STOPPED,
    }),
    InvocationState.COMPLETED: frozenset(),  # terminal
    InvocationState.FAILED: frozenset(),  # terminal
    InvocationState.STOPPED: frozenset(),  # terminal
}


def validate_transition(current: InvocationState, target: InvocationState) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_transition(InvocationState.RUNNING, InvocationState.COMPLETED)
        >>> # OK — no exception
        >>> validate_transition(InvocationState.COMPLETED, InvocationState.RUNNING)
        InvalidTransitionError: Invalid InvocationState transition: completed → running
    """
    allowed = VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value)


@dataclass(frozen=True)
class ErrorSummary:
    """Why an invocation FAILED."""

    error_type: str
    message: str
    detail: str | None = None

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "detail": self.detail,
        }


def normalize_parameter_name(name: str) -> str:
    """Case-normalize a parameter name.

    Raises:
        InvalidParameterError: If *name* is not a string or is blank.
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidParameterError(f"Parameter name must be a non-empty string, got {name!r}")
    return name.strip().casefold()


__all__ = [
    "Channel",
    "StreamItem",
    "InvocationState",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "validate_transition",
    "ErrorSummary",
    "normalize_parameter_name",
    "utcnow",
]
