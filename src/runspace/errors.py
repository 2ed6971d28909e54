"""
Structured error types for runspace.

Every failure the host can surface is a ``RunspaceError`` carrying a
category, a structured context (which invocation, which channel, which
state) and an optional chained cause.  Callers can branch on the type,
alerting can route on the category, and ``to_dict()`` produces a payload
that drops straight into a structured log line.

Manifesto:
    - **Typed Error Hierarchy:** One type per failure domain
    - **Rich Context:** Errors know the invocation they belong to
    - **Error Chaining:** Engine faults keep the original exception as cause
    - **No Crashes Across Threads:** Fatal engine faults become state, and
      are only re-raised on the synchronous path

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        RunspaceError                          │
        │              (category, context, cause, to_dict)              │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  InvalidStateError      EngineError        ClosedChannelError │
        │  (STATE)                (ENGINE, detail)   (CHANNEL)          │
        │       │                      │                                │
        │  InvalidTransitionError  EngineStopped     InvalidParameter-  │
        │                          (stop acknowledged)   Error          │
        │                                                (VALIDATION)   │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = EngineError("script raised", detail="ZeroDivisionError: division by zero")
    >>> error.category
    <ErrorCategory.ENGINE: 'ENGINE'>
    >>> error.with_context(invocation_id="inv-1a2b3c4d").context.invocation_id
    'inv-1a2b3c4d'

Guardrails:
    ❌ DON'T: Raise EngineError from observer callbacks
    ✅ DO: Let the dispatcher isolate observer faults

    ❌ DON'T: Swallow the engine's original exception
    ✅ DO: Pass it as cause= so tracebacks stay intact

Tags:
    error-handling, exception-hierarchy, error-context, runspace

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Attributes:
        STATE: Operation illegal for the current lifecycle state
        VALIDATION: Bad caller input (parameter names, channel names)
        ENGINE: Raised by, or on behalf of, the script engine
        CHANNEL: Stream collector misuse
        INTERNAL: Bugs, unexpected state
    """

    STATE = "STATE"
    VALIDATION = "VALIDATION"
    ENGINE = "ENGINE"
    CHANNEL = "CHANNEL"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialized, so a context that was never
    populated costs nothing in the log line.

    Examples:
        >>> ctx = ErrorContext(invocation_id="inv-1", channel="output")
        >>> ctx.to_dict()
        {'invocation_id': 'inv-1', 'channel': 'output'}
    """

    invocation_id: str | None = None
    channel: str | None = None
    state: str | None = None
    engine: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["invocation_id", "channel", "state", "engine"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RunspaceError(Exception):
    """
    Base exception for all runspace errors.

    Subclasses set ``default_category``; callers may override it per
    instance.  ``with_context()`` returns ``self`` so context can be added
    inline in a ``raise`` statement.

    Examples:
        >>> error = RunspaceError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["error_type"]
        'RunspaceError'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RunspaceError:
        """
        Add context to this error (fluent API).

        Usage:
            raise InvalidStateError("already started").with_context(
                invocation_id=handle.invocation_id,
                state=handle.state.value,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# STATE ERRORS
# =============================================================================


class InvalidStateError(RunspaceError):
    """
    Operation attempted in an illegal lifecycle state.

    Raised when a parameter is attached after invocation started, or when
    a consumed host is invoked a second time.
    """

    default_category = ErrorCategory.STATE


class InvalidTransitionError(InvalidStateError):
    """Raised when an illegal state-machine transition is attempted.

    Terminal states have no outgoing edges; if a legitimate transition is
    blocked, add it to ``VALID_TRANSITIONS`` explicitly.
    """

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid InvocationState transition: {current} → {target}")
        self.context.state = current


class InvalidParameterError(RunspaceError):
    """Parameter or channel name that cannot be normalized."""

    default_category = ErrorCategory.VALIDATION


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class EngineError(RunspaceError):
    """
    Fatal fault reported by the script engine.

    The invocation transitions to FAILED; items collected before the fault
    stay readable.  ``detail`` carries the engine's own description of the
    fault (for the Python engine, the formatted exception).
    """

    default_category = ErrorCategory.ENGINE

    def __init__(
        self,
        message: str,
        *,
        detail: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.detail is not None:
            result["detail"] = self.detail
        return result


class EngineStopped(RunspaceError):
    """Raised by an engine to acknowledge a cooperative stop request."""

    default_category = ErrorCategory.ENGINE

    def __init__(self, message: str = "Engine stopped on request", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# CHANNEL ERRORS
# =============================================================================


class ClosedChannelError(RunspaceError):
    """Append attempted on a collector whose invocation is terminal."""

    default_category = ErrorCategory.CHANNEL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RunspaceError",
    "InvalidStateError",
    "InvalidTransitionError",
    "InvalidParameterError",
    "EngineError",
    "EngineStopped",
    "ClosedChannelError",
]
