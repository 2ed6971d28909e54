"""Invocation handles - execution state, streams and cancellation.

An ``InvocationHandle`` is what the caller holds while a script runs
(or after it ran): the state machine, one collector per channel, the
error summary of a failed run, and the cancellation flag.

Manifesto:
    The caller and the worker share the handle but never write the same
    thing.  The worker is the only writer of collectors and the only
    source of state transitions; the caller only reads, waits, and
    cancels.  Terminal transitions are first-wins: a late signal is
    dropped, never raised.

ARCHITECTURE
────────────
::

    InvocationHandle
      ├── .poll()            ─ current state, never blocks
      ├── .wait(timeout)     ─ block until terminal or timeout
      ├── .cancel()          ─ idempotent cooperative stop request
      ├── .channel(name)     ─ StreamCollector for one channel
      ├── .subscribe(...)    ─ per-channel append observers
      └── .add_state_listener(cb)

    worker-side (used by ExecutionHost):
      _mark_running() / _finish(state, ...) / _bind_engine_stop(cb)

Tags:
    runspace, invocation, state-machine, cancellation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .events import EventDispatcher, Observer
from .logging import get_logger
from .models import (
    Channel,
    ErrorSummary,
    InvocationState,
    utcnow,
    validate_transition,
)
from .streams import StreamCollector

logger = get_logger(__name__)

StateListener = Callable[["InvocationHandle", InvocationState, InvocationState], None]


def new_invocation_id() -> str:
    return f"inv-{uuid.uuid4().hex[:12]}"


class InvocationHandle:
    """One in-flight or completed script execution.

    Example:
        >>> handle = host.invoke_asynchronously()
        >>> handle.poll()
        <InvocationState.RUNNING: 'running'>
        >>> handle.wait(timeout=10)
        <InvocationState.COMPLETED: 'completed'>
        >>> handle.channel("output").payloads()
        ['a']
    """

    def __init__(
        self,
        *,
        invocation_id: str | None = None,
        capacity: int | None = None,
        dispatcher: EventDispatcher | None = None,
        state_listeners: list[StateListener] | None = None,
    ):
        """
        Args:
            invocation_id: Opaque identity (generated if omitted)
            capacity: Per-channel retained item limit (None = unbounded)
            dispatcher: Observer fan-out shared with the owning host
            state_listeners: Callbacks invoked on every transition
        """
        self.invocation_id = invocation_id or new_invocation_id()
        self._dispatcher = dispatcher or EventDispatcher(source=self.invocation_id)
        self._collectors: dict[Channel, StreamCollector] = {
            channel: StreamCollector(
                channel,
                capacity=capacity,
                dispatcher=self._dispatcher,
                owner_id=self.invocation_id,
            )
            for channel in Channel
        }
        self._state = InvocationState.NOT_STARTED
        self._state_lock = threading.Lock()
        self._finished = threading.Event()
        self._cancel_requested = threading.Event()
        self._engine_lock = threading.Lock()
        self._engine_stop: Callable[[], None] | None = None
        self._state_listeners: list[StateListener] = list(state_listeners or [])

        self.error: ErrorSummary | None = None
        self.exception: BaseException | None = None
        self.created_at: datetime = utcnow()
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

    # ------------------------------------------------------------------ #
    # Caller surface
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> InvocationState:
        return self._state

    def poll(self) -> InvocationState:
        """Current state. Never blocks."""
        return self._state

    def wait(self, timeout: float | None = None) -> InvocationState:
        """Block until the invocation is terminal or *timeout* elapses.

        Returns:
            The current state, terminal or not
        """
        self._finished.wait(timeout)
        return self._state

    async def wait_async(self, timeout: float | None = None) -> InvocationState:
        """Awaitable :meth:`wait`; the blocking wait runs in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.wait, timeout)

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """Request a cooperative stop.

        Idempotent; a no-op once the invocation is terminal.  The engine's
        ``request_stop()`` is forwarded at most once.
        """
        with self._state_lock:
            if self._state.is_terminal or self._cancel_requested.is_set():
                return
            self._cancel_requested.set()

        logger.info("cancel_requested", invocation_id=self.invocation_id, state=self._state.value)
        with self._engine_lock:
            if self._engine_stop is not None:
                self._call_engine_stop()

    def channel(self, name: Channel | str) -> StreamCollector:
        """Collector for channel *name* (case-insensitive)."""
        return self._collectors[Channel.parse(name)]

    @property
    def collectors(self) -> dict[Channel, StreamCollector]:
        return dict(self._collectors)

    def subscribe(self, channel: Channel | str, observer: Observer) -> str:
        """Observe items appended to *channel*; returns a subscription ID."""
        return self._dispatcher.subscribe(channel, observer)

    def unsubscribe(self, channel: Channel | str, observer: Observer | str) -> bool:
        return self._dispatcher.unsubscribe(channel, observer)

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(handle, previous, current)`` on every transition."""
        with self._state_lock:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> bool:
        with self._state_lock:
            try:
                self._state_listeners.remove(listener)
            except ValueError:
                return False
            return True

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize state and per-channel counts (payloads are not included)."""
        return {
            "invocation_id": self.invocation_id,
            "state": self._state.value,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error.to_dict() if self.error else None,
            "items": {c.value: col.total_appended for c, col in self._collectors.items()},
        }

    def __repr__(self) -> str:
        return f"InvocationHandle({self.invocation_id!r}, state={self._state.value})"

    # ------------------------------------------------------------------ #
    # Worker side
    # ------------------------------------------------------------------ #

    def _bind_engine_stop(self, stop: Callable[[], None]) -> None:
        """Route cancel() to the live engine; forwards a cancel that already happened."""
        with self._engine_lock:
            self._engine_stop = stop
            if self._cancel_requested.is_set():
                self._call_engine_stop()

    def _unbind_engine_stop(self) -> None:
        with self._engine_lock:
            self._engine_stop = None

    def _call_engine_stop(self) -> None:
        # caller holds _engine_lock
        stop, self._engine_stop = self._engine_stop, None
        try:
            stop()
        except Exception as e:
            logger.warning(
                "engine_request_stop_error",
                invocation_id=self.invocation_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _mark_running(self) -> bool:
        return self._transition(InvocationState.RUNNING)

    def _finish(
        self,
        state: InvocationState,
        error: ErrorSummary | None = None,
        exception: BaseException | None = None,
    ) -> bool:
        """Apply a terminal transition; first terminal signal wins.

        Returns:
            False if the invocation was already terminal (signal dropped)
        """
        if not state.is_terminal:
            raise ValueError(f"{state.value} is not a terminal state")
        return self._transition(state, error=error, exception=exception)

    def _transition(
        self,
        target: InvocationState,
        *,
        error: ErrorSummary | None = None,
        exception: BaseException | None = None,
    ) -> bool:
        with self._state_lock:
            previous = self._state
            if previous.is_terminal:
                logger.debug(
                    "late_terminal_signal_dropped",
                    invocation_id=self.invocation_id,
                    state=previous.value,
                    dropped=target.value,
                )
                return False
            validate_transition(previous, target)

            now = utcnow()
            if target is InvocationState.RUNNING:
                self.started_at = now
            else:
                for collector in self._collectors.values():
                    collector.close()
                self.finished_at = now
                if self.started_at is None:
                    self.started_at = now
                self.error = error
                self.exception = exception
            self._state = target
            if target.is_terminal:
                self._finished.set()
            listeners = list(self._state_listeners)

        for listener in listeners:
            try:
                listener(self, previous, target)
            except Exception as e:
                logger.warning(
                    "state_listener_error",
                    invocation_id=self.invocation_id,
                    previous=previous.value,
                    current=target.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return True


__all__ = ["InvocationHandle", "StateListener", "new_invocation_id"]
