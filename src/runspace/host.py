"""Execution host — runs one script on one engine, blocking or not.

Manifesto:
    Blocking and non-blocking invocation are the same work on different
    threads.  ``ExecutionHost`` has exactly one worker routine,
    ``_drive()``: the synchronous path runs it inline on the caller's
    thread, the asynchronous path runs it on one dedicated thread and
    returns the handle immediately.

ARCHITECTURE
────────────
::

    ExecutionHost(script, engine_factory=PythonEngine)
      ├── .attach_parameter(name, value)  ─ before invocation only
      ├── .subscribe(channel, observer)   ─ before or during invocation
      ├── .invoke_synchronously()         ─ _drive() inline → Output payloads
      ├── .invoke_asynchronously()        ─ _drive() on a thread → handle
      └── .close()                        ─ cancel + join in-flight worker

    _drive(handle):
      cancel already requested?  → STOPPED (engine never created)
      engine = engine_factory()   → failure: FAILED
      RUNNING
      engine.run(script, params, emit)
          emit = checkpoint + append to collector
      → COMPLETED | STOPPED (EngineStopped after cancel) | FAILED (any other
        exception, SystemExit included; an unsolicited EngineStopped)
      engine.dispose()             ─ exactly once, before the terminal state
                                     becomes visible

A host is single-use: a second invocation raises InvalidStateError.

Example:
    >>> host = ExecutionHost("write_error('x')\\n'a'")
    >>> host.invoke_synchronously()
    ['a']
    >>> host.invocation.channel("error").payloads()
    ['x']

Related modules:
    invocation.py  — InvocationHandle (state machine, collectors)
    engines/       — Engine protocol and concrete engines

Tags:
    runspace, host, execution, worker, thread
"""

from __future__ import annotations

import threading
import traceback
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from .engines.base import Engine, EngineFactory
from .engines.python import PythonEngine
from .errors import EngineError, EngineStopped, InvalidStateError
from .events import EventDispatcher, Observer
from .invocation import InvocationHandle, StateListener, new_invocation_id
from .logging import LogContext, get_logger
from .models import Channel, ErrorSummary, InvocationState, normalize_parameter_name
from .settings import RunspaceSettings, get_settings

logger = get_logger(__name__)


class ExecutionHost:
    """Owns one script, its parameters and the engine that runs it.

    Example:
        >>> with ExecutionHost("write_output(param1)") as host:
        ...     host.attach_parameter("Param1", "parameter 1 value!")
        ...     handle = host.invoke_asynchronously()
        ...     while handle.wait(timeout=1.0) is InvocationState.RUNNING:
        ...         print("Waiting for pipeline to finish...")
        >>> handle.channel("output").payloads()
        ['parameter 1 value!']
    """

    def __init__(
        self,
        script: str,
        *,
        engine_factory: EngineFactory | None = None,
        parameters: Mapping[str, Any] | None = None,
        settings: RunspaceSettings | None = None,
    ):
        """
        Args:
            script: Script text handed to the engine
            engine_factory: Creates the engine instance (default: PythonEngine)
            parameters: Initial parameters, as if passed to attach_parameters()
            settings: Overrides the cached environment settings
        """
        if not isinstance(script, str):
            raise TypeError(f"script must be str, got {type(script).__name__}")
        self._script = script
        self._settings = settings or get_settings()
        self._engine_factory = engine_factory or self._default_engine_factory
        self._parameters: dict[str, Any] = {}
        self._frozen_parameters: Mapping[str, Any] = MappingProxyType({})
        self._invocation_id = new_invocation_id()
        self._dispatcher = EventDispatcher(source=self._invocation_id)
        self._state_listeners: list[StateListener] = []
        self._handle: InvocationHandle | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

        if parameters:
            self.attach_parameters(parameters)

    def _default_engine_factory(self) -> Engine:
        return PythonEngine(trace_checkpoints=self._settings.trace_checkpoints)

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    @property
    def script(self) -> str:
        return self._script

    @property
    def parameters(self) -> Mapping[str, Any]:
        """Read-only view of the case-normalized parameter set."""
        return MappingProxyType(dict(self._parameters))

    def attach_parameter(self, name: str, value: Any) -> ExecutionHost:
        """Attach or overwrite a parameter.

        Raises:
            InvalidStateError: If the invocation already started
            InvalidParameterError: If *name* is blank
        """
        key = normalize_parameter_name(name)
        with self._lock:
            self._ensure_not_started(f"attach parameter {name!r}")
            self._parameters[key] = value
        return self

    def attach_parameters(self, parameters: Mapping[str, Any]) -> ExecutionHost:
        for name, value in parameters.items():
            self.attach_parameter(name, value)
        return self

    def subscribe(self, channel: Channel | str, observer: Observer) -> str:
        """Observe *channel* of this host's invocation, including its first item."""
        return self._dispatcher.subscribe(channel, observer)

    def unsubscribe(self, channel: Channel | str, observer: Observer | str) -> bool:
        return self._dispatcher.unsubscribe(channel, observer)

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a transition callback before invoking (see InvocationHandle)."""
        with self._lock:
            if self._handle is not None:
                self._handle.add_state_listener(listener)
            else:
                self._state_listeners.append(listener)

    @property
    def invocation(self) -> InvocationHandle | None:
        """Handle of this host's invocation, or None before invoking."""
        return self._handle

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #

    def invoke_synchronously(self) -> list[Any]:
        """Run the script to completion on the calling thread.

        Returns:
            Payloads of the Output channel, in order (partial if stopped)

        Raises:
            InvalidStateError: If this host was already invoked
            EngineError: If the engine reported a fatal fault; every
                channel stays readable through ``host.invocation``
        """
        handle = self._begin()
        self._drive(handle)

        if handle.state is InvocationState.FAILED:
            error = handle.error
            raise EngineError(
                f"Script failed: {error}",
                detail=error.detail if error else None,
                cause=handle.exception,
            ).with_context(invocation_id=handle.invocation_id, state=handle.state.value)
        return handle.channel(Channel.OUTPUT).payloads()

    def invoke_asynchronously(self) -> InvocationHandle:
        """Start the script on a dedicated worker thread and return at once.

        Raises:
            InvalidStateError: If this host was already invoked
        """
        handle = self._begin()
        thread = threading.Thread(
            target=self._drive,
            args=(handle,),
            name=f"{self._settings.worker_name_prefix}-{handle.invocation_id}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return handle

    def close(self) -> None:
        """Cancel an in-flight asynchronous invocation and join its worker."""
        handle, thread = self._handle, self._thread
        if handle is not None and not handle.is_finished:
            handle.cancel()
        if thread is not None and thread is not threading.current_thread():
            thread.join(self._settings.join_timeout)
            if thread.is_alive():
                logger.warning(
                    "worker_join_timeout",
                    invocation_id=self._invocation_id,
                    join_timeout=self._settings.join_timeout,
                )

    def __enter__(self) -> ExecutionHost:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = self._handle.state.value if self._handle else "idle"
        return f"ExecutionHost({self._invocation_id!r}, {state})"

    # ------------------------------------------------------------------ #
    # Worker routine
    # ------------------------------------------------------------------ #

    def _ensure_not_started(self, operation: str) -> None:
        # caller holds self._lock
        if self._handle is not None:
            raise InvalidStateError(
                f"Cannot {operation}: invocation already started"
            ).with_context(invocation_id=self._invocation_id, state=self._handle.state.value)

    def _begin(self) -> InvocationHandle:
        with self._lock:
            self._ensure_not_started("invoke a consumed host")
            self._handle = InvocationHandle(
                invocation_id=self._invocation_id,
                capacity=self._settings.stream_capacity,
                dispatcher=self._dispatcher,
                state_listeners=self._state_listeners,
            )
            self._frozen_parameters = MappingProxyType(dict(self._parameters))
            return self._handle

    def _emit(self, handle: InvocationHandle, channel: Channel | str, payload: Any) -> None:
        if handle.cancel_requested:
            raise EngineStopped()
        handle.channel(channel).append(payload)

    def _drive(self, handle: InvocationHandle) -> None:
        with LogContext(invocation_id=handle.invocation_id):
            try:
                self._drive_engine(handle)
            finally:
                if not handle.is_finished:
                    handle._finish(
                        InvocationState.FAILED,
                        ErrorSummary("WorkerAborted", "Worker exited without a terminal state"),
                    )
            logger.info(
                "invocation_finished",
                state=handle.state.value,
                duration_seconds=handle.duration_seconds,
                items={c.value: col.total_appended for c, col in handle.collectors.items()},
            )

    def _drive_engine(self, handle: InvocationHandle) -> None:
        if handle.cancel_requested:
            handle._finish(InvocationState.STOPPED)
            return

        try:
            engine = self._engine_factory()
        except Exception as e:
            logger.warning("engine_create_failed", error=str(e), error_type=type(e).__name__)
            handle._finish(InvocationState.FAILED, _summarize(e), e)
            return

        outcome: tuple[InvocationState, ErrorSummary | None, BaseException | None]
        try:
            handle._bind_engine_stop(engine.request_stop)
            handle._mark_running()
            logger.info(
                "invocation_started",
                engine=type(engine).__name__,
                parameters=sorted(self._frozen_parameters),
            )
            engine.run(self._script, self._frozen_parameters, lambda c, p: self._emit(handle, c, p))
        except EngineStopped as e:
            if handle.cancel_requested:
                outcome = (InvocationState.STOPPED, None, None)
            else:
                logger.warning("unsolicited_engine_stop", engine=type(engine).__name__)
                outcome = (InvocationState.FAILED, _summarize(e), e)
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            # SystemExit from a script is a fault like any other
            logger.warning("engine_fault", error=str(e), error_type=type(e).__name__)
            outcome = (InvocationState.FAILED, _summarize(e), e)
        else:
            outcome = (InvocationState.COMPLETED, None, None)
        finally:
            handle._unbind_engine_stop()
            try:
                engine.dispose()
            except Exception:
                logger.exception("engine_dispose_failed", engine=type(engine).__name__)
            else:
                logger.debug("engine_disposed", engine=type(engine).__name__)

        handle._finish(*outcome)


def _summarize(error: BaseException) -> ErrorSummary:
    return ErrorSummary(
        error_type=type(error).__name__,
        message=str(error) or type(error).__name__,
        detail="".join(traceback.format_exception(type(error), error, error.__traceback__)),
    )


__all__ = ["ExecutionHost"]
