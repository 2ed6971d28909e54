"""Engine Protocol — the single capability the host consumes.

Manifesto:
The host never parses or executes script text itself.  Whatever actually
runs the script (the in-process Python engine, a scripted test double,
an adapter around an external interpreter) is reached through the
``Engine`` protocol — any object with the right methods satisfies it, no
base class required.

ARCHITECTURE
────────────
::

    EngineFactory()            ─ createEngineInstance, one per invocation
    Engine (Protocol)
      ├── .run(script, parameters, emit)
      │       emit(channel, payload)   ─ stream one event
      │       return                   ─ final status: ok
      │       raise EngineStopped      ─ stop acknowledged
      │       raise <anything else>    ─ final status: fault(detail)
      ├── .request_stop()       ─ best-effort, any thread, idempotent
      └── .dispose()            ─ called exactly once by the host

    ``emit`` is also the host's checkpoint: once a cancel was requested,
    the next ``emit`` call raises :class:`EngineStopped` into the engine.

Implementations:
    PythonEngine    ─ exec() in a fresh namespace          (python.py)
    ScriptedEngine  ─ replays a list of steps               (scripted.py)

Tags:
    runspace, engine, protocol, interface
"""

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from ..models import Channel

Emit = Callable[[Channel, Any], None]
"""Callback an engine uses to stream ``(channel, payload)`` events."""


@runtime_checkable
class Engine(Protocol):
    """Script engine adapter — how script text gets executed.

    Example implementation:
        >>> class EchoEngine:
        ...     def run(self, script, parameters, emit):
        ...         emit(Channel.OUTPUT, script)
        ...
        ...     def request_stop(self) -> None:
        ...         pass
        ...
        ...     def dispose(self) -> None:
        ...         pass
    """

    def run(self, script: str, parameters: Mapping[str, Any], emit: Emit) -> None:
        """Execute *script* with *parameters*, streaming events through *emit*.

        Args:
            script: Script text
            parameters: Case-normalized parameter names → values
            emit: Event sink; may raise EngineStopped at a checkpoint

        Raises:
            EngineStopped: The engine honoured a stop request
            Exception: Any other exception is a fatal fault
        """
        ...

    def request_stop(self) -> None:
        """Ask a running script to stop at its next checkpoint."""
        ...

    def dispose(self) -> None:
        """Release engine resources."""
        ...


EngineFactory = Callable[[], Engine]
"""Creates one engine instance per invocation."""


__all__ = ["Emit", "Engine", "EngineFactory"]
