"""Scripted engine — a deterministic test double.

Replays a fixed list of steps instead of interpreting script text, so
state-machine transitions, cancellation races and fault handling can be
exercised without a real interpreter.

Architecture::

    ScriptedEngine(steps)
    ├── EmitStep(channel, payload)   ─ emit one event
    ├── ParameterStep(name, channel) ─ emit the value of a parameter
    ├── SleepStep(seconds)           ─ interruptible by request_stop()
    └── FaultStep(message)           ─ raise a fatal fault

    ScriptedEngineFactory(steps) creates one fresh engine per invocation
    and keeps every instance for assertions.

Example::

    from runspace.engines.scripted import ScriptedEngineFactory, emit, fault

    factory = ScriptedEngineFactory([
        emit("output", 1),
        emit("output", 2),
        fault("disk on fire"),
    ])
    host = ExecutionHost("ignored", engine_factory=factory)

See Also:
    runspace.engines.base — Engine protocol
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import EngineStopped
from ..logging import get_logger
from ..models import Channel, normalize_parameter_name
from .base import Emit

logger = get_logger(__name__)


class ScriptFault(RuntimeError):
    """The fault a :class:`FaultStep` raises."""


@dataclass(frozen=True)
class EmitStep:
    channel: Channel
    payload: Any


@dataclass(frozen=True)
class ParameterStep:
    name: str
    channel: Channel = Channel.OUTPUT


@dataclass(frozen=True)
class SleepStep:
    seconds: float


@dataclass(frozen=True)
class FaultStep:
    message: str


Step = EmitStep | ParameterStep | SleepStep | FaultStep


def emit(channel: Channel | str, payload: Any) -> EmitStep:
    return EmitStep(Channel.parse(channel), payload)


def echo_parameter(name: str, channel: Channel | str = Channel.OUTPUT) -> ParameterStep:
    return ParameterStep(normalize_parameter_name(name), Channel.parse(channel))


def sleep(seconds: float) -> SleepStep:
    return SleepStep(seconds)


def fault(message: str) -> FaultStep:
    return FaultStep(message)


class ScriptedEngine:
    """Engine that replays *steps*, honouring stop requests between steps.

    Parameters
    ----------
    steps
        Steps executed in order on every ``run``.
    """

    def __init__(self, steps: Sequence[Step]) -> None:
        self._steps = list(steps)
        self._stop = threading.Event()
        self.received_script: str | None = None
        self.received_parameters: dict[str, Any] | None = None
        self.stop_requests = 0
        self.dispose_calls = 0
        self.completed_steps = 0

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def disposed(self) -> bool:
        return self.dispose_calls > 0

    def run(self, script: str, parameters: Mapping[str, Any], emit: Emit) -> None:
        self.received_script = script
        self.received_parameters = dict(parameters)

        for step in self._steps:
            if self._stop.is_set():
                raise EngineStopped()

            if isinstance(step, EmitStep):
                emit(step.channel, step.payload)
            elif isinstance(step, ParameterStep):
                emit(step.channel, parameters.get(step.name))
            elif isinstance(step, SleepStep):
                if self._stop.wait(step.seconds):
                    raise EngineStopped()
            elif isinstance(step, FaultStep):
                raise ScriptFault(step.message)
            else:
                raise TypeError(f"Unknown step: {step!r}")
            self.completed_steps += 1

    def request_stop(self) -> None:
        self.stop_requests += 1
        self._stop.set()

    def dispose(self) -> None:
        self.dispose_calls += 1
        logger.debug("scripted_engine_disposed", completed_steps=self.completed_steps)


class ScriptedEngineFactory:
    """Creates a fresh :class:`ScriptedEngine` per call and remembers it."""

    def __init__(self, steps: Sequence[Step]) -> None:
        self._steps = list(steps)
        self.instances: list[ScriptedEngine] = []

    def __call__(self) -> ScriptedEngine:
        engine = ScriptedEngine(self._steps)
        self.instances.append(engine)
        return engine

    @property
    def last(self) -> ScriptedEngine:
        """Most recently created engine."""
        return self.instances[-1]


__all__ = [
    "ScriptedEngine",
    "ScriptedEngineFactory",
    "ScriptFault",
    "EmitStep",
    "ParameterStep",
    "SleepStep",
    "FaultStep",
    "emit",
    "echo_parameter",
    "sleep",
    "fault",
]
