"""Python engine — runs Python source in-process.

Translates the host's engine contract onto ``exec``:

    ============================  ==========================================
    Host concept                  Python engine equivalent
    ============================  ==========================================
    script text                   module source, compiled per run
    parameters                    namespace variables + read-only ``params``;
                                  names that collide with a helper (or
                                  ``params``) are only in ``params``
    Output channel                ``write_output(...)`` and the value of
                                  every top-level expression statement
    other channels                ``write_error`` / ``write_warning`` /
                                  ``write_debug`` / ``write_information`` /
                                  ``write_progress``
    checkpoint                    every line of script code (trace hook),
                                  every ``write_*`` call, ``sleep()``
    fault                         any uncaught exception, incl. SyntaxError,
                                  SystemExit
    ============================  ==========================================

Example::

    engine = PythonEngine()
    engine.run(
        "greeting = f'hello {name}'\\ngreeting\\nwrite_error('careful')",
        {"name": "world"},
        lambda channel, payload: print(channel.value, payload),
    )
    # output hello world
    # error careful

Limitations:
    Stop requests are cooperative.  A single long-running statement (a C
    call, ``time.sleep``) is not interrupted; use the injected ``sleep``.
    A script that catches ``Exception`` around a checkpoint can swallow
    the stop.
"""

from __future__ import annotations

import ast
import builtins
import sys
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import FrameType, MappingProxyType
from typing import Any

from ..errors import EngineStopped
from ..logging import get_logger
from ..models import Channel
from ..settings import get_settings
from .base import Emit

logger = get_logger(__name__)

_EMIT_VALUE = "__runspace_emit_value__"


@dataclass(frozen=True)
class ProgressRecord:
    """Payload written to the Progress channel by ``write_progress``."""

    activity: str
    percent_complete: int | None = None
    status: str | None = None


class _EmitExpressionValues(ast.NodeTransformer):
    """Route the value of each top-level expression statement to Output."""

    def visit_Module(self, node: ast.Module) -> ast.Module:
        body = []
        for stmt in node.body:
            if isinstance(stmt, ast.Expr):
                call = ast.Call(
                    func=ast.Name(id=_EMIT_VALUE, ctx=ast.Load()),
                    args=[stmt.value],
                    keywords=[],
                )
                stmt = ast.copy_location(ast.Expr(value=call), stmt)
            body.append(stmt)
        node.body = body
        return ast.fix_missing_locations(node)


class PythonEngine:
    """In-process engine executing Python source with ``exec``.

    Each instance runs one script; the host creates a fresh instance per
    invocation.
    """

    def __init__(
        self,
        *,
        trace_checkpoints: bool | None = None,
        filename: str = "<runspace-script>",
    ):
        """
        Args:
            trace_checkpoints: Check for stop requests between script lines.
                Defaults to ``RunspaceSettings.trace_checkpoints``.
            filename: Name compiled into tracebacks; also used to recognise
                script frames in the trace hook.
        """
        if trace_checkpoints is None:
            trace_checkpoints = get_settings().trace_checkpoints
        self._trace_checkpoints = trace_checkpoints
        self._filename = filename
        self._stop = threading.Event()
        self._namespace: dict[str, Any] | None = None
        self._disposed = False

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def compile(self, script: str) -> Any:
        tree = ast.parse(script, filename=self._filename, mode="exec")
        tree = _EmitExpressionValues().visit(tree)
        return compile(tree, self._filename, "exec")

    def run(self, script: str, parameters: Mapping[str, Any], emit: Emit) -> None:
        if self._disposed:
            raise RuntimeError("PythonEngine has been disposed")
        code = self.compile(script)
        self._namespace = self._build_namespace(parameters, emit)

        if not self._trace_checkpoints:
            exec(code, self._namespace)
            return

        previous = sys.gettrace()
        sys.settrace(self._trace_calls)
        try:
            exec(code, self._namespace)
        finally:
            sys.settrace(previous)

    def request_stop(self) -> None:
        self._stop.set()

    def dispose(self) -> None:
        self._namespace = None
        self._disposed = True
        logger.debug("python_engine_disposed", filename=self._filename)

    # ------------------------------------------------------------------ #
    # Script namespace
    # ------------------------------------------------------------------ #

    def _build_namespace(self, parameters: Mapping[str, Any], emit: Emit) -> dict[str, Any]:
        def write(channel: Channel):
            def writer(*values: Any) -> None:
                for value in values:
                    emit(channel, value)
            writer.__name__ = f"write_{channel.value}"
            return writer

        def write_progress(
            activity: str,
            percent_complete: int | None = None,
            status: str | None = None,
        ) -> None:
            emit(Channel.PROGRESS, ProgressRecord(activity, percent_complete, status))

        def emit_value(value: Any) -> None:
            if value is not None:
                emit(Channel.OUTPUT, value)

        namespace: dict[str, Any] = {
            "__name__": "__runspace__",
            "__builtins__": builtins,
            "write_output": write(Channel.OUTPUT),
            "write_error": write(Channel.ERROR),
            "write_warning": write(Channel.WARNING),
            "write_debug": write(Channel.DEBUG),
            "write_information": write(Channel.INFORMATION),
            "write_progress": write_progress,
            "sleep": self._sleep,
            _EMIT_VALUE: emit_value,
        }
        for name, value in parameters.items():
            if not name.isidentifier():
                continue
            if name in namespace or name == "params":
                logger.debug("parameter_not_bound_as_variable", parameter=name)
                continue
            namespace[name] = value
        namespace["params"] = MappingProxyType(dict(parameters))
        return namespace

    def _sleep(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise EngineStopped()

    # ------------------------------------------------------------------ #
    # Line checkpoints
    # ------------------------------------------------------------------ #

    def _trace_calls(self, frame: FrameType, event: str, arg: Any):
        if frame.f_code.co_filename != self._filename:
            return None
        return self._trace_lines

    def _trace_lines(self, frame: FrameType, event: str, arg: Any):
        if event == "line" and self._stop.is_set():
            raise EngineStopped()
        return self._trace_lines


__all__ = ["PythonEngine", "ProgressRecord"]
