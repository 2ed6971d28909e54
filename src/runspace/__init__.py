"""runspace — run scripts on an embedded engine and collect their streams.

Usage::

    from runspace import ExecutionHost, InvocationState

    host = ExecutionHost("write_warning('doubling')\\nx * 2")
    host.attach_parameter("x", 42)

    # blocking
    output = host.invoke_synchronously()

    # non-blocking
    handle = ExecutionHost(script).invoke_asynchronously()
    handle.subscribe("error", lambda item: print("error written:", item.payload))
    handle.wait(timeout=30)

Modules
-------
host        ExecutionHost -- sync/async invocation over one worker routine
invocation  InvocationHandle -- state machine, collectors, cancellation
streams     StreamCollector -- append-only per-channel log
events      EventDispatcher -- per-channel observers with fault isolation
models      Channel, StreamItem, InvocationState, ErrorSummary
engines     Engine protocol, PythonEngine, ScriptedEngine
errors      RunspaceError hierarchy
settings    RunspaceSettings (RUNSPACE_* environment variables)
logging     structlog configuration
"""

from .engines import Engine, EngineFactory, PythonEngine, ScriptedEngine, ScriptedEngineFactory
from .errors import (
    ClosedChannelError,
    EngineError,
    EngineStopped,
    ErrorCategory,
    InvalidParameterError,
    InvalidStateError,
    InvalidTransitionError,
    RunspaceError,
)
from .events import EventDispatcher
from .host import ExecutionHost
from .invocation import InvocationHandle
from .logging import configure_logging, get_logger
from .models import Channel, ErrorSummary, InvocationState, StreamItem
from .settings import RunspaceSettings, get_settings
from .streams import StreamCollector

__version__ = "0.1.0"

__all__ = [
    "Channel",
    "ClosedChannelError",
    "Engine",
    "EngineError",
    "EngineFactory",
    "EngineStopped",
    "ErrorCategory",
    "ErrorSummary",
    "EventDispatcher",
    "ExecutionHost",
    "InvalidParameterError",
    "InvalidStateError",
    "InvalidTransitionError",
    "InvocationHandle",
    "InvocationState",
    "PythonEngine",
    "RunspaceError",
    "RunspaceSettings",
    "ScriptedEngine",
    "ScriptedEngineFactory",
    "StreamCollector",
    "StreamItem",
    "configure_logging",
    "get_logger",
    "get_settings",
]
