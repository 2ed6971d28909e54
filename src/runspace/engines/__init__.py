"""Engine capability and the engines shipped with runspace.

Modules
-------
base        Engine protocol, Emit and EngineFactory types
python      PythonEngine -- exec() in a fresh namespace
scripted    ScriptedEngine -- deterministic step replay for tests
"""

from .base import Emit, Engine, EngineFactory
from .python import ProgressRecord, PythonEngine
from .scripted import ScriptedEngine, ScriptedEngineFactory

__all__ = [
    "Emit",
    "Engine",
    "EngineFactory",
    "ProgressRecord",
    "PythonEngine",
    "ScriptedEngine",
    "ScriptedEngineFactory",
]
