"""
Shared pytest fixtures and configuration for runspace tests.

This module provides:
- Settings isolation (environment variables and the settings cache)
- Scripted engine factories for the canonical scenarios
- A generous wait timeout for tests that cross threads

Usage:
    Fixtures are auto-discovered by pytest; use them as function arguments.
"""

from pathlib import Path

import pytest

from runspace.engines.scripted import ScriptedEngineFactory, emit, fault, sleep
from runspace.settings import RunspaceSettings, clear_settings_cache

WAIT_TIMEOUT = 5.0

_SETTINGS_ENV = [
    "RUNSPACE_LOG_LEVEL",
    "RUNSPACE_LOG_JSON",
    "RUNSPACE_STREAM_CAPACITY",
    "RUNSPACE_JOIN_TIMEOUT",
    "RUNSPACE_WORKER_NAME_PREFIX",
    "RUNSPACE_TRACE_CHECKPOINTS",
]


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "engines" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Run every test without RUNSPACE_* variables or a cached settings object."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)  # no stray .env file
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> RunspaceSettings:
    """Settings with a short join timeout."""
    return RunspaceSettings(join_timeout=2.0)


# =============================================================================
# Scripted Engines
# =============================================================================


@pytest.fixture
def completing_factory() -> ScriptedEngineFactory:
    """emit 'a' to Output, emit 'x' to Error, finish."""
    return ScriptedEngineFactory([
        emit("output", "a"),
        emit("error", "x"),
    ])


@pytest.fixture
def faulting_factory() -> ScriptedEngineFactory:
    """Two Output items, then a fatal fault."""
    return ScriptedEngineFactory([
        emit("output", 1),
        emit("output", 2),
        fault("engine exploded"),
        emit("output", 3),
    ])


@pytest.fixture
def sleeping_factory() -> ScriptedEngineFactory:
    """Emit 'started', sleep long, then emit 'done'."""
    return ScriptedEngineFactory([
        emit("output", "started"),
        sleep(30),
        emit("output", "done"),
    ])


@pytest.fixture
def wait_timeout() -> float:
    return WAIT_TIMEOUT
