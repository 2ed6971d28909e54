"""
Tests for ExecutionHost with the scripted engine.

Tests cover:
- Synchronous invocation scenarios (completed, fault, stop)
- Asynchronous invocation (bounded start, polling, cancellation)
- Parameter attachment rules and exact read-back
- Single-use hosts
- Deterministic engine disposal on every exit path
- Observer isolation on the producing side
"""

import threading
import time

import pytest
from structlog.testing import capture_logs

from runspace.engines.scripted import (
    ScriptedEngine,
    ScriptedEngineFactory,
    echo_parameter,
    emit,
    sleep,
)
from runspace.errors import EngineError, EngineStopped, InvalidParameterError, InvalidStateError
from runspace.host import ExecutionHost
from runspace.models import Channel, InvocationState
from runspace.settings import RunspaceSettings


class TestSynchronous:
    """invoke_synchronously() scenarios."""

    def test_output_and_error_scenario(self, completing_factory, settings):
        """emit 'a' to Output, emit 'x' to Error, finish."""
        host = ExecutionHost("script", engine_factory=completing_factory, settings=settings)

        output = host.invoke_synchronously()

        assert output == ["a"]
        handle = host.invocation
        assert handle.state is InvocationState.COMPLETED
        assert handle.channel(Channel.ERROR).payloads() == ["x"]
        assert handle.channel(Channel.DEBUG).payloads() == []

    def test_fault_after_two_items(self, faulting_factory, settings):
        host = ExecutionHost("script", engine_factory=faulting_factory, settings=settings)

        with pytest.raises(EngineError) as exc_info:
            host.invoke_synchronously()

        handle = host.invocation
        assert handle.state is InvocationState.FAILED
        assert handle.channel(Channel.OUTPUT).payloads() == [1, 2]
        assert handle.error is not None
        assert handle.error.error_type == "ScriptFault"
        assert "engine exploded" in handle.error.message
        assert "ScriptFault" in handle.error.detail

        error = exc_info.value
        assert error.context.invocation_id == handle.invocation_id
        assert error.context.state == "failed"
        assert error.detail == handle.error.detail
        assert error.__cause__ is handle.exception

    def test_runs_on_calling_thread(self, settings):
        threads = []

        class RecordingEngine(ScriptedEngine):
            def run(self, script, parameters, emit):
                threads.append(threading.current_thread())
                super().run(script, parameters, emit)

        host = ExecutionHost("s", engine_factory=lambda: RecordingEngine([]), settings=settings)
        host.invoke_synchronously()

        assert threads == [threading.current_thread()]

    def test_never_returns_before_terminal(self, settings):
        factory = ScriptedEngineFactory([sleep(0.2), emit("output", "done")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)

        start = time.monotonic()
        output = host.invoke_synchronously()

        assert time.monotonic() - start >= 0.19
        assert output == ["done"]
        assert host.invocation.is_finished
        assert host.invocation.state.is_terminal

    def test_cancel_from_observer_stops_run(self, settings):
        factory = ScriptedEngineFactory([emit("output", i) for i in range(5)])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        host.subscribe(Channel.OUTPUT, lambda item: host.invocation.cancel())

        output = host.invoke_synchronously()

        assert output == [0]
        assert host.invocation.state is InvocationState.STOPPED
        assert factory.last.stop_requests == 1

    def test_engine_creation_failure(self, settings):
        def factory():
            raise RuntimeError("no interpreter available")

        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        with pytest.raises(EngineError, match="no interpreter available"):
            host.invoke_synchronously()

        assert host.invocation.state is InvocationState.FAILED
        assert host.invocation.error.error_type == "RuntimeError"


class TestAsynchronous:
    """invoke_asynchronously() scenarios."""

    def test_returns_before_script_finishes(self, sleeping_factory, settings, wait_timeout):
        with ExecutionHost("s", engine_factory=sleeping_factory, settings=settings) as host:
            start = time.monotonic()
            handle = host.invoke_asynchronously()
            elapsed = time.monotonic() - start

            assert elapsed < 1.0
            assert handle.poll() in (InvocationState.NOT_STARTED, InvocationState.RUNNING)
            assert not handle.is_finished
            handle.cancel()
            assert handle.wait(timeout=wait_timeout) is InvocationState.STOPPED

    def test_runs_on_dedicated_thread(self, settings, wait_timeout):
        threads = []

        class RecordingEngine(ScriptedEngine):
            def run(self, script, parameters, emit):
                threads.append(threading.current_thread())
                super().run(script, parameters, emit)

        host = ExecutionHost("s", engine_factory=lambda: RecordingEngine([]), settings=settings)
        handle = host.invoke_asynchronously()
        assert handle.wait(timeout=wait_timeout) is InvocationState.COMPLETED

        assert len(threads) == 1
        assert threads[0] is not threading.current_thread()
        assert threads[0].name.startswith(f"runspace-worker-{handle.invocation_id}")

    def test_completes_and_streams(self, completing_factory, settings, wait_timeout):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        handle = host.invoke_asynchronously()

        assert handle.wait(timeout=wait_timeout) is InvocationState.COMPLETED
        assert handle.channel("output").payloads() == ["a"]
        assert handle.channel("error").payloads() == ["x"]

    def test_polling_until_complete(self, settings, wait_timeout):
        factory = ScriptedEngineFactory([emit("output", "test1"), sleep(0.2), emit("output", "test2")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        handle = host.invoke_asynchronously()

        polls = 0
        deadline = time.monotonic() + wait_timeout
        while not handle.poll().is_terminal and time.monotonic() < deadline:
            polls += 1
            time.sleep(0.01)

        assert handle.poll() is InvocationState.COMPLETED
        assert polls > 0
        assert handle.channel(Channel.OUTPUT).payloads() == ["test1", "test2"]

    def test_cancel_during_sleep(self, sleeping_factory, settings, wait_timeout):
        """sleep long, then emit 'done'; cancel before the sleep ends."""
        host = ExecutionHost("s", engine_factory=sleeping_factory, settings=settings)
        handle = host.invoke_asynchronously()
        assert handle.channel(Channel.OUTPUT).wait_for_items(1, timeout=wait_timeout)

        start = time.monotonic()
        handle.cancel()
        state = handle.wait(timeout=wait_timeout)

        assert state is InvocationState.STOPPED
        assert time.monotonic() - start < wait_timeout
        items = handle.channel(Channel.OUTPUT).snapshot()
        assert [item.payload for item in items] == ["started"]
        assert [item.index for item in items] == [0]
        assert sleeping_factory.last.stop_requests == 1

    def test_cancel_is_idempotent(self, sleeping_factory, settings, wait_timeout):
        host = ExecutionHost("s", engine_factory=sleeping_factory, settings=settings)
        handle = host.invoke_asynchronously()
        handle.channel(Channel.OUTPUT).wait_for_items(1, timeout=wait_timeout)

        for _ in range(10):
            handle.cancel()

        assert handle.wait(timeout=wait_timeout) is InvocationState.STOPPED
        handle.cancel()
        assert handle.state is InvocationState.STOPPED
        assert sleeping_factory.last.stop_requests == 1
        assert sleeping_factory.last.dispose_calls == 1

    def test_cancel_before_worker_starts(self, settings, wait_timeout):
        """A cancel that wins the race with the worker never creates an engine."""
        gate = threading.Event()
        factory = ScriptedEngineFactory([emit("output", "a")])

        def gated_factory():
            gate.wait(wait_timeout)
            return factory()

        host = ExecutionHost("s", engine_factory=gated_factory, settings=settings)
        handle = host.invoke_asynchronously()
        handle.cancel()
        gate.set()

        assert handle.wait(timeout=wait_timeout) is InvocationState.STOPPED
        assert handle.channel(Channel.OUTPUT).payloads() == []
        for engine in factory.instances:
            assert engine.stop_requested
            assert engine.dispose_calls == 1

    def test_fault_does_not_crash_caller(self, faulting_factory, settings, wait_timeout):
        host = ExecutionHost("s", engine_factory=faulting_factory, settings=settings)
        handle = host.invoke_asynchronously()

        assert handle.wait(timeout=wait_timeout) is InvocationState.FAILED
        assert handle.channel(Channel.OUTPUT).payloads() == [1, 2]
        assert str(handle.error).startswith("ScriptFault")

    def test_close_cancels_and_joins(self, sleeping_factory, settings):
        host = ExecutionHost("s", engine_factory=sleeping_factory, settings=settings)
        handle = host.invoke_asynchronously()
        handle.channel(Channel.OUTPUT).wait_for_items(1, timeout=5)

        host.close()

        assert handle.is_finished
        assert handle.state is InvocationState.STOPPED
        assert sleeping_factory.last.disposed

    def test_close_without_invocation(self, settings):
        ExecutionHost("s", settings=settings).close()

    def test_observers_see_items_in_order(self, settings, wait_timeout):
        factory = ScriptedEngineFactory(
            [emit("output", i) for i in range(100)] + [emit("error", "e")]
        )
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        seen = []
        errors_written = []
        host.subscribe("output", lambda item: seen.append(item.index))
        host.subscribe("error", lambda item: errors_written.append(item.payload))

        handle = host.invoke_asynchronously()
        assert handle.wait(timeout=wait_timeout) is InvocationState.COMPLETED

        assert seen == list(range(100))
        assert errors_written == ["e"]


class TestParameters:
    """attach_parameter() rules."""

    def test_value_read_back_exactly(self, settings):
        value = object()
        factory = ScriptedEngineFactory([echo_parameter("param1")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        host.attach_parameter("Param1", value)

        output = host.invoke_synchronously()

        assert output[0] is value
        assert factory.last.received_parameters == {"param1": value}

    def test_last_write_wins_case_insensitively(self, settings):
        factory = ScriptedEngineFactory([echo_parameter("name")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        host.attach_parameter("name", "first")
        host.attach_parameter("NAME", "second")

        assert dict(host.parameters) == {"name": "second"}
        assert host.invoke_synchronously() == ["second"]

    def test_constructor_and_bulk_attach(self, settings):
        host = ExecutionHost("s", parameters={"A": 1}, settings=settings)
        assert host.attach_parameters({"b": 2, "a": 3}) is host
        assert dict(host.parameters) == {"a": 3, "b": 2}

    def test_parameters_view_is_read_only(self, settings):
        host = ExecutionHost("s", settings=settings)
        host.attach_parameter("x", 1)
        with pytest.raises(TypeError):
            host.parameters["x"] = 2

    def test_attach_after_sync_invoke_fails(self, completing_factory, settings):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        host.invoke_synchronously()

        with pytest.raises(InvalidStateError) as exc_info:
            host.attach_parameter("late", 1)
        assert exc_info.value.context.invocation_id == host.invocation.invocation_id

    def test_attach_while_running_fails(self, sleeping_factory, settings, wait_timeout):
        with ExecutionHost("s", engine_factory=sleeping_factory, settings=settings) as host:
            handle = host.invoke_asynchronously()
            with pytest.raises(InvalidStateError):
                host.attach_parameter("late", 1)
            handle.cancel()
            handle.wait(timeout=wait_timeout)

        assert "late" not in sleeping_factory.last.received_parameters

    def test_blank_name_rejected(self, settings):
        with pytest.raises(InvalidParameterError):
            ExecutionHost("s", settings=settings).attach_parameter(" ", 1)


class TestSingleUse:
    """A consumed host fails fast."""

    def test_second_sync_invoke_fails(self, completing_factory, settings):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        host.invoke_synchronously()

        with pytest.raises(InvalidStateError, match="already started"):
            host.invoke_synchronously()
        assert len(completing_factory.instances) == 1

    def test_async_after_sync_fails(self, completing_factory, settings):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        host.invoke_synchronously()
        with pytest.raises(InvalidStateError):
            host.invoke_asynchronously()

    def test_second_async_invoke_fails(self, completing_factory, settings, wait_timeout):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        handle = host.invoke_asynchronously()
        with pytest.raises(InvalidStateError):
            host.invoke_asynchronously()
        handle.wait(timeout=wait_timeout)

    def test_hosts_are_independent(self, settings):
        first = ExecutionHost("s", engine_factory=ScriptedEngineFactory([emit("output", 1)]), settings=settings)
        second = ExecutionHost("s", engine_factory=ScriptedEngineFactory([emit("output", 2)]), settings=settings)
        assert first.invoke_synchronously() == [1]
        assert second.invoke_synchronously() == [2]
        assert first.invocation.invocation_id != second.invocation.invocation_id

    def test_script_must_be_text(self):
        with pytest.raises(TypeError):
            ExecutionHost(b"bytes")


class TestUnsolicitedStop:
    """EngineStopped without a cancel request is a fault, not a stop."""

    def test_unsolicited_stop_fails(self, settings):
        class SelfStoppingEngine(ScriptedEngine):
            def run(self, script, parameters, emit):
                emit(Channel.OUTPUT, "before")
                raise EngineStopped()

        host = ExecutionHost("s", engine_factory=lambda: SelfStoppingEngine([]), settings=settings)
        with capture_logs() as logs:
            with pytest.raises(EngineError):
                host.invoke_synchronously()

        handle = host.invocation
        assert handle.state is InvocationState.FAILED
        assert handle.error.error_type == "EngineStopped"
        assert handle.channel(Channel.OUTPUT).payloads() == ["before"]
        assert any(log["event"] == "unsolicited_engine_stop" for log in logs)


class TestEngineDisposal:
    """dispose() is called exactly once on every exit path."""

    def test_disposed_after_completion(self, completing_factory, settings):
        ExecutionHost("s", engine_factory=completing_factory, settings=settings).invoke_synchronously()
        assert completing_factory.last.dispose_calls == 1

    def test_disposed_after_fault(self, faulting_factory, settings):
        with pytest.raises(EngineError):
            ExecutionHost("s", engine_factory=faulting_factory, settings=settings).invoke_synchronously()
        assert faulting_factory.last.dispose_calls == 1

    def test_disposed_after_stop(self, sleeping_factory, settings, wait_timeout):
        handle = ExecutionHost("s", engine_factory=sleeping_factory, settings=settings).invoke_asynchronously()
        handle.channel(Channel.OUTPUT).wait_for_items(1, timeout=wait_timeout)
        handle.cancel()
        handle.wait(timeout=wait_timeout)
        assert sleeping_factory.last.dispose_calls == 1

    def test_disposed_before_terminal_state_is_visible(self, settings, wait_timeout):
        observed = []
        factory = ScriptedEngineFactory([emit("output", "a")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        host.add_state_listener(
            lambda handle, prev, cur: observed.append((cur, factory.last.dispose_calls))
        )

        host.invoke_asynchronously().wait(timeout=wait_timeout)
        host.close()  # listeners run after the finished event is set

        assert observed == [(InvocationState.RUNNING, 0), (InvocationState.COMPLETED, 1)]

    def test_dispose_failure_does_not_change_outcome(self, settings):
        class LeakyEngine(ScriptedEngine):
            def dispose(self):
                super().dispose()
                raise OSError("handle already closed")

        host = ExecutionHost("s", engine_factory=lambda: LeakyEngine([emit("output", 1)]), settings=settings)
        with capture_logs() as logs:
            assert host.invoke_synchronously() == [1]

        assert host.invocation.state is InvocationState.COMPLETED
        assert any(log["event"] == "engine_dispose_failed" for log in logs)


class TestObserverIsolation:
    """Observer faults never reach the engine or the invocation state."""

    def test_failing_observer_does_not_fail_run(self, settings):
        factory = ScriptedEngineFactory([emit("output", "a"), emit("output", "b")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        seen = []

        def broken(item):
            raise RuntimeError("observer bug")

        host.subscribe(Channel.OUTPUT, broken)
        host.subscribe(Channel.OUTPUT, lambda item: seen.append(item.payload))

        with capture_logs() as logs:
            assert host.invoke_synchronously() == ["a", "b"]

        assert host.invocation.state is InvocationState.COMPLETED
        assert seen == ["a", "b"]
        assert host.invocation.dispatcher.fault_count == 2
        faults = [log for log in logs if log["event"] == "observer_error"]
        assert all(log["source"] == host.invocation.invocation_id for log in faults)

    def test_unsubscribe_from_host(self, settings):
        factory = ScriptedEngineFactory([emit("output", "a")])
        host = ExecutionHost("s", engine_factory=factory, settings=settings)
        seen = []
        sub_id = host.subscribe(Channel.OUTPUT, seen.append)
        assert host.unsubscribe(Channel.OUTPUT, sub_id) is True

        host.invoke_synchronously()
        assert seen == []


class TestLogging:
    """Worker lifecycle events carry the invocation id."""

    def test_lifecycle_events(self, completing_factory, settings):
        host = ExecutionHost("s", engine_factory=completing_factory, settings=settings)
        host.attach_parameter("Answer", 42)

        with capture_logs() as logs:
            host.invoke_synchronously()

        events = {log["event"]: log for log in logs}
        assert events["invocation_started"]["parameters"] == ["answer"]
        assert events["invocation_started"]["engine"] == "ScriptedEngine"
        finished = events["invocation_finished"]
        assert finished["state"] == "completed"
        assert finished["items"]["output"] == 1
        assert finished["items"]["error"] == 1


class TestSettings:
    """Host honours settings overrides."""

    def test_stream_capacity(self):
        factory = ScriptedEngineFactory([emit("output", i) for i in range(5)])
        host = ExecutionHost("s", engine_factory=factory, settings=RunspaceSettings(stream_capacity=2))

        assert host.invoke_synchronously() == [3, 4]
        assert host.invocation.channel(Channel.OUTPUT).total_appended == 5

    def test_worker_name_prefix(self, wait_timeout):
        names = []

        class RecordingEngine(ScriptedEngine):
            def run(self, script, parameters, emit):
                names.append(threading.current_thread().name)

        host = ExecutionHost(
            "s",
            engine_factory=lambda: RecordingEngine([]),
            settings=RunspaceSettings(worker_name_prefix="custom"),
        )
        host.invoke_asynchronously().wait(timeout=wait_timeout)
        assert names[0].startswith("custom-inv-")
