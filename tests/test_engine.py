from pathlib import Path
from unittest import mock

import pytest

from covtrace.engine import create_state_machine
from covtrace.instrumented import CoverageBackend, LlvmInstrumentedData, RunningProcess
from covtrace.linux import LinuxData
from covtrace.ptrace import TracerBackend
from covtrace.statemachine import (
    RunConfig,
    StateKind,
    StateMachineError,
    TraceEngine,
)
from covtrace.traces import TraceMap


class FakeCoverage(CoverageBackend):
    def profile_paths(self):
        return []

    def merge_profiles(self, paths):
        return None

    def map_coverage(self, binaries, instrumentation, root):
        return {}

    def source_files(self):
        return []


class FakeTracer(TracerBackend):
    def trace_children(self, pid):
        pass

    def continue_exec(self, pid, signal):
        pass

    def single_step(self, pid):
        pass

    def detach(self, pid):
        pass

    def get_event_data(self, pid):
        raise OSError("none")

    def instruction_pointer(self, pid):
        raise OSError("none")

    def create_breakpoint(self, pid, address):
        raise OSError("none")


class DoneChild:
    def wait(self):
        return 0


def process():
    return RunningProcess(child=DoneChild(), path=Path("bin"))


@pytest.mark.parametrize("engine", [TraceEngine.LLVM, TraceEngine.AUTO])
def test_instrumented_engines_start(tmp_path, engine):
    config = RunConfig(root=tmp_path, engine=engine)
    state, data = create_state_machine(process(), TraceMap(), {}, config, FakeCoverage())
    assert state.kind is StateKind.START
    assert isinstance(data, LlvmInstrumentedData)


def test_instrumented_engine_without_process_ends(tmp_path):
    config = RunConfig(root=tmp_path, engine=TraceEngine.LLVM)
    state, data = create_state_machine(42, TraceMap(), {}, config, FakeCoverage())
    assert state.is_finished()
    assert state.exit_code == 1


def test_ptrace_engine_on_linux(tmp_path):
    config = RunConfig(root=tmp_path, engine=TraceEngine.PTRACE)
    with mock.patch("sys.platform", "linux"):
        state, data = create_state_machine(1234, TraceMap(), {}, config, FakeTracer())
    assert state.kind is StateKind.START
    assert isinstance(data, LinuxData)
    assert data.parent == 1234


def test_ptrace_engine_needs_pid(tmp_path):
    config = RunConfig(root=tmp_path, engine=TraceEngine.PTRACE)
    with mock.patch("sys.platform", "linux"):
        with pytest.raises(TypeError):
            create_state_machine(process(), TraceMap(), {}, config, FakeTracer())


def test_ptrace_engine_unsupported_platform(tmp_path):
    config = RunConfig(root=tmp_path, engine=TraceEngine.PTRACE)
    with mock.patch("sys.platform", "darwin"):
        with pytest.raises(StateMachineError):
            create_state_machine(1234, TraceMap(), {}, config, FakeTracer())