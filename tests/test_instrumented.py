from pathlib import Path

import pytest

from covtrace.instrumented import (
    CoverageBackend,
    FileCoverage,
    LlvmInstrumentedData,
    RunningProcess,
    create_instrumented_state_machine,
)
from covtrace.statemachine import (
    LineAnalysis,
    RunConfig,
    StateKind,
    StateMachineError,
    TestCoverageError,
    TestFailedError,
    TestState,
)
from covtrace.traces import LineStat, Trace, TraceMap


class FakeChild:
    def __init__(self, code):
        self.code = code

    def wait(self):
        return self.code


class FakeBackend(CoverageBackend):
    def __init__(self, profiles=(), instrumentation=("record",), report=None,
                 sources=(), fail_map=False):
        self.profiles = [Path(p) for p in profiles]
        self.instrumentation = instrumentation
        self.report = report or {}
        self.sources = [Path(s) for s in sources]
        self.fail_map = fail_map
        self.merged = None
        self.binaries = None

    def profile_paths(self):
        return list(self.profiles)

    def merge_profiles(self, paths):
        self.merged = list(paths)
        return self.instrumentation

    def map_coverage(self, binaries, instrumentation, root):
        self.binaries = list(binaries)
        if self.fail_map:
            raise ValueError("bad mapping")
        return self.report

    def source_files(self):
        return list(self.sources)


def make(tmp_path, code=0, backend=None, traces=None, analysis=None, **proc):
    process = RunningProcess(child=FakeChild(code), path=tmp_path / "bin", **proc)
    config = RunConfig(root=tmp_path)
    return LlvmInstrumentedData(
        process, traces or TraceMap(), analysis or {}, config, backend or FakeBackend()
    )


def test_create_with_process_starts(tmp_path):
    process = RunningProcess(child=FakeChild(0), path=tmp_path / "bin")
    state, data = create_instrumented_state_machine(
        process, TraceMap(), {}, RunConfig(root=tmp_path), FakeBackend()
    )
    assert state.kind is StateKind.START
    assert data.start().kind is StateKind.WAITING


def test_create_without_process_ends(tmp_path):
    state, data = create_instrumented_state_machine(
        1234, TraceMap(), {}, RunConfig(root=tmp_path), FakeBackend()
    )
    assert state == TestState.end(1)
    with pytest.raises(TestCoverageError):
        data.wait()


def test_failed_test_raises(tmp_path):
    data = make(tmp_path, code=101)
    with pytest.raises(TestFailedError):
        data.wait()


def test_should_panic_allows_failure(tmp_path):
    data = make(tmp_path, code=101, should_panic=True)
    assert data.wait() == TestState.end(101)


def test_signal_exit_reports_one(tmp_path):
    data = make(tmp_path, code=-9, should_panic=True)
    assert data.wait() == TestState.end(1)


def test_empty_instrumentation_ends(tmp_path):
    backend = FakeBackend(instrumentation=())
    data = make(tmp_path, backend=backend)
    assert data.wait() == TestState.end(0)
    assert data.traces.is_empty()
    assert data.process is None
    assert backend.binaries is None


def test_existing_profiles_filtered(tmp_path):
    old = tmp_path / "old.profraw"
    new = tmp_path / "new.profraw"
    backend = FakeBackend(profiles=[old, new])
    data = make(tmp_path, backend=backend, existing_profraws={old})
    data.wait()
    assert backend.merged == [new]


def test_missing_extra_binaries_skipped(tmp_path):
    present = tmp_path / "present"
    present.write_bytes(b"")
    missing = tmp_path / "missing"
    backend = FakeBackend()
    data = make(tmp_path, backend=backend, extra_binaries=[missing, present])
    data.wait()
    assert backend.binaries == [present, tmp_path / "bin"]


def test_mapping_failure_is_coverage_error(tmp_path):
    data = make(tmp_path, backend=FakeBackend(fail_map=True))
    with pytest.raises(TestCoverageError):
        data.wait()


def test_fills_empty_traces_from_report(tmp_path):
    src = tmp_path / "lib.src"
    report = {src: FileCoverage({(2, 4): 6})}
    analysis = {src: LineAnalysis(ignore={3}, cover={2, 9})}
    data = make(
        tmp_path,
        backend=FakeBackend(report=report, sources=[src]),
        analysis=analysis,
    )
    assert data.wait() == TestState.end(0)
    traces = {t.line: t.stats for t in data.traces.all_traces()}
    assert traces[2] == LineStat(6)
    assert traces[4] == LineStat(6)
    assert 3 not in traces
    assert traces[9] == LineStat(0)


def test_updates_existing_traces(tmp_path):
    src = tmp_path / "lib.src"
    traces = TraceMap()
    traces.add_trace(src, Trace(line=5, address={10}, stats=LineStat(0)))
    traces.add_trace(src, Trace(line=5, address={20}, stats=LineStat(0)))
    traces.add_trace(src, Trace(line=30, stats=LineStat(0)))
    report = {src: FileCoverage({(5, 5): 8})}
    data = make(tmp_path, backend=FakeBackend(report=report), traces=traces)
    data.wait()
    result = list(data.traces.all_traces())
    assert [t.line for t in result] == [5, 30]
    assert result[0].stats == LineStat(8)
    assert result[1].stats == LineStat(0)


def test_hits_for_line_takes_largest_region():
    coverage = FileCoverage({(1, 10): 2, (4, 6): 5})
    assert coverage.hits_for_line(5) == 5
    assert coverage.hits_for_line(1) == 2
    assert coverage.hits_for_line(11) is None