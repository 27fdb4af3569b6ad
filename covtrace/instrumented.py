"""State handling for binaries that write their own coverage profiles."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol

from covtrace.statemachine import (
    RunConfig,
    LineAnalysis,
    RunError,
    StateData,
    TestCoverageError,
    TestFailedError,
    TestRuntimeError,
    TestState,
)
from covtrace.traces import LineStat, Trace, TraceMap

logger = logging.getLogger(__name__)


class _Waitable(Protocol):
    def wait(self) -> int: ...


@dataclass
class RunningProcess:
    """A launched test binary and what is known about it."""

    child: _Waitable
    path: Path
    should_panic: bool = False
    existing_profraws: set[Path] = field(default_factory=set)
    extra_binaries: list[Path] = field(default_factory=list)


@dataclass
class FileCoverage:
    """Hit counts for line regions of one source file.

    ``hits`` maps an inclusive ``(line_start, line_end)`` region to its count.
    """

    hits: dict[tuple[int, int], int] = field(default_factory=dict)

    def hits_for_line(self, line: int) -> Optional[int]:
        """The largest count of any region covering ``line``, or None."""
        counts = [h for (start, end), h in self.hits.items() if start <= line <= end]
        return max(counts) if counts else None


class CoverageBackend(ABC):
    """Access to profile files and their mapping onto source."""

    @abstractmethod
    def profile_paths(self) -> Iterable[Path]:
        """All profile files currently present."""

    @abstractmethod
    def merge_profiles(self, paths: list[Path]) -> Any:
        """Merge profile files; the result is falsy when it holds no records."""

    @abstractmethod
    def map_coverage(
        self, binaries: list[Path], instrumentation: Any, root: Path
    ) -> Mapping[Path, FileCoverage]:
        """Map merged profiles onto source files under ``root``."""

    @abstractmethod
    def source_files(self) -> Iterable[Path]:
        """All source files of the project."""


def _display(config: RunConfig, path: Path) -> str:
    try:
        return str(Path(path).relative_to(config.root))
    except ValueError:
        return str(path)


def _exit_code(returncode: int) -> int:
    # A process killed by a signal has no exit code.
    return returncode if returncode >= 0 else 1


class LlvmInstrumentedData(StateData):
    """Runs an instrumented binary like a normal process and reads its profiles."""

    def __init__(
        self,
        process: Optional[RunningProcess],
        traces: TraceMap,
        analysis: Mapping[Path, LineAnalysis],
        config: RunConfig,
        backend: CoverageBackend,
    ) -> None:
        self.process = process
        self.traces = traces
        self.analysis = {Path(k): v for k, v in analysis.items()}
        self.config = config
        self.backend = backend

    def start(self) -> Optional[TestState]:
        return TestState.wait_state()

    def init(self) -> TestState:
        """Nothing to instrument: the binary runs like a normal process."""
        return TestState.wait_state()

    def last_wait_attempt(self) -> Optional[TestState]:
        """Finish collection if the test has already exited, else None."""
        parent = self.process
        if parent is None:
            return None
        poll = getattr(parent.child, "poll", None)
        if poll is None or poll() is None:
            return None
        return self.wait()

    def stop(self) -> TestState:
        """A stop is handled by waiting for the process to finish."""
        state = self.wait()
        return state if state is not None else TestState.wait_state()

    def wait(self) -> Optional[TestState]:
        parent = self.process
        if parent is None:
            raise TestCoverageError("Test was not launched")
        try:
            returncode = parent.child.wait()
        except OSError as exc:
            raise TestRuntimeError(str(exc)) from exc
        if returncode != 0 and not parent.should_panic:
            raise TestFailedError()
        if self.config.post_test_delay is not None:
            time.sleep(self.config.post_test_delay)

        existing = {Path(p) for p in parent.existing_profraws}
        profraws = [Path(p) for p in self.backend.profile_paths() if Path(p) not in existing]
        logger.info("For binary: %s", _display(self.config, parent.path))
        for prof in profraws:
            logger.info("Generated: %s", _display(self.config, prof))

        logger.info("Merging coverage reports")
        try:
            instrumentation = self.backend.merge_profiles(profraws)
        except RunError:
            raise
        except Exception as exc:
            raise TestCoverageError(str(exc)) from exc
        code = _exit_code(returncode)
        if not instrumentation:
            logger.warning(
                "profraw file has no records after merging. If this is unexpected it "
                "may be caused by a panic or signal used in a test that prevented the "
                "instrumentation runtime from serialising results"
            )
            self.process = None
            return TestState.end(code)

        binaries = []
        for path in parent.extra_binaries:
            path = Path(path)
            # Extra binaries may only be created later by the test suite.
            if path.exists():
                binaries.append(path)
            else:
                logger.info(
                    "Skipping additional object '%s' since the file does not exist", path
                )
        binaries.append(Path(parent.path))

        logger.info("Mapping coverage data to source")
        try:
            report = self.backend.map_coverage(binaries, instrumentation, self.config.root)
        except Exception as exc:
            logger.error("Failed to get coverage: %s", exc)
            raise TestCoverageError(str(exc)) from exc
        report = {Path(k): v for k, v in report.items()}

        if self.traces.is_empty():
            self._fill_traces(report)
        else:
            self._update_traces(report)

        self.process = None
        return TestState.end(code)

    def _fill_traces(self, report: Mapping[Path, FileCoverage]) -> None:
        for source_file in self.backend.source_files():
            file = Path(source_file)
            analysis = self.analysis.get(file)
            result = report.get(file)
            if result is not None:
                for (start, end), hits in result.hits.items():
                    for line in range(start, end + 1):
                        if analysis is None or not analysis.should_ignore(line):
                            trace = Trace.new_stub(line)
                            trace.stats = LineStat(hits)
                            self.traces.add_trace(file, trace)
            if analysis is not None:
                for line in sorted(analysis.cover):
                    if not self.traces.contains_location(file, line):
                        self.traces.add_trace(file, Trace.new_stub(line))

    def _update_traces(self, report: Mapping[Path, FileCoverage]) -> None:
        self.traces.dedup()
        for file, result in report.items():
            traces = self.traces.file_traces(file)
            if traces is None:
                logger.warning("Couldn't find %s in %s", file, self.traces.files())
                continue
            for trace in traces:
                hits = result.hits_for_line(trace.line)
                if hits is not None and isinstance(trace.stats, LineStat):
                    trace.stats = LineStat(hits)


def create_instrumented_state_machine(
    process: Any,
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: RunConfig,
    backend: CoverageBackend,
) -> tuple[TestState, LlvmInstrumentedData]:
    """The initial state and handler for an instrumented test process."""
    if isinstance(process, RunningProcess):
        data = LlvmInstrumentedData(process, traces, analysis, config, backend)
        return TestState.start_state(), data
    logger.error("The instrumented state machine requires a running process")
    data = LlvmInstrumentedData(None, traces, analysis, config, backend)
    return TestState.end(1), data