"""The state machine that drives a traced test process."""

from __future__ import annotations

import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


class RunError(Exception):
    """Base class for failures while running a test under coverage."""


class TestRuntimeError(RunError):
    """The test process misbehaved or timed out."""

    __test__ = False


class StateMachineError(RunError):
    """The state machine reached a state it cannot handle."""


class TestFailedError(RunError):
    """The test process exited unsuccessfully."""

    __test__ = False

    def __init__(self, message: str = "Test failed during run") -> None:
        super().__init__(message)


class TestCoverageError(RunError):
    """Coverage data could not be collected."""

    __test__ = False


class TraceEngine(enum.Enum):
    """How coverage is collected."""

    AUTO = "auto"
    PTRACE = "ptrace"
    LLVM = "llvm"


@dataclass
class RunConfig:
    """Settings used while tracing a test run."""

    root: Path = field(default_factory=Path.cwd)
    target_dir: Optional[Path] = None
    test_timeout: float = 60.0
    post_test_delay: Optional[float] = None
    engine: TraceEngine = TraceEngine.AUTO
    follow_exec: bool = False
    forward_signals: bool = False
    count: bool = False
    compiler_flags: str = ""

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.target_dir = (
            self.root / "target" if self.target_dir is None else Path(self.target_dir)
        )


@dataclass
class LineAnalysis:
    """Result of analysing one source file: lines to ignore and lines to cover."""

    ignore: set[int] = field(default_factory=set)
    cover: set[int] = field(default_factory=set)

    def should_ignore(self, line: int) -> bool:
        return line in self.ignore


class StateKind(enum.Enum):
    """The phases of a traced test."""

    START = "start"
    INITIALISE = "initialise"
    WAITING = "waiting"
    STOPPED = "stopped"
    END = "end"


@dataclass(frozen=True)
class TestState:
    """A state of the tracing state machine.

    Start and waiting states carry the monotonic time they began, used for
    timeouts; the end state carries the test's exit code.
    """

    __test__ = False

    kind: StateKind
    start_time: Optional[float] = None
    exit_code: Optional[int] = None

    @classmethod
    def start_state(cls) -> TestState:
        return cls(StateKind.START, start_time=time.monotonic())

    @classmethod
    def wait_state(cls) -> TestState:
        return cls(StateKind.WAITING, start_time=time.monotonic())

    @classmethod
    def end(cls, code: int) -> TestState:
        return cls(StateKind.END, exit_code=code)

    def is_finished(self) -> bool:
        return self.kind is StateKind.END

    def _timed_out(self, config: RunConfig) -> bool:
        started = self.start_time if self.start_time is not None else time.monotonic()
        return time.monotonic() - started >= config.test_timeout

    def step(self, data: StateData, config: RunConfig) -> TestState:
        """Advance the state machine by one step."""
        if self.kind is StateKind.START:
            next_state = data.start()
            if next_state is not None:
                return next_state
            if self._timed_out(config):
                raise TestRuntimeError("Error: Timed out when starting test")
            return self
        if self.kind is StateKind.INITIALISE:
            return data.init()
        if self.kind is StateKind.WAITING:
            next_state = data.wait()
            if next_state is not None:
                return next_state
            if self._timed_out(config):
                last = data.last_wait_attempt()
                if last is not None:
                    return last
                raise TestRuntimeError("Error: Timed out waiting for test response")
            return self
        if self.kind is StateKind.STOPPED:
            return data.stop()
        return self


class ActionKind(enum.Enum):
    """What the tracer should do to a process."""

    TRY_CONTINUE = "try_continue"
    CONTINUE = "continue"
    STEP = "step"
    DETACH = "detach"
    NOTHING = "nothing"


@dataclass(frozen=True)
class TracerAction:
    """An action for the tracer, with the process it applies to.

    A try-continue is for when it is unknown whether the process is paused.
    """

    kind: ActionKind
    data: Any = None

    def get_data(self) -> Any:
        if self.kind is ActionKind.NOTHING:
            return None
        return self.data


class StateData(ABC):
    """Platform-specific handling of each state of a traced test."""

    @abstractmethod
    def start(self) -> Optional[TestState]:
        """Start tracing; None while still waiting for the test to appear."""

    @abstractmethod
    def init(self) -> TestState:
        """Prepare the test for tracing and return the next state."""

    @abstractmethod
    def wait(self) -> Optional[TestState]:
        """Wait for the test; None when there is nothing to do yet."""

    @abstractmethod
    def last_wait_attempt(self) -> Optional[TestState]:
        """Before a timeout, check whether the run has in fact finished."""

    @abstractmethod
    def stop(self) -> TestState:
        """Handle a stopped test, collecting coverage data."""