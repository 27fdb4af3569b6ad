"""Process-tracing primitives: wait statuses, breakpoints and the tracer backend."""

from __future__ import annotations

import enum
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from covtrace.statemachine import TracerAction
from covtrace.traces import TraceMap

# Linux-only waitpid flag: wait for all children, whether threads or processes.
_WALL = 0x40000000
# Stop signal reported for syscall stops when PTRACE_O_TRACESYSGOOD is set.
_SYSCALL_TRAP = int(signal.SIGTRAP) | 0x80

SignalLike = Union[signal.Signals, int]


class WaitKind(enum.Enum):
    """The kinds of status change reported by waitpid."""

    STILL_ALIVE = "still_alive"
    EXITED = "exited"
    SIGNALED = "signaled"
    STOPPED = "stopped"
    PTRACE_EVENT = "ptrace_event"
    PTRACE_SYSCALL = "ptrace_syscall"
    CONTINUED = "continued"


class PtraceEvent(enum.IntEnum):
    """Event codes carried by a ptrace event stop."""

    FORK = 1
    VFORK = 2
    CLONE = 3
    EXEC = 4
    VFORK_DONE = 5
    EXIT = 6
    SECCOMP = 7
    STOP = 128


@dataclass(frozen=True)
class WaitStatus:
    """A decoded status change of a traced process or thread."""

    kind: WaitKind
    pid: Optional[int] = None
    signal: Optional[SignalLike] = None
    code: Optional[int] = None
    event: Optional[int] = None
    core_dumped: bool = False


@dataclass(frozen=True)
class ProcessInfo:
    """A process or thread id, with a signal to deliver when it is resumed."""

    pid: int
    signal: Optional[SignalLike] = None


class BreakpointClash(OSError):
    """Another instrumentation point already occupies this instruction."""


class AddressUnavailable(OSError):
    """The code address cannot be read or written in the traced process."""


def align_address(address: int) -> int:
    """Round an address down to an 8-byte boundary."""
    return address & ~0x7


class Breakpoint(ABC):
    """A software breakpoint placed in a traced process."""

    @abstractmethod
    def process(self, pid: int, reenable: bool) -> tuple[bool, TracerAction]:
        """Handle a hit by ``pid``.

        Returns whether the hit should be counted and the action that lets
        the process carry on; the breakpoint is re-armed when ``reenable``.
        """

    @abstractmethod
    def jump_to(self, pid: int) -> None:
        """Move ``pid`` past the breakpoint without recording another hit."""

    @abstractmethod
    def thread_killed(self, pid: int) -> None:
        """Forget any per-thread state held for ``pid``."""

    @abstractmethod
    def disable(self, pid: int) -> None:
        """Restore the original instruction in ``pid``."""


def _to_signal(number: int) -> SignalLike:
    try:
        return signal.Signals(number)
    except ValueError:
        return number


def _to_event(number: int) -> int:
    try:
        return PtraceEvent(number)
    except ValueError:
        return number


def _decode(pid: int, status: int) -> WaitStatus:
    """Decode a raw waitpid result."""
    if pid == 0:
        return WaitStatus(WaitKind.STILL_ALIVE)
    if os.WIFEXITED(status):
        return WaitStatus(WaitKind.EXITED, pid=pid, code=os.WEXITSTATUS(status))
    if os.WIFSIGNALED(status):
        return WaitStatus(
            WaitKind.SIGNALED,
            pid=pid,
            signal=_to_signal(os.WTERMSIG(status)),
            core_dumped=os.WCOREDUMP(status),
        )
    if os.WIFSTOPPED(status):
        stopsig = os.WSTOPSIG(status)
        event = status >> 16
        if event:
            return WaitStatus(
                WaitKind.PTRACE_EVENT,
                pid=pid,
                signal=_to_signal(stopsig),
                event=_to_event(event),
            )
        if stopsig == _SYSCALL_TRAP:
            return WaitStatus(WaitKind.PTRACE_SYSCALL, pid=pid, signal=signal.SIGTRAP)
        return WaitStatus(WaitKind.STOPPED, pid=pid, signal=_to_signal(stopsig))
    if os.WIFCONTINUED(status):
        return WaitStatus(WaitKind.CONTINUED, pid=pid)
    raise ValueError(f"Unrecognised wait status {status:#x} for pid {pid}")


class TracerBackend(ABC):
    """Operations on traced processes.

    Waiting and process inspection are provided through the operating system
    and the proc filesystem at ``proc_root``; the tracing operations proper
    are supplied by a subclass.
    """

    proc_root: Path = Path("/proc")

    def waitpid(self, pid: int) -> WaitStatus:
        """Poll ``pid`` for a status change without blocking."""
        found, status = os.waitpid(pid, os.WNOHANG)
        return _decode(found, status)

    def waitpid_any(self) -> WaitStatus:
        """Poll every child, threads included, for a status change."""
        found, status = os.waitpid(-1, os.WNOHANG | _WALL)
        return _decode(found, status)

    @abstractmethod
    def trace_children(self, pid: int) -> None:
        """Ask to be told of clones, forks, vforks, execs and exits of ``pid``."""

    @abstractmethod
    def continue_exec(self, pid: int, signal: Optional[SignalLike]) -> None:
        """Resume ``pid``, delivering ``signal`` if given."""

    @abstractmethod
    def single_step(self, pid: int) -> None:
        """Execute one instruction of ``pid``."""

    @abstractmethod
    def detach(self, pid: int) -> None:
        """Stop tracing ``pid``."""

    @abstractmethod
    def get_event_data(self, pid: int) -> int:
        """The message of the last ptrace event of ``pid``, such as a new pid."""

    @abstractmethod
    def instruction_pointer(self, pid: int) -> int:
        """The current program counter of ``pid``."""

    @abstractmethod
    def create_breakpoint(self, pid: int, address: int) -> Breakpoint:
        """Place a breakpoint at ``address``.

        Raises AddressUnavailable when the address cannot be reached and
        BreakpointClash when it overlaps another instrumentation point.
        """

    def exe_path(self, pid: int) -> Optional[Path]:
        """The executable of ``pid``, or None when it cannot be read."""
        try:
            return Path(os.readlink(self.proc_root / str(pid) / "exe"))
        except OSError:
            return None

    def thread_ids(self, pid: int) -> list[int]:
        """Ids of the threads of ``pid``; empty when the process is unknown."""
        try:
            names = os.listdir(self.proc_root / str(pid) / "task")
        except OSError:
            return []
        return sorted(int(name) for name in names if name.isdigit())

    def memory_offset(self, pid: int) -> int:
        """Load address of the executable's first mapping in ``pid``, or 0."""
        try:
            maps = (self.proc_root / str(pid) / "maps").read_text()
        except OSError:
            return 0
        exe = self.exe_path(pid)
        for line in maps.splitlines():
            parts = line.split(maxsplit=5)
            if len(parts) < 6 or not parts[5].startswith("/"):
                continue
            if exe is None or Path(parts[5]) == exe:
                return int(parts[0].split("-", 1)[0], 16)
        return 0


@dataclass
class TracedProcess:
    """A process under trace and its breakpoints."""

    parent: int
    breakpoints: dict[int, Breakpoint] = field(default_factory=dict)
    thread_count: int = 0
    offset: int = 0
    # None for the test binary itself, whose traces live in the root map.
    traces: Optional[TraceMap] = None
    is_test_proc: bool = False