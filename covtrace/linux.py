"""Coverage collection by tracing a test process, its threads and children."""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from covtrace.ptrace import (
    AddressUnavailable,
    Breakpoint,
    BreakpointClash,
    ProcessInfo,
    PtraceEvent,
    SignalLike,
    TracedProcess,
    TracerBackend,
    WaitKind,
    WaitStatus,
    align_address,
)
from covtrace.statemachine import (
    ActionKind,
    LineAnalysis,
    RunConfig,
    RunError,
    StateData,
    StateKind,
    StateMachineError,
    TestRuntimeError,
    TestState,
    TracerAction,
)
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)

TraceMapFactory = Callable[[Path, Mapping[Path, LineAnalysis], RunConfig], TraceMap]
UpdateContext = tuple[TestState, TracerAction]


def _action(kind: ActionKind, pid: int, sig: Optional[SignalLike] = None) -> TracerAction:
    return TracerAction(kind, ProcessInfo(pid, sig))


_NOTHING = TracerAction(ActionKind.NOTHING)


class _EarlyEnd(Exception):
    """Ends handling of a stop at once with a final state."""

    def __init__(self, state: TestState) -> None:
        super().__init__(state)
        self.state = state


class LinuxData(StateData):
    """Traces a test process with breakpoints, following threads, forks and execs."""

    def __init__(
        self,
        traces: TraceMap,
        analysis: Mapping[Path, LineAnalysis],
        config: RunConfig,
        backend: TracerBackend,
        tracemap_factory: Optional[TraceMapFactory] = None,
    ) -> None:
        self.traces = traces
        self.analysis = {Path(k): v for k, v in analysis.items()}
        self.config = config
        self.backend = backend
        self.tracemap_factory = tracemap_factory
        self.wait_queue: list[WaitStatus] = []
        # Actions that can only be applied one cycle later.
        self.pending_actions: list[TracerAction] = []
        self.parent = 0
        self.current = 0
        self.processes: dict[int, TracedProcess] = {}
        self.pid_map: dict[int, int] = {}
        # Set when the test has exited but spawned processes are still traced.
        self.exit_code: Optional[int] = None

    # State handling

    def start(self) -> Optional[TestState]:
        try:
            status = self.backend.waitpid(self.current)
        except OSError as exc:
            raise TestRuntimeError(f"Error when starting test: {exc}") from exc
        if status.kind is WaitKind.STILL_ALIVE:
            return None
        if status.kind is WaitKind.STOPPED and status.signal == signal.SIGTRAP:
            self.current = status.pid
            logger.debug("Caught inferior transitioning to Initialise state")
            return TestState(StateKind.INITIALISE)
        raise TestRuntimeError("Unexpected signal when starting test")

    def init(self) -> TestState:
        traced = self._init_process(self.current, None)
        traced.is_test_proc = True
        try:
            self.backend.continue_exec(traced.parent, None)
        except OSError as exc:
            raise TestRuntimeError("Test didn't launch correctly") from exc
        logger.debug("Initialised inferior, transitioning to wait state")
        self.processes[self.current] = traced
        return TestState.wait_state()

    def last_wait_attempt(self) -> Optional[TestState]:
        if self.exit_code is None:
            return None
        for pid, process in self.processes.items():
            if pid != self.parent and process.traces is not None:
                self.traces.merge(process.traces)
        return TestState.end(self.exit_code)

    def wait(self) -> Optional[TestState]:
        result: Optional[TestState] = None
        error: Optional[RunError] = None
        while True:
            try:
                status = self.backend.waitpid_any()
            except OSError as exc:
                if self.exit_code is not None:
                    result = self.last_wait_attempt()
                else:
                    error = TestRuntimeError(
                        f"An error occurred while waiting for response from test: {exc}"
                    )
                break
            if status.kind is WaitKind.STILL_ALIVE:
                break
            self.wait_queue.append(status)
            result = TestState(StateKind.STOPPED)
            if status.kind in (WaitKind.EXITED, WaitKind.PTRACE_EVENT):
                break
        if self.wait_queue:
            logger.debug("Result queue is %s", self.wait_queue)
        else:
            self._apply_pending_actions()
        if error is not None:
            raise error
        return result

    def stop(self) -> TestState:
        actions: list[TracerAction] = []
        visited_pcs: dict[int, set[int]] = {}
        outcome: Union[TestState, RunError] = TestState.wait_state()
        pending = list(self.wait_queue)
        pending_action_count = len(self.pending_actions)
        self.wait_queue.clear()
        for status in pending:
            try:
                state, action = self._handle_status(status, visited_pcs)
            except _EarlyEnd as end:
                return end.state
            except RunError as exc:
                outcome = exc
                continue
            if state.kind is not StateKind.WAITING:
                outcome = state
            actions.append(action)

        continued = False
        actioned: set[int] = set()
        for action in actions:
            info = action.get_data()
            if info is not None and info.pid in actioned:
                logger.debug("Skipping action %s, pid already sent command", action)
                continue
            logger.debug("Action: %s", action)
            if action.kind is ActionKind.NOTHING:
                continue
            continued = True
            actioned.add(info.pid)
            try:
                if action.kind is ActionKind.TRY_CONTINUE:
                    self._quietly(self.backend.continue_exec, info.pid, info.signal)
                elif action.kind is ActionKind.CONTINUE:
                    self.backend.continue_exec(info.pid, info.signal)
                elif action.kind is ActionKind.STEP:
                    self.backend.single_step(info.pid)
                elif action.kind is ActionKind.DETACH:
                    self._quietly(self.backend.detach, info.pid)
            except OSError as exc:
                raise TestRuntimeError(str(exc)) from exc

        # Pending actions are fork parents stalled until their child returns,
        # so none of them belongs to a process that stopped in this round.
        self._apply_pending_actions(pending_action_count)

        if not continued and self.exit_code is None:
            logger.debug("No action suggested to continue tracee. Attempting a continue")
            self._quietly(self.backend.continue_exec, self.parent, None)

        if isinstance(outcome, RunError):
            raise outcome
        return outcome

    # Helpers

    @staticmethod
    def _quietly(func: Callable[..., object], *args: object) -> None:
        try:
            func(*args)
        except OSError as exc:
            logger.debug("Ignoring failed tracer command: %s", exc)

    def _handle_status(
        self, status: WaitStatus, visited_pcs: dict[int, set[int]]
    ) -> UpdateContext:
        pid = status.pid
        sig = status.signal
        if status.kind is WaitKind.PTRACE_EVENT:
            try:
                return self._handle_ptrace_event(pid, sig, status.event)
            except RunError as exc:
                raise TestRuntimeError(
                    f"Error occurred when handling ptrace event: {exc}"
                ) from exc
        if status.kind is WaitKind.STOPPED:
            if sig == signal.SIGTRAP:
                self.current = pid
                return self._collect_coverage_data(visited_pcs)
            if sig == signal.SIGSTOP or sig == signal.SIGCHLD:
                return TestState.wait_state(), _action(ActionKind.CONTINUE, pid)
            if sig == signal.SIGSEGV:
                raise TestRuntimeError("A segfault occurred while executing tests")
            if sig == signal.SIGILL:
                try:
                    pc = self.backend.instruction_pointer(pid) - 1
                except OSError:
                    pc = 0
                logger.debug("SIGILL raised. Child program counter is: %#x", pc)
                raise TestRuntimeError(f"Error running test - SIGILL raised in {pid}")
            forwarded = sig if self.config.forward_signals else None
            return TestState.wait_state(), _action(ActionKind.TRY_CONTINUE, pid, forwarded)
        if status.kind is WaitKind.SIGNALED:
            try:
                return self._handle_signaled(pid, sig, status.core_dumped)
            except RunError as exc:
                raise TestRuntimeError("Attempting to handle being signaled") from exc
        if status.kind is WaitKind.EXITED:
            return self._handle_exited(pid, status.code or 0)
        raise TestRuntimeError("An unexpected signal has been caught by the tracer!")

    def _handle_exited(self, child: int, code: int) -> UpdateContext:
        parent = 0
        process = self._get_traced_process(child)
        if process is not None:
            for breakpoint in process.breakpoints.values():
                breakpoint.thread_killed(child)
            parent = process.parent
        if parent == child:
            removed = self.processes.pop(parent, None)
            if removed is not None and parent != self.parent and removed.traces is not None:
                self.traces.merge(removed.traces)
        logger.debug("Exited %s parent %s", child, self.parent)
        if child == self.parent:
            if not self.processes or not self.config.follow_exec:
                return TestState.end(code), _NOTHING
            self.exit_code = code
            logger.info(
                "Test process exited, but spawned processes still running. Continuing tracing"
            )
            return TestState.wait_state(), _NOTHING
        if self.exit_code is not None and not self.processes:
            raise _EarlyEnd(TestState.end(self.exit_code))
        # The process may already be gone; this is just in case.
        return TestState.wait_state(), _action(ActionKind.TRY_CONTINUE, self.parent)

    def _get_parent(self, pid: int) -> Optional[int]:
        if pid in self.pid_map:
            return self.pid_map[pid]
        for candidate in self.processes:
            if pid in self.backend.thread_ids(candidate):
                return candidate
        return None

    def _get_traced_process(self, pid: int) -> Optional[TracedProcess]:
        parent = self._get_parent(pid)
        if parent is None:
            return None
        return self.processes.get(parent)

    def _get_active_trace_map(self, pid: int) -> Optional[TraceMap]:
        process = self._get_traced_process(pid)
        if process is None:
            return None
        return process.traces if process.traces is not None else self.traces

    def _get_offset(self, pid: int) -> int:
        if "dynamic-no-pic" in self.config.compiler_flags:
            return 0
        return self.backend.memory_offset(pid)

    def _init_process(self, pid: int, trace_map: Optional[TraceMap]) -> TracedProcess:
        traces = trace_map if trace_map is not None else self.traces
        try:
            self.backend.trace_children(pid)
        except OSError as exc:
            raise TestRuntimeError(str(exc)) from exc
        offset = self._get_offset(pid)
        logger.debug("Initialising process: %s, address offset: %#x", pid, offset)
        breakpoints: dict[int, Breakpoint] = {}
        clashes: set[int] = set()
        for trace in traces.all_traces():
            for addr in sorted(trace.address):
                if align_address(addr) in clashes:
                    logger.debug(
                        "Skipping %#x as it clashes with previously disabled breakpoints", addr
                    )
                    continue
                try:
                    breakpoints[addr + offset] = self.backend.create_breakpoint(
                        pid, addr + offset
                    )
                except AddressUnavailable as exc:
                    raise TestRuntimeError(
                        "Cannot find code addresses, check your linker settings."
                    ) from exc
                except BreakpointClash:
                    logger.debug("Instrumentation address clash, ignoring %#x", addr)
                    # Drop the other breakpoint at this address too, to avoid
                    # false positives.
                    aligned = align_address(addr)
                    clashes.add(aligned)
                    for address in [a for a in breakpoints if align_address(a - offset) == aligned]:
                        logger.debug("Disabling clashing breakpoint")
                        try:
                            breakpoints[address].disable(pid)
                        except OSError as exc:
                            logger.error("Unable to disable breakpoint: %s", exc)
                        del breakpoints[address]
                except OSError as exc:
                    raise TestRuntimeError("Failed to instrument test executable") from exc
        # A process is its own parent.
        old = self.pid_map.get(pid)
        self.pid_map[pid] = pid
        if old is not None and old != pid:
            logger.debug("%s being promoted to parent. Old parent %s", pid, old)
        return TracedProcess(
            parent=pid,
            breakpoints=breakpoints,
            thread_count=0,
            offset=offset,
            traces=trace_map,
            is_test_proc=False,
        )

    def _handle_exec(self, pid: int) -> UpdateContext:
        logger.debug("Handling process exec")
        fallback = (TestState.wait_state(), _action(ActionKind.CONTINUE, pid))
        exe = self.backend.exe_path(pid)
        if exe is None or not Path(exe).is_relative_to(self.config.target_dir):
            return TestState.wait_state(), _action(ActionKind.DETACH, pid)
        if self.tracemap_factory is None:
            logger.debug("No way to create a trace map for executable, continuing")
            return fallback
        try:
            tracemap = self.tracemap_factory(Path(exe), self.analysis, self.config)
        except (OSError, ValueError) as exc:
            logger.debug("Failed to create trace map for executable, continuing: %s", exc)
            return fallback
        if tracemap.is_empty():
            logger.debug("Trace map for executable is empty, continuing")
            return fallback
        try:
            process = self._init_process(pid, tracemap)
        except RunError as exc:
            logger.error("Failed to init process (attempting continue): %s", exc)
            return fallback
        self.processes[pid] = process
        return TestState.wait_state(), _action(ActionKind.CONTINUE, pid)

    def _register_child(self, child: int, new_pid: int) -> bool:
        process = self._get_traced_process(child)
        if process is None:
            return False
        process.thread_count += 1
        self.pid_map[new_pid] = process.parent
        return True

    def _handle_ptrace_event(
        self, child: int, sig: Optional[SignalLike], event: Optional[int]
    ) -> UpdateContext:
        if sig != signal.SIGTRAP:
            logger.debug("Unexpected signal %s with ptrace event %s", sig, event)
            raise TestRuntimeError("Unexpected signal")
        carry_on = (TestState.wait_state(), _action(ActionKind.CONTINUE, child))
        if event == PtraceEvent.CLONE:
            try:
                thread = self.backend.get_event_data(child)
            except OSError as exc:
                raise TestRuntimeError(
                    "Error occurred upon test executable thread creation"
                ) from exc
            logger.debug("New thread spawned %s", thread)
            if not self._register_child(child, thread):
                logger.warning("Couldn't find parent for %s", child)
            return carry_on
        if event == PtraceEvent.FORK:
            try:
                fork_child = self.backend.get_event_data(child)
            except OSError:
                logger.debug("No event data for child")
            else:
                logger.debug("Caught fork event. Child %s", fork_child)
                self._register_child(child, fork_child)
            return carry_on
        if event == PtraceEvent.VFORK:
            # Spawning a command starts with a vfork rather than an exec, so
            # every vfork is treated as an exec.
            try:
                fork_child = self.backend.get_event_data(child)
            except OSError:
                return carry_on
            if not self.config.follow_exec:
                return carry_on
            result = self._handle_exec(fork_child)
            if self.config.forward_signals:
                self.pending_actions.append(_action(ActionKind.CONTINUE, child))
            return result
        if event == PtraceEvent.EXEC:
            if self.config.follow_exec:
                return self._handle_exec(child)
            return TestState.wait_state(), _action(ActionKind.DETACH, child)
        if event == PtraceEvent.EXIT:
            logger.debug("Child exiting")
            is_parent = False
            process = self._get_traced_process(child)
            if process is not None:
                process.thread_count -= 1
                is_parent = process.parent == child
            if not is_parent:
                self.pid_map.pop(child, None)
            return TestState.wait_state(), _action(ActionKind.TRY_CONTINUE, child)
        raise TestRuntimeError(f"Unrecognised ptrace event {event}")

    def _collect_coverage_data(self, visited_pcs: dict[int, set[int]]) -> UpdateContext:
        current = self.current
        action: Optional[TracerAction] = None
        hits: set[int] = set()
        process = self._get_traced_process(current)
        if process is not None:
            visited = visited_pcs.setdefault(process.parent, set())
            try:
                pc: Optional[int] = self.backend.instruction_pointer(current) - 1
            except OSError:
                pc = None
            breakpoint = process.breakpoints.get(pc) if pc is not None else None
            if breakpoint is not None:
                if pc in visited:
                    self._quietly(breakpoint.jump_to, current)
                    counted, action = True, _action(ActionKind.CONTINUE, current)
                else:
                    try:
                        counted, action = breakpoint.process(current, self.config.count)
                    except OSError:
                        # Carry on rather than stall the process.
                        counted, action = False, _action(ActionKind.CONTINUE, current)
                if counted:
                    logger.debug("Hit address %#x", pc)
                    hits.add(pc - process.offset)
        else:
            logger.warning("Failed to find process for pid: %s", current)
        traces = self._get_active_trace_map(current)
        if traces is not None:
            for address in hits:
                traces.increment_hit(address)
        else:
            logger.warning("Failed to find traces for pid: %s", current)
        if action is None:
            action = _action(ActionKind.CONTINUE, current)
        return TestState.wait_state(), action

    def _handle_signaled(
        self, pid: int, sig: Optional[SignalLike], core_dumped: bool
    ) -> UpdateContext:
        parent = self._get_parent(pid)
        if parent is not None:
            process = self.processes.get(parent)
            if process is not None and not process.is_test_proc:
                return TestState.wait_state(), _action(ActionKind.TRY_CONTINUE, pid, sig)
        if sig == signal.SIGKILL:
            return TestState.wait_state(), _action(ActionKind.DETACH, pid)
        if (sig == signal.SIGTRAP and core_dumped) or sig == signal.SIGCHLD:
            return TestState.wait_state(), _action(ActionKind.CONTINUE, pid)
        if sig == signal.SIGTERM:
            return TestState.wait_state(), _action(
                ActionKind.TRY_CONTINUE, pid, signal.SIGTERM
            )
        raise StateMachineError("Unexpected stop")

    def _apply_pending_actions(self, count: Optional[int] = None) -> None:
        end = len(self.pending_actions) if count is None else count
        applied = self.pending_actions[:end]
        del self.pending_actions[:end]
        for action in applied:
            if action.kind in (ActionKind.CONTINUE, ActionKind.TRY_CONTINUE):
                info = action.get_data()
                self._quietly(self.backend.continue_exec, info.pid, info.signal)
            else:
                logger.error("Pending actions should only be continues: %s", action)


def create_linux_state_machine(
    pid: int,
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: RunConfig,
    backend: TracerBackend,
    tracemap_factory: Optional[TraceMapFactory] = None,
) -> tuple[TestState, LinuxData]:
    """The initial state and handler for tracing the test process ``pid``."""
    if isinstance(pid, bool) or not isinstance(pid, int):
        raise TypeError("Test handle must be a pid for the ptrace engine")
    data = LinuxData(traces, analysis, config, backend, tracemap_factory)
    data.parent = pid
    return TestState.start_state(), data