"""Choosing the state machine for the configured trace engine."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Mapping

from covtrace.instrumented import create_instrumented_state_machine
from covtrace.linux import create_linux_state_machine
from covtrace.statemachine import (
    LineAnalysis,
    RunConfig,
    StateData,
    StateMachineError,
    TestState,
    TraceEngine,
)
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)


def _ptrace_supported() -> bool:
    return sys.platform.startswith("linux")


def create_state_machine(
    test: Any,
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: RunConfig,
    backend: Any,
) -> tuple[TestState, StateData]:
    """The initial state and handler for ``test`` under the configured engine.

    With the ptrace engine ``test`` is a pid and ``backend`` a tracer backend;
    otherwise ``test`` is a running process and ``backend`` a coverage backend.
    """
    if config.engine is TraceEngine.PTRACE:
        if not _ptrace_supported():
            logger.error("The ptrace backend is not supported on this system")
            raise StateMachineError("The ptrace backend is not supported on this system")
        return create_linux_state_machine(test, traces, analysis, config, backend)
    return create_instrumented_state_machine(test, traces, analysis, config, backend)