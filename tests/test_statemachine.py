import time

import pytest

from covtrace.statemachine import (
    ActionKind,
    LineAnalysis,
    RunConfig,
    StateData,
    StateKind,
    StateMachineError,
    TestRuntimeError,
    TestState,
    TracerAction,
)


class NullData(StateData):
    def start(self):
        return None

    def init(self):
        raise StateMachineError("No valid coverage collector")

    def wait(self):
        return None

    def last_wait_attempt(self):
        raise StateMachineError("No valid coverage collector")

    def stop(self):
        raise StateMachineError("No valid coverage collector")


class ScriptedData(StateData):
    def __init__(self, start=None, init=None, wait=None, last=None, stop=None):
        self._start = start
        self._init = init
        self._wait = wait
        self._last = last
        self._stop = stop

    def start(self):
        return self._start

    def init(self):
        return self._init

    def wait(self):
        return self._wait

    def last_wait_attempt(self):
        return self._last

    def stop(self):
        return self._stop


def test_hits_timeouts():
    config = RunConfig(test_timeout=5)
    start_time = time.monotonic() - 6

    state = TestState(StateKind.START, start_time=start_time)
    with pytest.raises(TestRuntimeError):
        state.step(NullData(), config)

    state = TestState(StateKind.WAITING, start_time=start_time)
    with pytest.raises(StateMachineError):
        state.step(NullData(), config)


def test_wait_timeout_without_last_attempt_result():
    config = RunConfig(test_timeout=5)
    state = TestState(StateKind.WAITING, start_time=time.monotonic() - 6)
    with pytest.raises(TestRuntimeError):
        state.step(ScriptedData(), config)


def test_wait_timeout_uses_last_attempt():
    config = RunConfig(test_timeout=5)
    state = TestState(StateKind.WAITING, start_time=time.monotonic() - 6)
    result = state.step(ScriptedData(last=TestState.end(3)), config)
    assert result == TestState.end(3)


def test_start_without_timeout_stays():
    config = RunConfig(test_timeout=60)
    state = TestState.start_state()
    assert state.step(ScriptedData(), config) == state


def test_start_returns_next_state():
    config = RunConfig()
    result = TestState.start_state().step(
        ScriptedData(start=TestState(StateKind.INITIALISE)), config
    )
    assert result.kind is StateKind.INITIALISE


def test_initialise_and_stop_delegate():
    config = RunConfig()
    wait = TestState.wait_state()
    assert TestState(StateKind.INITIALISE).step(ScriptedData(init=wait), config) == wait
    end = TestState.end(0)
    assert TestState(StateKind.STOPPED).step(ScriptedData(stop=end), config) == end


def test_waiting_returns_data_state():
    config = RunConfig()
    result = TestState.wait_state().step(
        ScriptedData(wait=TestState(StateKind.STOPPED)), config
    )
    assert result.kind is StateKind.STOPPED


def test_end_is_terminal():
    end = TestState.end(7)
    assert end.step(NullData(), RunConfig()) == end
    assert end.is_finished()
    assert not TestState.wait_state().is_finished()


def test_tracer_action_data():
    assert TracerAction(ActionKind.CONTINUE, 42).get_data() == 42
    assert TracerAction(ActionKind.DETACH, 9).get_data() == 9
    assert TracerAction(ActionKind.NOTHING, 5).get_data() is None


def test_line_analysis_should_ignore():
    analysis = LineAnalysis(ignore={3}, cover={1, 2})
    assert analysis.should_ignore(3)
    assert not analysis.should_ignore(1)


def test_state_data_is_abstract():
    with pytest.raises(TypeError):
        StateData()


def test_config_default_target_dir(tmp_path):
    config = RunConfig(root=tmp_path)
    assert config.target_dir == tmp_path / "target"