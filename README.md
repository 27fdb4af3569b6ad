# covtrace

Building blocks for collecting line coverage from test executables: a map of
coverage traces keyed by source file, and the state machines that drive a test
process while its coverage is gathered.

## Modules

- `covtrace.traces`: coverage records. A `Trace` sits on one source line and
  holds a set of code addresses and a statistic. A `LineStat` counts hits. A
  `BranchStat` records whether a branch went both ways. A `ConditionStat` holds
  one `LogicState` per subcondition. `TraceMap` holds traces for each file and
  can add, merge and deduplicate them. It can find traces by address and
  count hits. It reports how many points can be covered and how many were
  covered, either for everything or for the files under a path.
  `coverage_percentage` returns a value from 0.0 to 1.0, or NaN when nothing
  is coverable.
- `covtrace.statemachine`: the test lifecycle. A `TestState` moves through the
  start, initialise, waiting, stopped and end states as `step` is called with a
  `StateData` handler and a `RunConfig`. If the start or waiting state lasts
  longer than `RunConfig.test_timeout` seconds, `step` raises
  `TestRuntimeError`. Before that, a waiting state first gives the handler's
  `last_wait_attempt` a chance to finish. Errors derive from `RunError`.
  `LineAnalysis` lists the lines of a file to ignore and the lines to cover.
- `covtrace.instrumented`: `LlvmInstrumentedData` handles binaries that write
  their own coverage profiles. It waits for the `RunningProcess` to exit. It
  raises `TestFailedError` on a non-zero exit unless the process is expected
  to panic. It then collects the profile files that are new since launch and
  merges them through a `CoverageBackend`. From the mapped `FileCoverage` it
  either fills an empty trace map or updates the hit counts of an existing
  one.
- `covtrace.ptrace`: `WaitStatus`, `PtraceEvent`, `ProcessInfo`,
  `TracedProcess`, the abstract `Breakpoint`, and `TracerBackend`.
  `TracerBackend` polls processes with `os.waitpid` and reads executables,
  thread ids and load offsets from `/proc`.
- `covtrace.linux`: `LinuxData` traces a test process with breakpoints. It
  follows threads, forks, vforks and execs, and counts breakpoint hits in the
  trace map of whichever process hit them.
- `covtrace.engine`: `create_state_machine` picks the machine for
  `RunConfig.engine`. With `TraceEngine.PTRACE` it builds a `LinuxData` for a
  pid. On systems other than Linux it raises `StateMachineError`. With any
  other engine it builds an `LlvmInstrumentedData` for a `RunningProcess`.

## Example

```python
from covtrace.traces import LineStat, Trace, TraceMap

traces = TraceMap()
traces.add_trace("src/lib.rs", Trace(line=4, address={0x10}, length=1))
traces.add_trace("src/lib.rs", Trace.new_stub(5))
traces.increment_hit(0x10)

print(traces.total_covered(), "/", traces.total_coverable())  # 1 / 2
print(traces.coverage_percentage())                           # 0.5
```

When maps are merged, the statistics of traces that share both a line and an
address are added together. Traces that are missing are copied over. `dedup`
then collapses traces on the same line into one:

```python
other = TraceMap()
other.add_trace("src/lib.rs", Trace(line=4, address={0x10}, length=1, stats=LineStat(2)))
traces.merge(other)
traces.dedup()
```

## Running a test under a state machine

```python
from covtrace.engine import create_state_machine

state, machine = create_state_machine(test, traces, analysis, config, backend)
while not state.is_finished():
    state = state.step(machine, config)
print(state.exit_code)
```

## What the package does not do

The package does not build or launch test executables. It does not read debug
information to produce a trace map, and it does not write coverage reports.
There is no command-line tool.

The tracing primitives themselves come from the caller. `TracerBackend`
leaves these abstract:

- attaching to children
- continuing, stepping and detaching
- reading event data and the instruction pointer
- placing breakpoints

`CoverageBackend` leaves these abstract:

- finding profile files
- merging them
- mapping them onto source files
- listing source files

A trace map for a newly executed binary is made only if `LinuxData` is given a
`tracemap_factory`.

## Tests

```
pip install -e ".[test]"
pytest
```