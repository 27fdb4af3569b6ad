"""Coverage traces: per-line statistics mapped to source files."""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class LogicState:
    """Whether a logical condition has been seen true and/or false."""

    been_true: bool = False
    been_false: bool = False

    def __add__(self, other: LogicState) -> LogicState:
        if not isinstance(other, LogicState):
            return NotImplemented
        return LogicState(
            been_true=self.been_true or other.been_true,
            been_false=self.been_false or other.been_false,
        )


@dataclass(frozen=True)
class LineStat:
    """Line coverage: the number of times a line was hit."""

    hits: int = 0

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, LineStat):
            return LineStat(self.hits + other.hits)
        return self


@dataclass(frozen=True)
class BranchStat:
    """Branch coverage: whether a branch was taken both ways."""

    state: LogicState = field(default_factory=LogicState)

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, BranchStat):
            return BranchStat(self.state + other.state)
        return self


@dataclass(frozen=True)
class ConditionStat:
    """Condition coverage: one logic state per boolean subcondition."""

    states: tuple[LogicState, ...] = ()

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if not isinstance(other, (LineStat, BranchStat, ConditionStat)):
            return NotImplemented
        # Conditions are not combined; the left-hand side wins.
        return ConditionStat(tuple(self.states))


CoverageStat = Union[LineStat, BranchStat, ConditionStat]


@dataclass
class Trace:
    """An instrumentation point on a source line."""

    line: int
    address: set[int] = field(default_factory=set)
    length: int = 0
    stats: CoverageStat = field(default_factory=LineStat)

    @classmethod
    def new_stub(cls, line: int) -> Trace:
        """A trace with no addresses and zero hits."""
        return cls(line=line)

    def copy(self) -> Trace:
        return dataclasses.replace(self, address=set(self.address))


@dataclass(frozen=True, order=True)
class Location:
    """A source file and line."""

    file: Path
    line: int


def _coverable(trace: Trace) -> int:
    stats = trace.stats
    if isinstance(stats, BranchStat):
        return 2
    if isinstance(stats, ConditionStat):
        return 2 * len(stats.states)
    return 1


def _covered(trace: Trace) -> int:
    stats = trace.stats
    if isinstance(stats, BranchStat):
        return int(stats.state.been_true) + int(stats.state.been_false)
    if isinstance(stats, ConditionStat):
        return sum(int(s.been_true) + int(s.been_false) for s in stats.states)
    return int(stats.hits > 0)


def amount_coverable(traces: Iterable[Trace]) -> int:
    """Number of coverable points in the traces."""
    return sum(_coverable(t) for t in traces)


def amount_covered(traces: Iterable[Trace]) -> int:
    """Number of covered points in the traces."""
    return sum(_covered(t) for t in traces)


def coverage_percentage(traces: Iterable[Trace]) -> float:
    """Covered over coverable, from 0.0 to 1.0; NaN when nothing is coverable."""
    items = list(traces)
    covered = amount_covered(items)
    coverable = amount_coverable(items)
    if coverable == 0:
        return math.nan if covered == 0 else math.inf
    return covered / coverable


def _by_line(trace: Trace) -> int:
    return trace.line


class TraceMap:
    """All program traces keyed by source file."""

    def __init__(self) -> None:
        self._traces: dict[Path, list[Trace]] = {}
        self._functions: dict[Path, list[Any]] = {}

    def set_functions(self, functions: dict[PathLike, list[Any]]) -> None:
        self._functions = {Path(k): list(v) for k, v in functions.items()}

    def is_empty(self) -> bool:
        return not self._traces

    def __iter__(self) -> Iterator[tuple[Path, list[Trace]]]:
        for path in sorted(self._traces):
            yield path, self._traces[path]

    def merge(self, other: TraceMap) -> None:
        """Add missing records from ``other`` and sum stats of matching ones."""
        self._functions.update({k: list(v) for k, v in other._functions.items()})
        for path, values in other:
            existing = self._traces.get(path)
            if existing is None:
                self._traces[path] = [v.copy() for v in values]
                continue
            for v in values:
                match = next(
                    (t for t in existing if t.line == v.line and t.address == v.address),
                    None,
                )
                if match is not None:
                    match.stats = match.stats + v.stats
                else:
                    existing.append(v.copy())
                    existing.sort(key=_by_line)

    def dedup(self) -> None:
        """Collapse traces sharing a line into one, summing their stats.

        Addresses of the dropped duplicates are lost.
        """
        for path, values in self._traces.items():
            lines: dict[int, CoverageStat] = {}
            dirty: list[int] = []
            for v in values:
                if v.line in lines:
                    dirty.append(v.line)
                    lines[v.line] = lines[v.line] + v.stats
                else:
                    lines[v.line] = v.stats
            for line in dirty:
                kept: list[Trace] = []
                seen = False
                for t in values:
                    if t.line != line:
                        kept.append(t)
                    elif not seen:
                        seen = True
                        kept.append(t)
                values[:] = kept
                new_stat = lines.pop(line, None)
                if new_stat is not None:
                    first = next((t for t in values if t.line == line), None)
                    if first is not None:
                        first.stats = new_stat

    def add_trace(self, file: PathLike, trace: Trace) -> None:
        path = Path(file)
        existing = self._traces.get(path)
        if existing is None:
            self._traces[path] = [trace]
        else:
            existing.append(trace)
            existing.sort(key=_by_line)

    def add_file(self, file: PathLike) -> None:
        self._traces.setdefault(Path(file), [])

    def get_trace(self, address: int) -> Trace | None:
        """The first trace holding ``address``, or None."""
        return next((t for t in self.all_traces() if address in t.address), None)

    def increment_hit(self, address: int) -> None:
        for trace in self.all_traces():
            if address in trace.address and isinstance(trace.stats, LineStat):
                logger.debug("Incrementing hit count for trace")
                trace.stats = LineStat(trace.stats.hits + 1)

    def get_location(self, address: int) -> Location | None:
        """Location of the first trace whose 8-byte aligned address matches."""
        for path, values in self:
            for t in values:
                if any((a & ~0x7) == address for a in t.address):
                    return Location(file=path, line=t.line)
        return None

    def contains_location(self, file: PathLike, line: int) -> bool:
        return any(t.line == line for t in self._traces.get(Path(file), ()))

    def contains_file(self, file: PathLike) -> bool:
        return Path(file) in self._traces

    def get_child_traces(self, root: PathLike) -> Iterator[Trace]:
        """All traces in files at or below ``root``."""
        root_path = Path(root)
        for path, values in self:
            if path == root_path or root_path in path.parents:
                yield from values

    def get_functions(self, file: PathLike) -> Iterator[Any]:
        return iter(self._functions.get(Path(file), ()))

    def file_traces(self, file: PathLike) -> list[Trace] | None:
        """The mutable trace list for ``file``, or None if unknown."""
        return self._traces.get(Path(file))

    def all_traces(self) -> Iterator[Trace]:
        for _, values in self:
            yield from values

    def files(self) -> list[Path]:
        return sorted(self._traces)

    def coverable_in_path(self, path: PathLike) -> int:
        return amount_coverable(self.get_child_traces(path))

    def covered_in_path(self, path: PathLike) -> int:
        return amount_covered(self.get_child_traces(path))

    def total_coverable(self) -> int:
        return amount_coverable(self.all_traces())

    def total_covered(self) -> int:
        return amount_covered(self.all_traces())

    def coverage_percentage(self) -> float:
        return coverage_percentage(self.all_traces())