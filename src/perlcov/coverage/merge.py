"""Additive merging of raw per-run counters.

Runs finish in arbitrary order, so every operation here is positional
addition: merging is commutative and associative, and the merged value of a
group of runs is itself a :data:`RawRunRecord` that can be merged again.
Arrays of different lengths are zero-padded to the longest one.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from .model import AggregatedFileCoverage, CategoryCoverage, FileCounts, RawRunRecord
from .structure import StructureIndex

__all__ = ["CoverageMerger", "aggregate_file", "merge_records"]

LOGGER = logging.getLogger(__name__)


def _add_flat(target: List[int], source: Sequence[int]) -> None:
    if len(source) > len(target):
        target.extend([0] * (len(source) - len(target)))
    for index, value in enumerate(source):
        target[index] += value


def _add_nested(target: List[List[int]], source: Sequence[Sequence[int]]) -> None:
    if len(source) > len(target):
        target.extend([] for _ in range(len(source) - len(target)))
    for index, slots in enumerate(source):
        _add_flat(target[index], slots)


def _accumulate(target: FileCounts, source: FileCounts) -> None:
    _add_flat(target.statement, source.statement)
    _add_nested(target.branch, source.branch)
    _add_nested(target.condition, source.condition)
    _add_flat(target.subroutine, source.subroutine)


def merge_records(records: Iterable[RawRunRecord]) -> RawRunRecord:
    """Sum any number of run records into a new record."""

    merged: Dict[str, FileCounts] = {}
    for record in records:
        for path, counts in record.items():
            bucket = merged.get(path)
            if bucket is None:
                merged[path] = counts.copy()
            else:
                _accumulate(bucket, counts)
    return merged


def aggregate_file(path: str, counts: FileCounts, structure: StructureIndex | None = None) -> AggregatedFileCoverage:
    """Turn summed counters for ``path`` into covered/total pairs."""

    statements = CategoryCoverage(total=len(counts.statement))
    uncovered: set[int] = set()
    for position, hits in enumerate(counts.statement):
        if hits > 0:
            statements.covered += 1
        elif structure is not None:
            uncovered.add(structure.line_for(path, position))
        else:
            uncovered.add(position + 1)

    branches = CategoryCoverage()
    for pair in counts.branch:
        branches.total += 2
        true_hits = pair[0] if len(pair) > 0 else 0
        false_hits = pair[1] if len(pair) > 1 else 0
        if true_hits > 0:
            branches.covered += 1
        if false_hits > 0:
            branches.covered += 1

    conditions = CategoryCoverage()
    for slots in counts.condition:
        conditions.total += len(slots)
        conditions.covered += sum(1 for hits in slots if hits > 0)

    subroutines = CategoryCoverage(
        covered=sum(1 for hits in counts.subroutine if hits > 0),
        total=len(counts.subroutine),
    )

    return AggregatedFileCoverage(
        path=path,
        statements=statements,
        branches=branches,
        conditions=conditions,
        subroutines=subroutines,
        uncovered=sorted(uncovered),
    )


class CoverageMerger:
    """Accumulates run records and produces per-file aggregates.

    ``add`` is expected to be called from a single thread; parallel readers
    hand their records back to one reducing loop.
    """

    def __init__(self) -> None:
        self._counts: Dict[str, FileCounts] = {}
        self.runs_merged = 0

    def add(self, record: RawRunRecord) -> None:
        for path, counts in record.items():
            bucket = self._counts.get(path)
            if bucket is None:
                self._counts[path] = counts.copy()
            else:
                _accumulate(bucket, counts)
        self.runs_merged += 1

    def aggregate(self, structure: StructureIndex | None = None) -> Dict[str, AggregatedFileCoverage]:
        LOGGER.debug("Aggregating %d file(s) from %d run(s)", len(self._counts), self.runs_merged)
        return {
            path: aggregate_file(path, counts, structure)
            for path, counts in sorted(self._counts.items())
        }
