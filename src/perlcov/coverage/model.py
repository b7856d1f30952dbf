"""Typed records flowing through the coverage aggregation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List

__all__ = [
    "AggregatedFileCoverage",
    "CategoryCoverage",
    "CoverageReport",
    "CoverageSummary",
    "FileCounts",
    "RawRunRecord",
    "RecordFormat",
    "RunFailure",
    "StructureMap",
    "TestResult",
]


class RecordFormat(str, Enum):
    """On-disk encodings a run database can use."""

    JSON = "json"
    NATIVE = "native"


@dataclass(frozen=True, slots=True)
class TestResult:
    """Outcome of running one test file, with or without instrumentation."""

    __test__ = False

    file: str
    passed: bool
    output: str = ""
    error: str = ""
    duration: float = 0.0
    cover_dir: Path | None = None
    exit_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class FileCounts:
    """Raw per-position counters recorded for one source file."""

    statement: List[int] = field(default_factory=list)
    branch: List[List[int]] = field(default_factory=list)
    condition: List[List[int]] = field(default_factory=list)
    subroutine: List[int] = field(default_factory=list)

    def copy(self) -> "FileCounts":
        return FileCounts(
            statement=list(self.statement),
            branch=[list(pair) for pair in self.branch],
            condition=[list(slots) for slots in self.condition],
            subroutine=list(self.subroutine),
        )


RawRunRecord = Dict[str, FileCounts]
StructureMap = Dict[str, List[int]]


@dataclass(slots=True)
class CategoryCoverage:
    """Covered/total pair for a single coverage category."""

    covered: int = 0
    total: int = 0

    @property
    def percent(self) -> float | None:
        if self.total == 0:
            return None
        return self.covered / self.total * 100

    def absorb(self, other: "CategoryCoverage") -> None:
        self.covered += other.covered
        self.total += other.total

    def clear(self) -> None:
        self.covered = 0
        self.total = 0


@dataclass(slots=True)
class AggregatedFileCoverage:
    """Merged coverage for one source file across every run."""

    path: str
    statements: CategoryCoverage = field(default_factory=CategoryCoverage)
    branches: CategoryCoverage = field(default_factory=CategoryCoverage)
    conditions: CategoryCoverage = field(default_factory=CategoryCoverage)
    subroutines: CategoryCoverage = field(default_factory=CategoryCoverage)
    uncovered: List[int] = field(default_factory=list)
    combined: CategoryCoverage | None = None

    def categories(self) -> Dict[str, CategoryCoverage]:
        return {
            "statement": self.statements,
            "branch": self.branches,
            "condition": self.conditions,
            "subroutine": self.subroutines,
        }


@dataclass(slots=True)
class CoverageSummary:
    """Pooled percentages across all files plus normalization flags."""

    statement: float | None = None
    branch: float | None = None
    condition: float | None = None
    subroutine: float | None = None
    combined: float | None = None
    total_files: int = 0
    covered_files: int = 0
    conditions_absorbed: bool = False
    subroutines_absorbed: bool = False
    sonarqube: bool = False
    simple: bool = False


@dataclass(slots=True)
class RunFailure:
    """A run location whose contribution was dropped."""

    location: Path
    reason: str


@dataclass(slots=True)
class CoverageReport:
    """Aggregated coverage for an invocation."""

    files: Dict[str, AggregatedFileCoverage] = field(default_factory=dict)
    summary: CoverageSummary = field(default_factory=CoverageSummary)
    skipped_runs: List[RunFailure] = field(default_factory=list)
