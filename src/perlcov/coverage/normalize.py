"""Re-bucketing of aggregated coverage to match other tools' conventions.

Absorbing a category adds its covered/total pair into another category and
zeroes the source, so totals are preserved and a second application of the
same modes changes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .model import CategoryCoverage, CoverageReport
from .report import summarize

__all__ = [
    "NormalizationConfig",
    "NormalizationError",
    "NormalizationMode",
    "normalize",
    "parse_modes",
]


class NormalizationError(ValueError):
    """Raised for unknown normalization mode names."""


class NormalizationMode(str, Enum):
    """Supported category-merging transformations."""

    CONDITIONS_TO_BRANCHES = "conditions-to-branches"
    SUBROUTINES_TO_STATEMENTS = "subroutines-to-statements"
    SONARQUBE = "sonarqube"
    SIMPLE = "simple"


@dataclass(frozen=True, slots=True)
class NormalizationConfig:
    """Ordered, de-duplicated set of normalization modes."""

    modes: tuple[NormalizationMode, ...] = ()

    @classmethod
    def from_modes(cls, modes: Iterable[NormalizationMode | str]) -> "NormalizationConfig":
        ordered: list[NormalizationMode] = []
        for mode in modes:
            value = mode if isinstance(mode, NormalizationMode) else _lookup(mode)
            if value not in ordered:
                ordered.append(value)
        return cls(modes=tuple(ordered))

    @property
    def is_empty(self) -> bool:
        return not self.modes

    @property
    def sonarqube(self) -> bool:
        return NormalizationMode.SONARQUBE in self.modes

    @property
    def conditions_to_branches(self) -> bool:
        return self.sonarqube or NormalizationMode.CONDITIONS_TO_BRANCHES in self.modes

    @property
    def subroutines_to_statements(self) -> bool:
        return NormalizationMode.SUBROUTINES_TO_STATEMENTS in self.modes

    @property
    def simple(self) -> bool:
        return NormalizationMode.SIMPLE in self.modes

    def describe(self) -> str:
        return ",".join(mode.value for mode in self.modes)


def _lookup(name: str) -> NormalizationMode:
    try:
        return NormalizationMode(name)
    except ValueError:
        valid = ", ".join(mode.value for mode in NormalizationMode)
        raise NormalizationError(f"unknown normalization mode {name!r} (valid modes: {valid})") from None


def parse_modes(value: str | None) -> NormalizationConfig:
    """Parse a comma-separated mode list such as ``"sonarqube, simple"``."""

    if not value:
        return NormalizationConfig()
    names = [part.strip() for part in value.split(",")]
    return NormalizationConfig.from_modes(name for name in names if name)


def normalize(report: CoverageReport, config: NormalizationConfig | None) -> CoverageReport:
    """Apply ``config`` to ``report`` in place and return it."""

    if config is None or config.is_empty:
        return report

    for coverage in report.files.values():
        if config.sonarqube and coverage.combined is None and not report.summary.conditions_absorbed:
            # Derived from the totals before conditions are folded into branches.
            coverage.combined = CategoryCoverage(
                covered=coverage.conditions.covered + coverage.statements.covered,
                total=coverage.conditions.total + coverage.statements.total,
            )
        if config.conditions_to_branches:
            coverage.branches.absorb(coverage.conditions)
            coverage.conditions.clear()
        if config.subroutines_to_statements:
            coverage.statements.absorb(coverage.subroutines)
            coverage.subroutines.clear()
        if config.simple:
            coverage.branches.clear()
            coverage.conditions.clear()
            coverage.subroutines.clear()
            coverage.combined = None

    flags = report.summary
    summary = summarize(report.files.values())
    summary.conditions_absorbed = flags.conditions_absorbed or config.conditions_to_branches
    summary.subroutines_absorbed = flags.subroutines_absorbed or config.subroutines_to_statements
    summary.simple = flags.simple or config.simple
    summary.sonarqube = (flags.sonarqube or config.sonarqube) and not summary.simple
    report.summary = summary
    return report
