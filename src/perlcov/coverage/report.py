"""Percentages, pooled summaries and text rendering of coverage reports."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List

import json

from .model import AggregatedFileCoverage, CategoryCoverage, CoverageReport, CoverageSummary

__all__ = [
    "format_coverage",
    "format_percent",
    "percent",
    "render_report",
    "report_to_dict",
    "summarize",
    "write_json_report",
]

PATH_WIDTH = 60
COLUMN_WIDTH = 10


def percent(covered: int, total: int) -> float | None:
    """Return ``covered / total`` as a percentage, ``None`` when nothing is instrumented."""

    if total == 0:
        return None
    return covered / total * 100


def format_percent(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1f}%"


def format_coverage(covered: int, total: int) -> str:
    return format_percent(percent(covered, total))


def _pooled(pairs: Iterable[CategoryCoverage]) -> float | None:
    covered = 0
    total = 0
    for pair in pairs:
        covered += pair.covered
        total += pair.total
    return percent(covered, total)


def summarize(files: Iterable[AggregatedFileCoverage]) -> CoverageSummary:
    """Pool covered/total sums across ``files``.

    The aggregate is the sum of covered over the sum of totals, matching the
    way ``cover`` computes its own Total row, not a mean of per-file figures.
    """

    entries = list(files)
    combined = [entry.combined for entry in entries if entry.combined is not None]
    return CoverageSummary(
        statement=_pooled(entry.statements for entry in entries),
        branch=_pooled(entry.branches for entry in entries),
        condition=_pooled(entry.conditions for entry in entries),
        subroutine=_pooled(entry.subroutines for entry in entries),
        combined=_pooled(combined) if combined else None,
        total_files=len(entries),
        covered_files=sum(1 for entry in entries if entry.statements.covered > 0),
    )


def _columns(summary: CoverageSummary) -> List[str]:
    if summary.simple:
        return ["statement"]
    columns = ["statement", "branch"]
    if not summary.conditions_absorbed:
        columns.append("condition")
    if not summary.subroutines_absorbed:
        columns.append("subroutine")
    if summary.sonarqube:
        columns.append("combined")
    return columns


_HEADERS = {
    "statement": "Stmt",
    "branch": "Branch",
    "condition": "Cond",
    "subroutine": "Sub",
    "combined": "Combined",
}


def _display_path(path: str) -> str:
    if len(path) > PATH_WIDTH - 2:
        return "..." + path[-(PATH_WIDTH - 5):]
    return path


def _file_cell(coverage: AggregatedFileCoverage, column: str) -> str:
    if column == "combined":
        pair = coverage.combined
        return format_coverage(pair.covered, pair.total) if pair is not None else "n/a"
    pair = coverage.categories()[column]
    return format_coverage(pair.covered, pair.total)


def render_report(report: CoverageReport, *, verbose: bool = False) -> str:
    """Render ``report`` as a fixed-width text table."""

    columns = _columns(report.summary)
    width = PATH_WIDTH + (COLUMN_WIDTH + 1) * len(columns)
    header = f"{'File':<{PATH_WIDTH}}" + "".join(f" {_HEADERS[column]:>{COLUMN_WIDTH}}" for column in columns)
    rule = "-" * width

    lines = ["", header, rule]
    for path in sorted(report.files):
        coverage = report.files[path]
        cells = "".join(f" {_file_cell(coverage, column):>{COLUMN_WIDTH}}" for column in columns)
        lines.append(f"{_display_path(path):<{PATH_WIDTH}}{cells}")
        if verbose and coverage.uncovered:
            lines.append(f"    Uncovered lines: {coverage.uncovered}")

    lines.append(rule)
    totals = "".join(
        f" {format_percent(getattr(report.summary, column)):>{COLUMN_WIDTH}}" for column in columns
    )
    lines.append(f"{'Total':<{PATH_WIDTH}}{totals}")
    return "\n".join(lines)


def _pair_to_dict(pair: CategoryCoverage) -> Dict[str, Any]:
    return {"covered": pair.covered, "total": pair.total, "percent": pair.percent}


def report_to_dict(report: CoverageReport) -> Dict[str, Any]:
    """Serialise to a JSON-friendly mapping."""

    files: Dict[str, Any] = {}
    for path in sorted(report.files):
        coverage = report.files[path]
        entry: Dict[str, Any] = {
            name: _pair_to_dict(pair) for name, pair in coverage.categories().items()
        }
        entry["uncovered"] = list(coverage.uncovered)
        if coverage.combined is not None:
            entry["combined"] = _pair_to_dict(coverage.combined)
        files[path] = entry

    summary = report.summary
    return {
        "files": files,
        "summary": {
            "statement": summary.statement,
            "branch": summary.branch,
            "condition": summary.condition,
            "subroutine": summary.subroutine,
            "combined": summary.combined,
            "total_files": summary.total_files,
            "covered_files": summary.covered_files,
            "conditions_absorbed": summary.conditions_absorbed,
            "subroutines_absorbed": summary.subroutines_absorbed,
            "sonarqube": summary.sonarqube,
            "simple": summary.simple,
        },
        "skipped_runs": [
            {"location": failure.location.as_posix(), "reason": failure.reason}
            for failure in report.skipped_runs
        ],
    }


def write_json_report(report: CoverageReport, path: Path) -> None:
    """Write ``report`` to ``path`` as JSON."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(report_to_dict(report), handle, indent=2, sort_keys=True)
