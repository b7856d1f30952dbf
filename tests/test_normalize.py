from __future__ import annotations

import pytest

from perlcov.coverage.model import AggregatedFileCoverage, CategoryCoverage, CoverageReport
from perlcov.coverage.normalize import (
    NormalizationConfig,
    NormalizationError,
    NormalizationMode,
    normalize,
    parse_modes,
)
from perlcov.coverage.report import render_report, summarize


def _report(
    statements: tuple[int, int] = (10, 20),
    branches: tuple[int, int] = (5, 10),
    conditions: tuple[int, int] = (3, 6),
    subroutines: tuple[int, int] = (2, 4),
) -> CoverageReport:
    coverage = AggregatedFileCoverage(
        path="lib/App/Utils.pm",
        statements=CategoryCoverage(*statements),
        branches=CategoryCoverage(*branches),
        conditions=CategoryCoverage(*conditions),
        subroutines=CategoryCoverage(*subroutines),
    )
    files = {coverage.path: coverage}
    return CoverageReport(files=files, summary=summarize(files.values()))


def _file(report: CoverageReport) -> AggregatedFileCoverage:
    return report.files["lib/App/Utils.pm"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", ()),
        (None, ()),
        ("conditions-to-branches", (NormalizationMode.CONDITIONS_TO_BRANCHES,)),
        (
            " subroutines-to-statements , conditions-to-branches ",
            (NormalizationMode.SUBROUTINES_TO_STATEMENTS, NormalizationMode.CONDITIONS_TO_BRANCHES),
        ),
        ("sonarqube,,sonarqube", (NormalizationMode.SONARQUBE,)),
        ("simple", (NormalizationMode.SIMPLE,)),
    ],
)
def test_parse_modes(value: str | None, expected: tuple) -> None:
    assert parse_modes(value).modes == expected


def test_parse_modes_rejects_unknown_names() -> None:
    with pytest.raises(NormalizationError) as excinfo:
        parse_modes("sonarqube,bogus")

    assert "bogus" in str(excinfo.value)
    assert "conditions-to-branches" in str(excinfo.value)


def test_sonarqube_implies_conditions_to_branches() -> None:
    config = parse_modes("sonarqube")

    assert config.sonarqube
    assert config.conditions_to_branches
    assert not config.subroutines_to_statements
    assert config.describe() == "sonarqube"


def test_conditions_to_branches() -> None:
    report = normalize(_report(), parse_modes("conditions-to-branches"))

    coverage = _file(report)
    assert (coverage.branches.covered, coverage.branches.total) == (8, 16)
    assert (coverage.conditions.covered, coverage.conditions.total) == (0, 0)
    assert report.summary.conditions_absorbed
    assert report.summary.condition is None


def test_subroutines_to_statements() -> None:
    report = normalize(_report(subroutines=(4, 8)), parse_modes("subroutines-to-statements"))

    coverage = _file(report)
    assert (coverage.statements.covered, coverage.statements.total) == (14, 28)
    assert (coverage.subroutines.covered, coverage.subroutines.total) == (0, 0)
    assert report.summary.subroutines_absorbed


def test_simple_keeps_only_statements() -> None:
    report = normalize(_report(statements=(15, 30)), parse_modes("simple"))

    coverage = _file(report)
    assert (coverage.statements.covered, coverage.statements.total) == (15, 30)
    assert coverage.branches.total == 0
    assert coverage.conditions.total == 0
    assert coverage.subroutines.total == 0
    assert report.summary.simple
    assert report.summary.statement == 50.0


def test_sonarqube_combined_uses_totals_before_absorption() -> None:
    report = normalize(_report(), parse_modes("sonarqube"))

    coverage = _file(report)
    assert (coverage.branches.covered, coverage.branches.total) == (8, 16)
    assert coverage.conditions.total == 0
    assert coverage.combined == CategoryCoverage(covered=13, total=26)
    assert report.summary.sonarqube
    assert report.summary.combined == pytest.approx(50.0)


def test_combined_modes() -> None:
    report = normalize(_report(), parse_modes("conditions-to-branches,subroutines-to-statements"))

    coverage = _file(report)
    assert coverage.branches.total == 16
    assert coverage.statements.total == 24
    assert coverage.conditions.total == 0
    assert coverage.subroutines.total == 0
    assert report.summary.conditions_absorbed
    assert report.summary.subroutines_absorbed


@pytest.mark.parametrize("config", [None, NormalizationConfig()])
def test_no_modes_leave_report_unchanged(config: NormalizationConfig | None) -> None:
    report = normalize(_report(), config)

    coverage = _file(report)
    assert coverage.branches.total == 10
    assert coverage.conditions.total == 6
    assert not report.summary.conditions_absorbed


@pytest.mark.parametrize(
    "modes",
    [
        "conditions-to-branches",
        "subroutines-to-statements",
        "sonarqube",
        "simple",
        "sonarqube,subroutines-to-statements",
    ],
)
def test_normalization_is_idempotent(modes: str) -> None:
    config = parse_modes(modes)
    once = normalize(_report(), config)
    first_pass = render_report(once)

    twice = normalize(once, config)

    assert render_report(twice) == first_pass
    assert _file(twice).combined == _file(once).combined


def test_normalization_preserves_instrumented_totals() -> None:
    report = normalize(_report(), parse_modes("conditions-to-branches,subroutines-to-statements"))

    coverage = _file(report)
    total = sum(pair.total for pair in coverage.categories().values())
    covered = sum(pair.covered for pair in coverage.categories().values())
    assert (covered, total) == (20, 40)


def test_simple_drops_combined_view() -> None:
    report = normalize(_report(), parse_modes("sonarqube,simple"))

    assert _file(report).combined is None
    assert report.summary.simple
    assert not report.summary.sonarqube
