from __future__ import annotations

import json
import stat
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from perlcov import __version__
from perlcov.cli import app

from conftest import PerlProject, write_run

FAKE_COVER = textwrap.dedent(
    """\
    #!/bin/sh
    if [ "$2" = "-write" ]; then
      mkdir -p "$3"
      exit 0
    fi
    mkdir -p "$5"
    echo "<html></html>" > "$5/coverage.html"
    """
)


def _invoke(project: PerlProject, *args: str):
    runner = CliRunner()
    return runner.invoke(
        app,
        ["run", "--perl-path", str(project.perl_path), *args],
        catch_exceptions=False,
    )


def test_run_merges_coverage_from_parallel_tests(perl_project: PerlProject, monkeypatch: pytest.MonkeyPatch) -> None:
    perl_project.add_module("App::Utils")
    perl_project.add_test("App-Utils.t", counts={"lib/App/Utils.pm": {"statement": [1, 0], "branch": [[1, 0]]}})
    perl_project.add_test(
        "App-Utils_edge.t",
        counts={"lib/App/Utils.pm": {"statement": [0, 1], "branch": [[0, 3]]}},
    )
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project, "-j", "2", "--json-report", "coverage.json")

    assert result.exit_code == 0, result.output
    assert "Using Devel::Cover version 1.40" in result.output
    assert "Found 2 test files" in result.output
    assert "[PASS] t/App-Utils.t" in result.output
    assert "Tests: 2 passed, 0 failed, 2 total" in result.output
    assert "Coverage: 100.0% statement, 100.0% branch" in result.output
    assert not (perl_project.root / "cover_db_0").exists()
    assert not (perl_project.root / "cover_db_1").exists()

    data = json.loads((perl_project.root / "coverage.json").read_text(encoding="utf-8"))
    assert data["files"]["lib/App/Utils.pm"]["statement"]["covered"] == 2


def test_run_keeps_runs_and_normalizes(perl_project: PerlProject, monkeypatch: pytest.MonkeyPatch) -> None:
    perl_project.add_test(
        "basic.t",
        counts={"lib/App/Utils.pm": {"statement": [1, 0], "condition": [[1, 0]], "subroutine": [1]}},
    )
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project, "--keep-runs", "--normalize", "sonarqube", "--verbose")

    assert result.exit_code == 0, result.output
    assert (perl_project.root / "cover_db_0" / "runs" / "1" / "cover.14").is_file()
    assert "Normalization: sonarqube" in result.output
    header = next(line for line in result.output.splitlines() if line.startswith("File"))
    assert "Cond" not in header
    assert "Combined" in header
    assert "Uncovered lines: [2]" in result.output


def test_run_reruns_failed_tests_without_coverage(
    perl_project: PerlProject,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    perl_project.add_test("good.t")
    perl_project.add_test("bad.t", tap="1..1\nnot ok 1 - nope\n")
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project)

    assert result.exit_code == 1
    assert "[FAIL] t/bad.t" in result.output
    assert "Rerunning failed tests without Devel::Cover" in result.output
    assert "t/bad.t: still FAILED" in result.output
    assert "Tests: 1 passed, 1 failed, 2 total" in result.output


def test_run_without_rerun(perl_project: PerlProject, monkeypatch: pytest.MonkeyPatch) -> None:
    perl_project.add_test("bad.t", exit_code=255)
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project, "--no-rerun-failed")

    assert result.exit_code == 1
    assert "Rerunning" not in result.output


def test_invalid_normalize_fails_before_running_tests(
    perl_project: PerlProject,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    perl_project.add_test("basic.t")
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project, "--normalize", "branches-to-nowhere")

    assert result.exit_code == 1
    assert "unknown normalization mode" in result.output
    assert "Found" not in result.output
    assert not (perl_project.root / "cover_db_0").exists()


def test_run_fails_when_no_tests_exist(perl_project: PerlProject, monkeypatch: pytest.MonkeyPatch) -> None:
    (perl_project.root / "t").mkdir()
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project)

    assert result.exit_code == 1
    assert "No test files found" in result.output


def test_run_generates_html_with_cover(perl_project: PerlProject, monkeypatch: pytest.MonkeyPatch) -> None:
    cover = perl_project.perl_path.parent / "cover"
    cover.write_text(FAKE_COVER, encoding="utf-8")
    cover.chmod(cover.stat().st_mode | stat.S_IXUSR)
    perl_project.add_test("basic.t", counts={"lib/A.pm": {"statement": [1]}})
    monkeypatch.chdir(perl_project.root)

    result = _invoke(perl_project, "--html", "-o", "reports")

    assert result.exit_code == 0, result.output
    assert (perl_project.root / "reports" / "cover_db" / "coverage.html").is_file()


def test_report_command_merges_existing_runs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    first = write_run(tmp_path / "cover_db_0", {"lib/A.pm": {"statement": [1, 0], "condition": [[1, 0]]}})
    second = write_run(tmp_path / "cover_db_1", {"lib/A.pm": {"statement": [0, 1], "condition": [[0, 1]]}})
    monkeypatch.chdir(tmp_path)
    target = tmp_path / "out" / "report.json"

    result = CliRunner().invoke(
        app,
        [
            "report",
            str(first.parents[2]),
            str(second.parents[2]),
            "--normalize",
            "conditions-to-branches",
            "--json-report",
            str(target),
        ],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "lib/A.pm" in result.output
    assert "Normalization: conditions-to-branches" in result.output
    data = json.loads(target.read_text(encoding="utf-8"))
    assert data["summary"]["statement"] == 100.0
    assert data["summary"]["branch"] == 100.0
    assert data["summary"]["conditions_absorbed"] is True


def test_report_command_rejects_missing_location(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(app, ["report", str(tmp_path / "nope")])

    assert result.exit_code == 1
    assert "Coverage directory not found" in result.output


def test_version_command() -> None:
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"perlcov version {__version__}" in result.output
