"""CLI commands for running Perl test suites under parallel coverage."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import typer

from . import __version__
from .config import ConfigError, PerlcovSettings, load_settings
from .coverage import CoverageReport, TestResult, collect_coverage, normalize, render_report, write_json_report
from .coverage.report import format_percent
from .discovery import DiscoveryError, discover_tests
from .runner import ProgressUpdate, TestExecutor, remove_locations, remove_stale_locations
from .tools import DevelCover, ToolchainError, resolve_perl_path

APP_HELP = "perlcov - fast parallel Perl test coverage built on Devel::Cover."
ERROR_PREVIEW_LINES = 5

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load(config: Optional[str], overrides: Dict[str, Any]) -> PerlcovSettings:
    try:
        return load_settings(Path(config) if config else None, overrides)
    except ConfigError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error


def _resolve(path: str | Path, base: Path) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else (base / candidate)


def _echo_progress(update: ProgressUpdate) -> None:
    typer.echo(update.render())


def _echo_output(result: TestResult) -> None:
    typer.echo(f"--- {result.file} ---")
    if result.output:
        typer.echo(result.output.rstrip())
    if result.error and result.error != result.output:
        typer.echo(result.error.rstrip(), err=True)


def _print_test_results(results: Sequence[TestResult]) -> None:
    typer.echo("\n--- Test Results ---")
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        suffix = " [timeout]" if result.timed_out else ""
        typer.echo(f"[{status}] {result.file} ({result.duration:.2f}s){suffix}")
        if result.passed or not result.error:
            continue
        lines = result.error.splitlines()
        for line in lines[:ERROR_PREVIEW_LINES]:
            typer.echo(f"      {line}")
        if len(lines) > ERROR_PREVIEW_LINES:
            typer.echo(f"      ... ({len(lines) - ERROR_PREVIEW_LINES} more lines)")


def _print_rerun_results(rerun: Sequence[TestResult]) -> None:
    typer.echo("\n--- Rerun Results (without Devel::Cover) ---")
    for result in rerun:
        if result.passed:
            typer.echo(f"[WARN] {result.file}: PASSED without Devel::Cover (coverage-related failure)")
        else:
            typer.echo(f"[FAIL] {result.file}: still FAILED (genuine test failure)")


def _emit_report(report: CoverageReport, settings: PerlcovSettings, output_dir: Path) -> None:
    typer.echo(render_report(report, verbose=settings.verbose))
    if report.skipped_runs:
        typer.echo(f"\nSkipped {len(report.skipped_runs)} coverage run(s) that could not be read.")
    if settings.json_report:
        target = _resolve(settings.json_report, output_dir)
        write_json_report(report, target)
        typer.echo(f"JSON report written to {target}")


def _generate_html(toolchain: DevelCover, cover_dir: Path, locations: Sequence[Path], output_dir: Path) -> None:
    typer.echo("\nWARNING: HTML report generation through 'cover' can be very slow.")
    merged = toolchain.merge_databases(cover_dir, locations)
    if not merged.ok:
        typer.echo(f"Failed to merge coverage databases: {merged.failure_detail()}", err=True)
        raise typer.Exit(code=1)
    html_dir = output_dir / cover_dir.name
    rendered = toolchain.generate_html(cover_dir, html_dir)
    if not rendered.ok:
        typer.echo(f"Failed to generate HTML report: {rendered.failure_detail()}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"HTML report generated: {html_dir / 'coverage.html'}")


@app.command()
def run(
    paths: Optional[List[str]] = typer.Argument(
        None,
        help="Test files or directories (default: t).",
    ),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Number of parallel test jobs."),
    include: Optional[List[str]] = typer.Option(
        None,
        "--include",
        "-I",
        help="Add a directory to @INC (repeatable).",
    ),
    source: Optional[List[str]] = typer.Option(
        None,
        "--source",
        help="Source directory to measure (repeatable, default: lib).",
    ),
    cover_dir: Optional[str] = typer.Option(None, "--cover-dir", help="Coverage database directory."),
    output_dir: Optional[str] = typer.Option(None, "--output-dir", "-o", help="Directory for reports."),
    normalize_modes: Optional[str] = typer.Option(
        None,
        "--normalize",
        help="Comma-separated modes: conditions-to-branches, subroutines-to-statements, sonarqube, simple.",
    ),
    json_merge: bool = typer.Option(
        False,
        "--json-merge",
        help="Write and merge coverage as JSON in-process (faster for large suites).",
    ),
    no_select: bool = typer.Option(False, "--no-select", help="Disable per-test module selection."),
    no_rerun_failed: bool = typer.Option(
        False,
        "--no-rerun-failed",
        help="Do not rerun failed tests without Devel::Cover.",
    ),
    perl_path: Optional[str] = typer.Option(
        None,
        "--perl-path",
        help="Path to perl (default: $PERL_PATH, then perl from PATH).",
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-test timeout in seconds."),
    html: bool = typer.Option(False, "--html", help="Generate an HTML report with cover (slow)."),
    keep_runs: bool = typer.Option(False, "--keep-runs", help="Keep per-test coverage databases."),
    show_output: bool = typer.Option(False, "--show-output", help="Print each test's output."),
    json_report: Optional[str] = typer.Option(None, "--json-report", help="Write the report as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a perlcov YAML config."),
) -> None:
    """Run tests in parallel under Devel::Cover and report merged coverage."""

    settings = _load(
        config,
        {
            "tests": paths,
            "jobs": jobs,
            "include": include,
            "source": source,
            "cover_dir": cover_dir,
            "output_dir": output_dir,
            "normalize": normalize_modes,
            "json_merge": True if json_merge else None,
            "select": False if no_select else None,
            "rerun_failed": False if no_rerun_failed else None,
            "perl_path": perl_path,
            "timeout": timeout,
            "html": True if html else None,
            "keep_runs": True if keep_runs else None,
            "show_output": True if show_output else None,
            "json_report": json_report,
            "verbose": True if verbose else None,
        },
    )
    _configure_logging(settings.verbose)
    normalization = settings.normalization()

    toolchain = DevelCover(resolve_perl_path(settings.perl_path))
    try:
        version = toolchain.check()
    except ToolchainError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Using Devel::Cover version {version}")

    try:
        test_files = discover_tests(settings.tests)
    except DiscoveryError as error:
        typer.echo(f"Failed to discover tests: {error}", err=True)
        raise typer.Exit(code=1) from error
    if not test_files:
        typer.echo("No test files found.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Found {len(test_files)} test files")

    cwd = toolchain.cwd
    cover_path = _resolve(settings.cover_dir, cwd)
    output_path = _resolve(settings.output_dir, cwd)
    remove_stale_locations(cover_path, len(test_files))

    executor = TestExecutor(
        toolchain,
        cover_dir=cover_path,
        jobs=settings.jobs,
        include_paths=settings.include,
        source_dirs=settings.source,
        select=settings.select,
        json_output=settings.json_merge,
        timeout=settings.timeout,
        progress=_echo_progress,
        on_output=_echo_output if settings.show_output else None,
    )
    results = executor.run_with_coverage(test_files)
    locations = [result.cover_dir for result in results if result.cover_dir is not None and result.cover_dir.exists()]

    if settings.verbose:
        typer.echo(f"Merging {len(locations)} coverage directories...")
    report = collect_coverage(
        locations,
        toolchain=toolchain,
        force_json=settings.json_merge,
        workers=settings.jobs,
    )

    _print_test_results(results)

    failed = [result.file for result in results if not result.passed]
    if failed and settings.rerun_failed:
        typer.echo("\n--- Rerunning failed tests without Devel::Cover ---")
        rerun = executor.run_without_coverage(failed)
        _print_rerun_results(rerun)
        failed = [result.file for result in rerun if not result.passed]

    typer.echo("\n--- Coverage Report ---")
    if not normalization.is_empty:
        typer.echo(f"Normalization: {normalization.describe()}")
    normalize(report, normalization)
    _emit_report(report, settings, output_path)

    if settings.html:
        _generate_html(toolchain, cover_path, locations, output_path)
    if not settings.keep_runs:
        remove_locations(locations)

    passed_count = len(results) - len(failed)
    typer.echo("\n=== Summary ===")
    typer.echo(f"Tests: {passed_count} passed, {len(failed)} failed, {len(results)} total")
    typer.echo(
        f"Coverage: {format_percent(report.summary.statement)} statement, "
        f"{format_percent(report.summary.branch)} branch"
    )

    if failed:
        typer.echo(f"{len(failed)} test(s) failed", err=True)
        raise typer.Exit(code=1)


@app.command()
def report(
    locations: List[Path] = typer.Argument(..., help="Per-test coverage database directories."),
    normalize_modes: Optional[str] = typer.Option(None, "--normalize", help="Comma-separated normalization modes."),
    json_merge: bool = typer.Option(False, "--json-merge", help="Convert native databases to JSON first."),
    perl_path: Optional[str] = typer.Option(None, "--perl-path", help="Path to perl for native databases."),
    json_report: Optional[str] = typer.Option(None, "--json-report", help="Write the report as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show uncovered lines."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a perlcov YAML config."),
) -> None:
    """Merge existing coverage databases without running any tests."""

    settings = _load(
        config,
        {
            "normalize": normalize_modes,
            "json_merge": True if json_merge else None,
            "perl_path": perl_path,
            "json_report": json_report,
            "verbose": True if verbose else None,
        },
    )
    _configure_logging(settings.verbose)
    normalization = settings.normalization()

    missing = [location for location in locations if not location.is_dir()]
    if missing:
        typer.echo(f"Coverage directory not found: {missing[0]}", err=True)
        raise typer.Exit(code=1)

    if not normalization.is_empty:
        typer.echo(f"Normalization: {normalization.describe()}")
    toolchain = DevelCover(resolve_perl_path(settings.perl_path))
    merged = collect_coverage(
        [location.resolve() for location in locations],
        toolchain=toolchain,
        force_json=settings.json_merge,
        normalization=normalization,
        workers=settings.jobs,
    )
    _emit_report(merged, settings, _resolve(settings.output_dir, toolchain.cwd))


@app.command()
def version() -> None:
    """Show version information."""

    typer.echo(f"perlcov version {__version__}")


if __name__ == "__main__":
    app()
