"""Bounded-concurrency execution of Perl test files.

Every instrumented test writes to its own database directory
(``<cover_dir>_<index>``). Devel::Cover databases are not safe for concurrent
writers, so the per-index location is what keeps parallel runs from
corrupting or dropping each other's counters. Results are stored at their
input index, which keeps the returned order deterministic regardless of
completion order.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence

import logging
import shutil
import subprocess
import threading
import time

from perlcov.coverage.model import TestResult
from perlcov.tools.devel_cover import DevelCover, build_cover_options, build_test_command

from .scope import resolve_scope
from .tap import contains_tap_failure

__all__ = [
    "ProgressUpdate",
    "TestExecutor",
    "isolated_location",
    "remove_locations",
    "remove_stale_locations",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_PROGRESS_EVERY = 10


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Snapshot of run progress handed to the progress callback."""

    completed: int
    total: int
    passed: int

    @property
    def failed(self) -> int:
        return self.completed - self.passed

    def render(self) -> str:
        return (
            f"Progress: {self.completed}/{self.total} tests completed "
            f"({self.passed} passed, {self.failed} failed)"
        )


ProgressCallback = Callable[[ProgressUpdate], None]
OutputCallback = Callable[[TestResult], None]


def isolated_location(cover_dir: Path, index: int) -> Path:
    """Return the database directory reserved for test ``index``."""

    return cover_dir.with_name(f"{cover_dir.name}_{index}")


def remove_stale_locations(cover_dir: Path, count: int) -> None:
    """Delete ``cover_dir`` and leftovers from a previous run of ``count`` tests."""

    if cover_dir.exists():
        shutil.rmtree(cover_dir)
    for index in range(count):
        shutil.rmtree(isolated_location(cover_dir, index), ignore_errors=True)


def remove_locations(locations: Sequence[Path]) -> None:
    for location in locations:
        shutil.rmtree(location, ignore_errors=True)


def _decode(payload: bytes | str | None) -> str:
    if not payload:
        return ""
    if isinstance(payload, str):
        return payload
    return payload.decode("utf-8", errors="replace")


class TestExecutor:
    """Runs test files on a fixed-size worker pool."""

    __test__ = False

    def __init__(
        self,
        toolchain: DevelCover,
        *,
        cover_dir: Path | str = "cover_db",
        jobs: int = 1,
        include_paths: Sequence[str | Path] = (),
        source_dirs: Sequence[str | Path] = ("lib",),
        select: bool = True,
        json_output: bool = False,
        timeout: float | None = None,
        progress: ProgressCallback | None = None,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
        on_output: OutputCallback | None = None,
    ) -> None:
        if jobs < 1:
            raise ValueError("jobs must be at least 1")
        self.toolchain = toolchain
        self.cwd = toolchain.cwd
        cover_path = Path(cover_dir)
        self.cover_dir = cover_path if cover_path.is_absolute() else self.cwd / cover_path
        self.jobs = jobs
        self.include_paths = tuple(include_paths)
        self.source_dirs = tuple(source_dirs)
        self.select = select
        self.json_output = json_output
        self.timeout = timeout
        self.progress = progress
        self.progress_every = max(1, progress_every)
        self.on_output = on_output

    # ------------------------------------------------------------ public API
    def run_with_coverage(self, test_files: Sequence[str]) -> List[TestResult]:
        """Run every file once under Devel::Cover, each in its own database."""

        return self._run_all(test_files, instrument=True)

    def run_without_coverage(self, test_files: Sequence[str]) -> List[TestResult]:
        """Run ``test_files`` plainly, used to triage instrumented failures."""

        return self._run_all(test_files, instrument=False)

    def command_for(self, test_file: str, cover_dir: Path | None) -> tuple[str, ...]:
        cover_options = None
        if cover_dir is not None:
            scope = None
            if self.select:
                scope = resolve_scope(test_file, self.cwd, self.source_dirs)
                if scope is not None:
                    LOGGER.debug("[select] %s -> %s", test_file, scope.module)
            cover_options = build_cover_options(
                cover_dir,
                cwd=self.cwd,
                source_dirs=self.source_dirs,
                scope=scope,
            )
        return build_test_command(
            self.toolchain.perl_path,
            test_file,
            cwd=self.cwd,
            include_paths=self.include_paths,
            cover_options=cover_options,
        )

    def run_single(self, test_file: str, cover_dir: Path | None = None) -> TestResult:
        """Execute one test file and classify its outcome."""

        command = self.command_for(test_file, cover_dir)
        env = self.toolchain.environment(json_output=self.json_output and cover_dir is not None)
        start = time.monotonic()
        try:
            process = subprocess.run(
                command,
                cwd=self.cwd,
                env=env,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            duration = time.monotonic() - start
            stdout = _decode(error.stdout)
            LOGGER.warning("%s timed out after %.1fs", test_file, duration)
            return TestResult(
                file=test_file,
                passed=False,
                output=stdout,
                error=f"Timed out after {self.timeout}s\n{_decode(error.stderr)}".rstrip(),
                duration=duration,
                cover_dir=cover_dir,
                exit_code=None,
                timed_out=True,
            )
        except OSError as error:
            return TestResult(
                file=test_file,
                passed=False,
                error=f"Unable to execute {command[0]}: {error}",
                duration=time.monotonic() - start,
                cover_dir=cover_dir,
            )

        duration = time.monotonic() - start
        stdout = _decode(process.stdout)
        stderr = _decode(process.stderr)

        if process.returncode != 0:
            passed = False
            error_text = stderr or stdout
        else:
            passed = not contains_tap_failure(stdout)
            error_text = "" if passed else stdout

        return TestResult(
            file=test_file,
            passed=passed,
            output=stdout,
            error=error_text,
            duration=duration,
            cover_dir=cover_dir,
            exit_code=process.returncode,
        )

    # ------------------------------------------------------------ internals
    def _run_all(self, test_files: Sequence[str], *, instrument: bool) -> List[TestResult]:
        total = len(test_files)
        results: List[TestResult | None] = [None] * total
        lock = threading.Lock()
        counters = {"completed": 0, "passed": 0}

        def work(index: int) -> None:
            location = isolated_location(self.cover_dir, index) if instrument else None
            result = self.run_single(test_files[index], location)
            results[index] = result
            with lock:
                if self.on_output is not None:
                    self.on_output(result)
                counters["completed"] += 1
                if result.passed:
                    counters["passed"] += 1
                completed = counters["completed"]
                if self.progress is not None and (completed % self.progress_every == 0 or completed == total):
                    self.progress(ProgressUpdate(completed=completed, total=total, passed=counters["passed"]))

        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            futures = [pool.submit(work, index) for index in range(total)]
            for future in futures:
                future.result()

        return [result for result in results if result is not None]
