"""End-to-end aggregation of isolated run locations into one report."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from perlcov.tools.devel_cover import DevelCover

from .merge import CoverageMerger
from .model import CoverageReport
from .normalize import NormalizationConfig, normalize
from .reader import RunRecordReader
from .report import summarize

__all__ = ["collect_coverage"]

LOGGER = logging.getLogger(__name__)


def collect_coverage(
    locations: Sequence[Path],
    *,
    toolchain: DevelCover | None = None,
    force_json: bool = False,
    normalization: NormalizationConfig | None = None,
    workers: int | None = None,
) -> CoverageReport:
    """Read, merge and summarise every run stored in ``locations``.

    Runs that cannot be decoded are listed in ``skipped_runs``; the report is
    built from whatever remains.
    """

    reader = RunRecordReader(toolchain, force_json=force_json, workers=workers)
    outcome = reader.read(locations)

    merger = CoverageMerger()
    for record in outcome.records:
        merger.add(record)

    files = merger.aggregate(outcome.structure)
    report = CoverageReport(files=files, summary=summarize(files.values()), skipped_runs=outcome.failures)
    if outcome.failures:
        LOGGER.warning("%d coverage run(s) skipped while merging", len(outcome.failures))
    return normalize(report, normalization)
