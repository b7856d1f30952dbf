"""Coverage aggregation: decoding, merging, normalizing and reporting runs."""

from .collect import collect_coverage
from .merge import CoverageMerger, merge_records
from .model import (
    AggregatedFileCoverage,
    CategoryCoverage,
    CoverageReport,
    CoverageSummary,
    FileCounts,
    RawRunRecord,
    RecordFormat,
    RunFailure,
    TestResult,
)
from .normalize import NormalizationConfig, NormalizationError, NormalizationMode, normalize, parse_modes
from .reader import FormatAdapter, RecordParseError, RunRecordReader, detect_format, parse_record
from .report import format_coverage, render_report, report_to_dict, summarize, write_json_report
from .structure import StructureIndex

__all__ = [
    "AggregatedFileCoverage",
    "CategoryCoverage",
    "CoverageMerger",
    "CoverageReport",
    "CoverageSummary",
    "FileCounts",
    "FormatAdapter",
    "NormalizationConfig",
    "NormalizationError",
    "NormalizationMode",
    "RawRunRecord",
    "RecordFormat",
    "RecordParseError",
    "RunFailure",
    "RunRecordReader",
    "StructureIndex",
    "TestResult",
    "collect_coverage",
    "detect_format",
    "format_coverage",
    "merge_records",
    "normalize",
    "parse_modes",
    "parse_record",
    "render_report",
    "report_to_dict",
    "summarize",
    "write_json_report",
]
