"""Format detection and decoding of per-run coverage databases.

A run location holds one or more data files (``runs/<id>/cover.<n>`` in a
Devel::Cover database, or ``cover.<n>`` at the top level) plus optional
``structure/`` files. A data file is JSON exactly when its first byte is
``{``; anything else is one of Devel::Cover's native encodings (Sereal or
Storable) and needs the toolchain to decode.

JSON locations are parsed in-process; all native locations are handed to the
toolchain in a single batch. A location that cannot be decoded is dropped
and reported, the rest are still merged.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import json
import logging

from perlcov.tools.devel_cover import DevelCover, ToolchainError

from .merge import merge_records
from .model import FileCounts, RawRunRecord, RecordFormat, RunFailure, StructureMap
from .structure import STRUCTURE_DIRNAME, StructureIndex

__all__ = [
    "AdaptedLocations",
    "DecodeBatch",
    "Decoder",
    "FormatAdapter",
    "JsonDecoder",
    "NativeDecoder",
    "ReadOutcome",
    "RecordParseError",
    "RunRecordReader",
    "decoder_for",
    "detect_format",
    "find_data_files",
    "find_structure_files",
    "parse_record",
]

LOGGER = logging.getLogger(__name__)

_TEMP_SUFFIX = ".json-tmp"


class RecordParseError(ValueError):
    """Raised when a run record does not have the canonical shape."""


# ---------------------------------------------------------------- discovery
def find_data_files(location: Path) -> List[Path]:
    """Return the coverage data files stored in a run location."""

    candidates = [*sorted(location.glob("runs/*/cover.*")), *sorted(location.glob("cover.*"))]
    return [path for path in candidates if path.is_file() and not path.name.endswith(_TEMP_SUFFIX)]


def find_structure_files(location: Path) -> List[Path]:
    directory = location / STRUCTURE_DIRNAME
    if not directory.is_dir():
        return []
    return [path for path in sorted(directory.iterdir()) if path.is_file()]


def detect_format(path: Path) -> RecordFormat:
    """Classify ``path`` by its first byte."""

    with path.open("rb") as handle:
        head = handle.read(1)
    return RecordFormat.JSON if head == b"{" else RecordFormat.NATIVE


# ------------------------------------------------------------------ parsing
def _coerce_count(value: Any, where: str) -> int:
    if isinstance(value, list):
        value = value[0] if value else 0
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RecordParseError(f"{where}: expected a non-negative integer, got {value!r}")
    return value


def _coerce_flat(raw: Any, where: str) -> List[int]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise RecordParseError(f"{where}: expected an array")
    return [_coerce_count(value, f"{where}[{index}]") for index, value in enumerate(raw)]


def _coerce_nested(raw: Any, where: str) -> List[List[int]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise RecordParseError(f"{where}: expected an array of arrays")
    nested: List[List[int]] = []
    for index, entry in enumerate(raw):
        if entry is None:
            nested.append([])
            continue
        if not isinstance(entry, list):
            raise RecordParseError(f"{where}[{index}]: expected an array")
        nested.append([_coerce_count(value, f"{where}[{index}]") for value in entry])
    return nested


def _parse_file_counts(raw: Any, where: str) -> FileCounts:
    if not isinstance(raw, Mapping):
        raise RecordParseError(f"{where}: expected an object")
    return FileCounts(
        statement=_coerce_flat(raw.get("statement"), f"{where}.statement"),
        branch=_coerce_nested(raw.get("branch"), f"{where}.branch"),
        condition=_coerce_nested(raw.get("condition"), f"{where}.condition"),
        subroutine=_coerce_flat(raw.get("subroutine"), f"{where}.subroutine"),
    )


def parse_record(payload: Any) -> RawRunRecord:
    """Convert a decoded ``{runs: {<id>: {count: ...}}}`` document into counters.

    Counts of every run id inside the document are summed.
    """

    if not isinstance(payload, Mapping):
        raise RecordParseError("run record must be an object")
    runs = payload.get("runs")
    if not isinstance(runs, Mapping):
        raise RecordParseError("run record has no 'runs' object")

    records: List[RawRunRecord] = []
    for run_id, run in runs.items():
        if not isinstance(run, Mapping):
            raise RecordParseError(f"runs.{run_id}: expected an object")
        counts = run.get("count")
        if counts is None:
            continue
        if not isinstance(counts, Mapping):
            raise RecordParseError(f"runs.{run_id}.count: expected an object")
        records.append(
            {
                str(path): _parse_file_counts(raw, f"runs.{run_id}.count.{path}")
                for path, raw in counts.items()
            }
        )
    return merge_records(records)


def _parse_structure(raw: Any) -> StructureMap:
    if not isinstance(raw, Mapping):
        return {}
    mapping: StructureMap = {}
    for path, lines in raw.items():
        if isinstance(lines, list) and all(isinstance(line, int) and not isinstance(line, bool) for line in lines):
            mapping[str(path)] = list(lines)
    return mapping


# ----------------------------------------------------------------- decoders
@dataclass(slots=True)
class DecodeBatch:
    """Records decoded from a group of locations."""

    records: List[RawRunRecord] = field(default_factory=list)
    structure: StructureMap = field(default_factory=dict)
    failures: List[RunFailure] = field(default_factory=list)


class Decoder(Protocol):
    """Turns run locations of one encoding into raw records."""

    format: RecordFormat

    def decode(self, locations: Sequence[Path]) -> DecodeBatch:
        ...


class JsonDecoder:
    """In-process decoder for JSON-encoded run databases."""

    format = RecordFormat.JSON

    def __init__(self, *, workers: int | None = None) -> None:
        self.workers = workers

    def decode_location(self, location: Path) -> RawRunRecord:
        data_files = find_data_files(location)
        if not data_files:
            raise RecordParseError(f"no coverage data file in {location}")
        records: List[RawRunRecord] = []
        for path in data_files:
            try:
                payload = json.loads(path.read_bytes().decode("utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
                raise RecordParseError(f"{path}: {error}") from error
            try:
                records.append(parse_record(payload))
            except RecordParseError as error:
                raise RecordParseError(f"{path}: {error}") from error
        return merge_records(records)

    def decode(self, locations: Sequence[Path]) -> DecodeBatch:
        batch = DecodeBatch()
        if not locations:
            return batch
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self.decode_location, location): location for location in locations}
            for future in as_completed(futures):
                location = futures[future]
                try:
                    batch.records.append(future.result())
                except RecordParseError as error:
                    LOGGER.warning("Skipping coverage run %s: %s", location, error)
                    batch.failures.append(RunFailure(location=location, reason=str(error)))
        return batch


class NativeDecoder:
    """Batch decoder that lets Devel::Cover read its own encodings."""

    format = RecordFormat.NATIVE

    def __init__(self, toolchain: DevelCover | None) -> None:
        self.toolchain = toolchain

    def decode(self, locations: Sequence[Path]) -> DecodeBatch:
        batch = DecodeBatch()
        if not locations:
            return batch
        if self.toolchain is None:
            for location in locations:
                batch.failures.append(RunFailure(location=location, reason="native format requires perl"))
            LOGGER.warning("Skipping %d native coverage run(s): no perl toolchain available", len(locations))
            return batch

        groups: List[List[Path]] = []
        structure_files: List[Path] = []
        owners: Dict[Path, Path] = {}
        for location in locations:
            data_files = find_data_files(location)
            for path in data_files:
                owners[path] = location
            groups.append(data_files)
            structure_files.extend(find_structure_files(location))

        try:
            payload = self.toolchain.read_native(groups, structure_files)
        except ToolchainError as error:
            LOGGER.warning("Skipping %d native coverage run(s): %s", len(locations), error)
            batch.failures.extend(RunFailure(location=location, reason=str(error)) for location in locations)
            return batch

        failed_locations = set()
        for entry in payload.get("errors") or []:
            owner = owners.get(Path(str(entry)))
            if owner is not None and owner not in failed_locations:
                failed_locations.add(owner)
                LOGGER.warning("Devel::Cover could not decode %s", entry)
                batch.failures.append(RunFailure(location=owner, reason=f"unable to decode {entry}"))

        runs = payload.get("runs")
        if not isinstance(runs, Mapping):
            runs = {}
        # A location with any undecodable data file contributes nothing.
        for index, location in enumerate(locations, start=1):
            if location in failed_locations:
                continue
            run_id = str(index)
            run = runs.get(run_id)
            if run is None:
                batch.failures.append(RunFailure(location=location, reason="no counts returned by Devel::Cover"))
                continue
            try:
                batch.records.append(parse_record({"runs": {run_id: run}}))
            except RecordParseError as error:
                LOGGER.warning("Skipping coverage run %s: %s", location, error)
                batch.failures.append(RunFailure(location=location, reason=str(error)))
        batch.structure = _parse_structure(payload.get("structure"))
        return batch


def decoder_for(record_format: RecordFormat, toolchain: DevelCover | None = None, *, workers: int | None = None) -> Decoder:
    if record_format is RecordFormat.JSON:
        return JsonDecoder(workers=workers)
    return NativeDecoder(toolchain)


# ------------------------------------------------------------------ adapter
@dataclass(slots=True)
class AdaptedLocations:
    """Run locations grouped by the decoder that should read them."""

    by_format: Dict[RecordFormat, List[Path]] = field(
        default_factory=lambda: {RecordFormat.JSON: [], RecordFormat.NATIVE: []}
    )
    failures: List[RunFailure] = field(default_factory=list)


class FormatAdapter:
    """Sniffs run encodings and optionally converts native ones to JSON."""

    def __init__(self, toolchain: DevelCover | None = None, *, force_json: bool = False) -> None:
        self.toolchain = toolchain
        self.force_json = force_json

    def location_format(self, location: Path) -> RecordFormat | None:
        data_files = find_data_files(location)
        if not data_files:
            return None
        formats = {detect_format(path) for path in data_files}
        return RecordFormat.JSON if formats == {RecordFormat.JSON} else RecordFormat.NATIVE

    def convert(self, location: Path) -> None:
        """Rewrite every native file of ``location`` as JSON via the toolchain."""

        if self.toolchain is None:
            raise ToolchainError("JSON conversion requires perl")
        natives = [
            path
            for path in (*find_data_files(location), *find_structure_files(location))
            if detect_format(path) is RecordFormat.NATIVE
        ]
        if not natives:
            return
        result = self.toolchain.convert_to_json(natives)
        if not result.ok:
            raise ToolchainError(f"JSON conversion failed for {location}: {result.failure_detail()}")
        LOGGER.debug("Converted %d file(s) in %s to JSON", len(natives), location)

    def prepare(self, locations: Sequence[Path]) -> AdaptedLocations:
        adapted = AdaptedLocations()
        for location in locations:
            try:
                record_format = self.location_format(location)
            except OSError as error:
                LOGGER.warning("Skipping coverage run %s: %s", location, error)
                adapted.failures.append(RunFailure(location=location, reason=str(error)))
                continue
            if record_format is None:
                LOGGER.debug("No coverage data in %s", location)
                adapted.failures.append(RunFailure(location=location, reason="no coverage data file"))
                continue
            if record_format is RecordFormat.NATIVE and self.force_json:
                try:
                    self.convert(location)
                except (ToolchainError, OSError) as error:
                    LOGGER.warning("Skipping coverage run %s: %s", location, error)
                    adapted.failures.append(RunFailure(location=location, reason=str(error)))
                    continue
                record_format = RecordFormat.JSON
            adapted.by_format[record_format].append(location)
        return adapted


# ------------------------------------------------------------------- reader
@dataclass(slots=True)
class ReadOutcome:
    """Everything recovered from a set of run locations."""

    records: List[RawRunRecord]
    structure: StructureIndex
    failures: List[RunFailure]


class RunRecordReader:
    """Reads run locations of any encoding into raw records."""

    def __init__(
        self,
        toolchain: DevelCover | None = None,
        *,
        force_json: bool = False,
        workers: int | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.adapter = FormatAdapter(toolchain, force_json=force_json)
        self.workers = workers

    def read(self, locations: Sequence[Path]) -> ReadOutcome:
        adapted = self.adapter.prepare(locations)
        structure = StructureIndex()
        records: List[RawRunRecord] = []
        failures = list(adapted.failures)

        for record_format, group in adapted.by_format.items():
            if not group:
                continue
            decoder = decoder_for(record_format, self.toolchain, workers=self.workers)
            batch = decoder.decode(group)
            records.extend(batch.records)
            failures.extend(batch.failures)
            structure.update(batch.structure)
            if record_format is RecordFormat.JSON:
                for location in group:
                    structure.load_location(location)

        LOGGER.debug(
            "Read %d record(s) from %d location(s), %d skipped",
            len(records),
            len(locations),
            len(failures),
        )
        return ReadOutcome(records=records, structure=structure, failures=failures)
