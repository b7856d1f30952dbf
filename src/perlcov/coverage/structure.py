"""Statement position to source line mapping emitted by Devel::Cover."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

from .model import StructureMap

__all__ = ["STRUCTURE_DIRNAME", "StructureIndex"]

LOGGER = logging.getLogger(__name__)

STRUCTURE_DIRNAME = "structure"


def _coerce_lines(raw: Any) -> List[int] | None:
    if not isinstance(raw, list):
        return None
    lines: List[int] = []
    for entry in raw:
        if isinstance(entry, list):
            entry = entry[0] if entry else None
        if isinstance(entry, bool) or not isinstance(entry, int):
            return None
        lines.append(entry)
    return lines


class StructureIndex:
    """Read-only (once loaded) lookup of statement positions to line numbers."""

    def __init__(self, mapping: Mapping[str, Iterable[int]] | None = None) -> None:
        self._lines: Dict[str, List[int]] = {}
        if mapping:
            self.update(mapping)

    def __contains__(self, path: object) -> bool:
        return path in self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def add(self, path: str, lines: Iterable[int]) -> None:
        """Register ``lines`` for ``path``; the first mapping seen wins."""

        candidate = list(lines)
        existing = self._lines.get(path)
        if existing is None:
            self._lines[path] = candidate
            return
        if existing != candidate:
            LOGGER.debug("Ignoring conflicting structure for %s", path)

    def update(self, mapping: Mapping[str, Iterable[int]]) -> None:
        for path, lines in mapping.items():
            self.add(path, lines)

    def line_for(self, path: str, position: int) -> int:
        """Return the source line of statement ``position`` in ``path``."""

        lines = self._lines.get(path)
        if lines is not None and 0 <= position < len(lines):
            return lines[position]
        return position + 1

    def mapping(self) -> StructureMap:
        return {path: list(lines) for path, lines in self._lines.items()}

    def load_file(self, path: Path) -> bool:
        """Load one JSON structure file; non-JSON and malformed files are skipped."""

        try:
            raw = path.read_bytes()
        except OSError as error:
            LOGGER.warning("Unable to read structure file %s: %s", path, error)
            return False
        if not raw.startswith(b"{"):
            return False
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            LOGGER.warning("Malformed structure file %s: %s", path, error)
            return False
        if not isinstance(payload, dict):
            return False

        source = payload.get("file")
        lines = _coerce_lines(payload.get("statement", []))
        if not isinstance(source, str) or not source or lines is None:
            LOGGER.warning("Structure file %s lacks a file path or statement lines", path)
            return False
        self.add(source, lines)
        return True

    def load_location(self, location: Path) -> int:
        """Load every structure file stored under ``location``."""

        directory = location / STRUCTURE_DIRNAME
        if not directory.is_dir():
            return 0
        loaded = 0
        for entry in sorted(directory.iterdir()):
            if entry.is_file() and self.load_file(entry):
                loaded += 1
        return loaded
