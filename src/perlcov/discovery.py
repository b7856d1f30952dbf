"""Locate Perl test files (``*.t``) from command-line paths."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List

__all__ = ["DiscoveryError", "TEST_SUFFIX", "discover_tests"]

TEST_SUFFIX = ".t"


class DiscoveryError(RuntimeError):
    """Raised when test paths are missing or yield no test files."""


def _walk(root: Path) -> Iterable[str]:
    for directory, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.endswith(TEST_SUFFIX):
                yield os.path.join(directory, filename)


def discover_tests(paths: Iterable[str | Path]) -> List[str]:
    """Expand files and directories into an ordered, de-duplicated test list."""

    found: List[str] = []
    seen: set[str] = set()
    for entry in paths:
        path = Path(entry)
        if not path.exists():
            raise DiscoveryError(f"cannot access {entry}: no such file or directory")
        if path.is_dir():
            candidates: Iterable[str] = _walk(path)
        elif str(entry).endswith(TEST_SUFFIX):
            candidates = [str(entry)]
        else:
            candidates = []
        for candidate in candidates:
            candidate = os.path.normpath(candidate)
            if candidate not in seen:
                seen.add(candidate)
                found.append(candidate)
    return found
