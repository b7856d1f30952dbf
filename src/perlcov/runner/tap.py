"""Failure detection for Test Anything Protocol output."""

from __future__ import annotations

__all__ = ["contains_tap_failure"]

_FAILURE_PREFIX = "not ok"
_BAIL_OUT_PREFIX = "Bail out!"
_EXPECTED_FAILURE_DIRECTIVES = ("# TODO", "# SKIP")


def contains_tap_failure(output: str) -> bool:
    """Return ``True`` when ``output`` reports a failing or bailed-out test."""

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line.startswith(_FAILURE_PREFIX):
            if not any(directive in line for directive in _EXPECTED_FAILURE_DIRECTIVES):
                return True
        if line.startswith(_BAIL_OUT_PREFIX):
            return True
    return False
