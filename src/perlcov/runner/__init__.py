"""Parallel execution of Perl test files under instrumentation."""

from .executor import (
    ProgressUpdate,
    TestExecutor,
    isolated_location,
    remove_locations,
    remove_stale_locations,
)
from .scope import ScopeSelection, extract_scope, module_path, resolve_scope
from .tap import contains_tap_failure

__all__ = [
    "ProgressUpdate",
    "ScopeSelection",
    "TestExecutor",
    "contains_tap_failure",
    "extract_scope",
    "isolated_location",
    "module_path",
    "remove_locations",
    "remove_stale_locations",
    "resolve_scope",
]
