"""Infer which module a test file targets from its name.

Test files named after the module they exercise (``App-Foo-Bar.t``,
``App-Foo-Bar_edge_cases.t``) can be instrumented with a narrowed scope:
everything under ``lib/`` is ignored except the selected module. Runs are
merged afterwards, so incidental coverage missed by one narrowed run is
picked up by the others.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

__all__ = ["ScopeSelection", "extract_scope", "module_exists", "module_path", "resolve_scope"]

TEST_SUFFIX = ".t"


@dataclass(frozen=True, slots=True)
class ScopeSelection:
    """Narrowed instrumentation scope for a single test file."""

    module: str
    module_file: str

    @property
    def select_pattern(self) -> str:
        return self.module_file[: -len(".pm")]

    def cover_options(self) -> tuple[str, ...]:
        # Devel::Cover honours -select only when the -ignore comes first.
        return ("-ignore", "lib/", "-select", self.select_pattern)


def extract_scope(test_file: str | Path) -> str:
    """Return the ``Module::Name`` a test file targets, or ``""``."""

    base = Path(test_file).name
    if not base.endswith(TEST_SUFFIX):
        return ""
    name = base[: -len(TEST_SUFFIX)]

    if name[:1].isdigit():
        return ""

    name = name.split("_", 1)[0]
    if not name or not ("A" <= name[0] <= "Z"):
        return ""

    return name.replace("-", "::")


def module_path(module: str) -> str:
    """Translate ``App::Foo`` into ``App/Foo.pm``."""

    return module.replace("::", "/") + ".pm"


def module_exists(module_file: str, cwd: Path, source_dirs: Sequence[str | Path]) -> bool:
    candidates = [cwd / module_file, cwd / "lib" / module_file]
    for source in source_dirs:
        root = Path(source)
        if not root.is_absolute():
            root = cwd / root
        candidates.append(root / module_file)
    return any(candidate.is_file() for candidate in candidates)


def resolve_scope(
    test_file: str | Path,
    cwd: Path,
    source_dirs: Sequence[str | Path] = (),
) -> ScopeSelection | None:
    """Return a narrowed scope when the inferred module exists on disk."""

    module = extract_scope(test_file)
    if not module:
        return None
    module_file = module_path(module)
    if not module_exists(module_file, cwd, source_dirs):
        return None
    return ScopeSelection(module=module, module_file=module_file)
