from __future__ import annotations

import json
import stat
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


FAKE_PERL = textwrap.dedent(
    """\
    #!/bin/sh
    # Stand-in for perl: answers the Devel::Cover version query, copies the
    # canned run record next to the test into the requested database and then
    # executes the test file as a shell script.
    for arg in "$@"; do
      if [ "$arg" = "-e" ]; then
        echo "1.40"
        exit 0
      fi
    done
    db=""
    last=""
    for arg in "$@"; do
      case "$arg" in
        -MDevel::Cover=-db,*)
          db="${arg#-MDevel::Cover=-db,}"
          db="${db%%,*}"
          ;;
      esac
      last="$arg"
    done
    if [ -n "$db" ]; then
      mkdir -p "$db/runs/1"
      record="${last%.t}.cover.json"
      if [ -f "$record" ]; then
        cp "$record" "$db/runs/1/cover.14"
      fi
    fi
    exec sh "$last"
    """
)


def run_payload(counts: Mapping[str, Mapping[str, Any]], run_id: str = "1") -> dict[str, Any]:
    """Wrap per-file counters in the canonical run record envelope."""

    return {"runs": {run_id: {"count": {path: dict(value) for path, value in counts.items()}}}}


def write_run(location: Path, counts: Mapping[str, Mapping[str, Any]], *, run_id: str = "1") -> Path:
    """Create a JSON run database at ``location`` and return the data file."""

    data_file = location / "runs" / run_id / "cover.14"
    data_file.parent.mkdir(parents=True, exist_ok=True)
    data_file.write_text(json.dumps(run_payload(counts, run_id)), encoding="utf-8")
    return data_file


def write_structure(location: Path, name: str, source: str, lines: list[int]) -> Path:
    path = location / "structure" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"file": source, "statement": lines}), encoding="utf-8")
    return path


@dataclass(slots=True)
class PerlProject:
    """Fixture payload representing a Perl distribution with a fake interpreter."""

    root: Path
    perl_path: Path

    def add_test(
        self,
        name: str,
        *,
        tap: str = "1..1\nok 1\n",
        exit_code: int = 0,
        counts: Mapping[str, Mapping[str, Any]] | None = None,
        sleep: float | None = None,
    ) -> str:
        """Write ``t/<name>`` as a shell script printing ``tap``; return its relative path."""

        test_path = self.root / "t" / name
        test_path.parent.mkdir(parents=True, exist_ok=True)
        body = []
        if sleep is not None:
            body.append(f"sleep {sleep}")
        body.append("cat <<'TAP'")
        body.append(tap.rstrip("\n"))
        body.append("TAP")
        body.append(f"exit {exit_code}")
        test_path.write_text("\n".join(body) + "\n", encoding="utf-8")
        if counts is not None:
            record = test_path.with_name(test_path.name[: -len(".t")] + ".cover.json")
            record.write_text(json.dumps(run_payload(counts)), encoding="utf-8")
        return f"t/{name}"

    def add_module(self, module: str) -> Path:
        path = self.root / "lib" / (module.replace("::", "/") + ".pm")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"package {module};\n1;\n", encoding="utf-8")
        return path


@pytest.fixture()
def perl_project(tmp_path: Path) -> PerlProject:
    """Create a project root with ``lib/`` and an executable fake perl."""

    if sys.platform == "win32":
        pytest.skip("fake perl requires a POSIX shell")

    root = tmp_path / "dist"
    (root / "lib").mkdir(parents=True)
    perl_path = tmp_path / "bin" / "perl"
    perl_path.parent.mkdir()
    perl_path.write_text(FAKE_PERL, encoding="utf-8")
    perl_path.chmod(perl_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return PerlProject(root=root, perl_path=perl_path)
