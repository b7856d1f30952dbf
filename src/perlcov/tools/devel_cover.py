"""Thin wrapper around the Devel::Cover toolchain.

The coverage engine only needs a narrow slice of the external tool: produce a
per-run database while a test executes, rewrite a native database as JSON,
read native databases in bulk, and render HTML. Everything else about
Devel::Cover stays on the Perl side of this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Sequence

import json
import logging
import os
import shutil
import subprocess

if TYPE_CHECKING:
    from perlcov.runner.scope import ScopeSelection

__all__ = [
    "DEFAULT_PERL",
    "DevelCover",
    "PERL_PATH_ENV",
    "ToolResult",
    "ToolchainError",
    "build_cover_options",
    "build_test_command",
    "resolve_perl_path",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_PERL = "perl"
PERL_PATH_ENV = "PERL_PATH"
DB_FORMAT_ENV = "DEVEL_COVER_DB_FORMAT"


class ToolchainError(RuntimeError):
    """Raised when perl or Devel::Cover cannot be used."""


@dataclass(slots=True)
class ToolResult:
    """Captured output of a toolchain subprocess."""

    command: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def failure_detail(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.exit_code}"


_DECODE_HELPERS = r"""
use strict;
use warnings;
use JSON::PP;

local $SIG{__WARN__} = sub {};

sub slurp {
    my ($file) = @_;
    open my $fh, '<:raw', $file or return;
    local $/;
    my $content = <$fh>;
    close $fh;
    return $content;
}

sub decode_any {
    my ($file) = @_;
    my $content = slurp($file);
    return unless defined $content && length $content;
    if (substr($content, 0, 1) eq '{') {
        return eval { JSON::PP->new->utf8->decode($content) };
    }
    my $data;
    if (eval { require Sereal::Decoder; 1 }) {
        $data = eval { Sereal::Decoder->new->decode($content) };
    }
    $data ||= eval { require Storable; Storable::retrieve($file) };
    return $data;
}
"""

_CONVERT_SCRIPT = _DECODE_HELPERS + r"""
my $json = JSON::PP->new->utf8->canonical;
my $failed = 0;
for my $file (@ARGV) {
    my $data = decode_any($file);
    unless ($data && ref $data eq 'HASH') {
        print STDERR "unable to decode $file\n";
        $failed++;
        next;
    }
    open my $out, '>:raw', "$file.json-tmp" or die "cannot write $file: $!";
    print {$out} $json->encode($data);
    close $out;
    rename "$file.json-tmp", $file or die "cannot replace $file: $!";
}
exit($failed ? 1 : 0);
"""

_BATCH_READ_SCRIPT = _DECODE_HELPERS + r"""
sub add_flat {
    my ($target, $source) = @_;
    for my $i (0 .. $#$source) {
        my $value = $source->[$i];
        $value = $value->[0] if ref $value eq 'ARRAY';
        $target->[$i] = ($target->[$i] // 0) + ($value // 0);
    }
    $_ //= 0 for @$target;
}

sub add_nested {
    my ($target, $source) = @_;
    for my $i (0 .. $#$source) {
        next unless ref $source->[$i] eq 'ARRAY';
        $target->[$i] ||= [];
        add_flat($target->[$i], $source->[$i]);
    }
    $_ ||= [] for @$target;
}

my (%runs, %structure, @errors);
my $mode = 'data';
my $group = 0;
for my $arg (@ARGV) {
    if ($arg eq '--structure') {
        $mode = 'structure';
        next;
    }
    if ($arg eq '--location') {
        $mode = 'data';
        $group++;
        $runs{$group} ||= { count => {} };
        next;
    }
    my $data = decode_any($arg);
    unless ($data && ref $data eq 'HASH') {
        push @errors, $arg;
        next;
    }
    if ($mode eq 'structure') {
        my $file = $data->{file};
        next unless defined $file;
        $structure{$file} ||= [
            map { ref $_ eq 'ARRAY' ? $_->[0] : $_ } @{ $data->{statement} || [] }
        ];
        next;
    }
    my $count = ($runs{$group} ||= { count => {} })->{count};
    my $recorded = $data->{runs} || {};
    for my $id (keys %$recorded) {
        my $counts = $recorded->{$id}{count} or next;
        for my $file (keys %$counts) {
            my $source = $counts->{$file};
            my $target = $count->{$file} ||= {
                statement => [], branch => [], condition => [], subroutine => [],
            };
            add_flat($target->{statement}, $source->{statement} || []);
            add_nested($target->{branch}, $source->{branch} || []);
            add_nested($target->{condition}, $source->{condition} || []);
            add_flat($target->{subroutine}, $source->{subroutine} || []);
        }
    }
}

print JSON::PP->new->utf8->canonical->encode({
    runs      => \%runs,
    structure => \%structure,
    errors    => \@errors,
});
"""


def resolve_perl_path(explicit: str | None = None, env: Mapping[str, str] | None = None) -> str:
    """Pick the perl interpreter: explicit flag, then ``$PERL_PATH``, then ``perl``."""

    if explicit and explicit.strip():
        return explicit.strip()
    environment = os.environ if env is None else env
    candidate = environment.get(PERL_PATH_ENV, "").strip()
    return candidate or DEFAULT_PERL


def _absolute(path: str | Path, cwd: Path) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else cwd / candidate


def build_cover_options(
    db_dir: Path,
    *,
    cwd: Path,
    source_dirs: Sequence[str | Path] = (),
    scope: ScopeSelection | None = None,
) -> str:
    """Render the ``-MDevel::Cover=`` option string for one instrumented run."""

    options: list[str] = [
        "-db",
        str(_absolute(db_dir, cwd)),
        "-silent",
        "1",
        "-ignore",
        "^t/",
        "-ignore",
        r"\.t$",
    ]
    for source in source_dirs:
        options.extend(["+inc", str(_absolute(source, cwd))])
    if scope is not None:
        options.extend(scope.cover_options())
    return ",".join(options)


def build_test_command(
    perl_path: str,
    test_file: str | Path,
    *,
    cwd: Path,
    include_paths: Sequence[str | Path] = (),
    cover_options: str | None = None,
) -> tuple[str, ...]:
    """Build the perl command line that executes ``test_file``."""

    args: list[str] = [perl_path]
    for include in include_paths:
        args.extend(["-I", str(_absolute(include, cwd))])
    lib_path = cwd / "lib"
    if lib_path.is_dir():
        args.extend(["-I", str(lib_path)])
    if cover_options is not None:
        args.append(f"-MDevel::Cover={cover_options}")
    args.append(str(_absolute(test_file, cwd)))
    return tuple(args)


class DevelCover:
    """Collaborator facade over ``perl -MDevel::Cover`` and ``cover``."""

    def __init__(
        self,
        perl_path: str = DEFAULT_PERL,
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.perl_path = perl_path
        self.cwd = Path(cwd or Path.cwd()).resolve()
        self._env: Dict[str, str] = os.environ.copy()
        if env:
            self._env.update({str(key): str(value) for key, value in env.items()})

    # ----------------------------------------------------------- process IO
    def environment(self, *, json_output: bool = False) -> Dict[str, str]:
        env = dict(self._env)
        if json_output:
            env[DB_FORMAT_ENV] = "JSON"
        return env

    def _run(self, args: Sequence[str]) -> ToolResult:
        command = tuple(str(arg) for arg in args)
        try:
            process = subprocess.run(
                command,
                cwd=self.cwd,
                env=self._env,
                capture_output=True,
                text=False,
                check=False,
            )
        except OSError as error:
            raise ToolchainError(f"Unable to execute {command[0]}: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        return ToolResult(command=command, exit_code=process.returncode, stdout=stdout, stderr=stderr)

    # --------------------------------------------------------------- setup
    def check(self) -> str:
        """Return the installed Devel::Cover version or raise :class:`ToolchainError`."""

        result = self._run(
            [
                self.perl_path,
                r"-MDevel::Cover=-silent,1,-ignore,^\-e$",
                "-e",
                "print $Devel::Cover::VERSION",
            ]
        )
        if not result.ok:
            raise ToolchainError(
                "Devel::Cover is not installed. Install with: cpan Devel::Cover\n"
                f"Error: {result.failure_detail()}"
            )
        return result.stdout.strip()

    def cover_command(self) -> str:
        """Locate ``cover``, preferring the directory that holds the interpreter."""

        perl = Path(self.perl_path)
        if perl.is_absolute():
            sibling = perl.parent / "cover"
            if sibling.is_file():
                return str(sibling)
        return shutil.which("cover") or "cover"

    # ------------------------------------------------------------- records
    def convert_to_json(self, files: Sequence[Path]) -> ToolResult:
        """Rewrite native-encoded ``files`` in place as JSON."""

        return self._run([self.perl_path, "-e", _CONVERT_SCRIPT, *[str(path) for path in files]])

    def read_native(
        self,
        groups: Sequence[Sequence[Path]],
        structure_files: Sequence[Path] = (),
    ) -> Dict[str, Any]:
        """Decode and sum native run databases in a single subprocess.

        Each entry of ``groups`` holds the data files of one run location and
        is summed separately. Returns ``{"runs": {"1": {"count": ...}, ...},
        "structure": ..., "errors": [...]}`` where run ids follow the order
        of ``groups`` starting at 1.
        """

        args: list[str] = [self.perl_path, "-e", _BATCH_READ_SCRIPT]
        for data_files in groups:
            args.append("--location")
            args.extend(str(path) for path in data_files)
        if structure_files:
            args.append("--structure")
            args.extend(str(path) for path in structure_files)
        result = self._run(args)
        if not result.ok:
            raise ToolchainError(f"Native coverage read failed: {result.failure_detail()}")
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as error:
            raise ToolchainError(f"Native coverage read produced invalid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ToolchainError("Native coverage read produced a non-object payload")
        return payload

    # -------------------------------------------------------------- reports
    def merge_databases(self, target: Path, sources: Sequence[Path]) -> ToolResult:
        """Merge isolated run databases into ``target`` using ``cover -write``."""

        return self._run([self.cover_command(), "-silent", "-write", str(target), *[str(path) for path in sources]])

    def generate_html(self, cover_dir: Path, output_dir: Path) -> ToolResult:
        return self._run(
            [
                self.cover_command(),
                "-silent",
                "-report",
                "html",
                "-outputdir",
                str(output_dir),
                str(cover_dir),
            ]
        )
