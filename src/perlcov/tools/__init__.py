"""Integrations with the external Devel::Cover toolchain."""

from .devel_cover import (
    DEFAULT_PERL,
    PERL_PATH_ENV,
    DevelCover,
    ToolchainError,
    ToolResult,
    build_cover_options,
    build_test_command,
    resolve_perl_path,
)

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
