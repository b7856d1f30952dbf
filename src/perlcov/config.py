"""Run settings loaded from ``.perlcov.yaml`` and command-line overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .coverage.normalize import NormalizationConfig, parse_modes

__all__ = ["ConfigError", "DEFAULT_CONFIG_NAME", "PerlcovSettings", "load_settings", "read_config_file"]

DEFAULT_CONFIG_NAME = ".perlcov.yaml"


class ConfigError(RuntimeError):
    """Raised when the configuration file or option values are invalid."""


def _default_jobs() -> int:
    return os.cpu_count() or 1


class PerlcovSettings(BaseModel):
    """Validated settings for a coverage run."""

    model_config = ConfigDict(extra="forbid")

    tests: List[str] = Field(default_factory=lambda: ["t"])
    jobs: int = Field(default_factory=_default_jobs, ge=1)
    include: List[str] = Field(default_factory=list)
    source: List[str] = Field(default_factory=lambda: ["lib"])
    cover_dir: str = "cover_db"
    output_dir: str = "."
    normalize: str = ""
    json_merge: bool = False
    select: bool = True
    rerun_failed: bool = True
    perl_path: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    html: bool = False
    keep_runs: bool = False
    show_output: bool = False
    json_report: Optional[str] = None
    verbose: bool = False

    @field_validator("normalize", mode="before")
    @classmethod
    def _join_modes(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ",".join(str(item) for item in value)
        return value

    @field_validator("normalize")
    @classmethod
    def _check_modes(cls, value: str) -> str:
        parse_modes(value)
        return value

    @field_validator("tests", "source")
    @classmethod
    def _require_entries(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one path is required")
        return value

    def normalization(self) -> NormalizationConfig:
        return parse_modes(self.normalize)


def read_config_file(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise ConfigError(f"Unable to read config {config_path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return {str(key).replace("-", "_"): value for key, value in data.items()}


def load_settings(
    config_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> PerlcovSettings:
    """Combine file values with non-``None`` overrides and validate the result.

    When ``config_path`` is omitted, ``.perlcov.yaml`` in the working directory
    is used if present.
    """

    data: Dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        data.update(read_config_file(config_path))
    else:
        default_path = Path.cwd() / DEFAULT_CONFIG_NAME
        if default_path.is_file():
            data.update(read_config_file(default_path))

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        data[key] = list(value) if isinstance(value, tuple) else value

    try:
        return PerlcovSettings(**data)
    except ValidationError as error:
        raise ConfigError(_format_validation_error(error)) from error


def _format_validation_error(error: ValidationError) -> str:
    lines = ["Invalid configuration:"]
    for issue in error.errors():
        location = ".".join(str(part) for part in issue.get("loc", ())) or "(root)"
        lines.append(f"- {location}: {issue.get('msg', 'invalid value')}")
    return "\n".join(lines)
