"""Engine settings loaded from an optional YAML configuration file."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import Field, ValidationError

from .errors import ConfigurationError
from .memory.schema import RecordModel
from .tools.diffing import DiffLimits
from .tools.encoding import EncodingStrategy

DEFAULT_CONFIG_NAME = "ge.yaml"


class EngineSettings(RecordModel):
    """Knobs of the edit pipeline; every field has a working default."""

    context_lines: int = Field(3, ge=0)
    max_diff_bytes: int = Field(5 * 1024 * 1024, ge=1)
    max_diff_lines: int = Field(5000, ge=1)
    max_line_bytes: int = Field(64 * 1024, ge=16)
    paginate_threshold: int = Field(200, ge=1)
    max_edit_distance: int = Field(1000, ge=1)
    max_hunk_offset: int = Field(10, ge=0)
    miss_window: int = Field(5, ge=0)
    miss_candidates: int = Field(3, ge=0)
    backups: bool = True
    undo_dir: Optional[Path] = None
    encoding: Optional[str] = None
    verbatim_newlines: bool = False
    fsync: bool = True
    change_log: Path = Path(".ge/change_log.jsonl")
    change_log_max_entries: int = Field(500, ge=1)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> "EngineSettings":
        """Validate the ``engine`` section of an already loaded configuration mapping."""
        section = config.get("engine", {}) if isinstance(config, Mapping) else None
        if section is None:
            section = {}
        if not isinstance(section, Mapping):
            raise ConfigurationError("The 'engine' section must be a mapping.")
        try:
            settings = cls.model_validate(dict(section))
        except ValidationError as error:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in item['loc']) or 'engine'}: {item['msg']}"
                for item in error.errors()
            )
            raise ConfigurationError(f"Invalid engine settings: {problems}") from error

        if base_dir is not None:
            if settings.undo_dir is not None and not settings.undo_dir.is_absolute():
                settings.undo_dir = base_dir / settings.undo_dir
            if not settings.change_log.is_absolute():
                settings.change_log = base_dir / settings.change_log
        return settings

    def diff_limits(self) -> DiffLimits:
        return DiffLimits(
            max_bytes=self.max_diff_bytes,
            max_lines=self.max_diff_lines,
            max_line_bytes=self.max_line_bytes,
            paginate_threshold=self.paginate_threshold,
        )

    def encoding_strategy(self, override: str | None = None) -> EncodingStrategy:
        """Build the encoding policy; an unknown label raises :class:`ConfigurationError`."""
        return EncodingStrategy(override if override is not None else self.encoding)


def load_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise ConfigurationError(f"Config file not readable: {config_path}") from error
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level.")
    return data


def load_settings(config_path: Path | str | None = None) -> EngineSettings:
    """Resolve engine settings from ``config_path`` (default ``ge.yaml`` if present)."""
    if config_path is None:
        candidate = Path(DEFAULT_CONFIG_NAME)
        if not candidate.exists():
            return EngineSettings()
        config_path = candidate
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    return EngineSettings.from_config(load_config(path), base_dir=path.resolve().parent)


__all__ = ["DEFAULT_CONFIG_NAME", "EngineSettings", "load_config", "load_settings"]
