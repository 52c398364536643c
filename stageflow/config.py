"""
Configuration management for stageflow.

Loads $STAGEFLOW_HOME/config.yaml (default ~/.stageflow/config.yaml):

    definitions_dir: ~/.stageflow/definitions
    store_path: ~/.stageflow/store
    log_level: INFO
    log_format: pretty          # structured | pretty
    log_file: null              # optional path, {date} is interpolated
    console: true
    time_scale: 1.0             # real seconds per logical second
    activities:
      Publish: mypkg.jobs:publish

Environment overrides: STAGEFLOW_LOG_LEVEL, STAGEFLOW_TIME_SCALE.
"""

import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from stageflow.activities import ActivityRegistry
from stageflow.errors import ConfigurationError

LOG_FORMATS = ("structured", "pretty")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ConfigurationError):
    """Configuration validation error."""
    pass


def get_stageflow_home() -> Path:
    """Return the stageflow home directory ($STAGEFLOW_HOME or ~/.stageflow)."""
    home = os.environ.get("STAGEFLOW_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.stageflow").expanduser()


def get_config_path() -> Path:
    return get_stageflow_home() / "config.yaml"


@dataclass
class StageflowConfig:
    """Complete stageflow configuration."""
    definitions_dir: Optional[str] = None
    store_path: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    console: bool = True
    time_scale: float = 1.0
    activities: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Invalid log_level: {self.log_level}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(
                f"Invalid log_format: {self.log_format}. Expected one of: {', '.join(LOG_FORMATS)}"
            )
        try:
            self.time_scale = float(self.time_scale)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid time_scale: {self.time_scale!r}") from e
        if self.time_scale <= 0:
            raise ConfigError(f"time_scale must be > 0, got {self.time_scale}")
        if not isinstance(self.activities, dict):
            raise ConfigError("activities must be a mapping of name to 'module:function'")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageflowConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def definitions_path(self) -> Path:
        if self.definitions_dir:
            return Path(self.definitions_dir).expanduser()
        return get_stageflow_home() / "definitions"

    @property
    def store_dir(self) -> Path:
        if self.store_path:
            return Path(self.store_path).expanduser()
        return get_stageflow_home() / "store"

    def get_log_file_path(self) -> Optional[Path]:
        """Log file path with {date} interpolation, or None when file logging is off."""
        if not self.log_file:
            return None
        return Path(self.log_file.replace("{date}", datetime.now().strftime("%Y-%m-%d"))).expanduser()

    def build_activity_registry(self) -> ActivityRegistry:
        """Built-in activities plus the configured import paths."""
        registry = ActivityRegistry.create_default()
        for name, path in self.activities.items():
            registry.register_path(name, path)
        return registry


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    if os.environ.get("STAGEFLOW_LOG_LEVEL"):
        data["log_level"] = os.environ["STAGEFLOW_LOG_LEVEL"]
    if os.environ.get("STAGEFLOW_TIME_SCALE"):
        data["time_scale"] = os.environ["STAGEFLOW_TIME_SCALE"]
    return data


def load_config(config_path: Optional[Path] = None) -> StageflowConfig:
    """
    Load configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $STAGEFLOW_HOME/config.yaml

    Returns:
        StageflowConfig (defaults when the file does not exist)

    Raises:
        ConfigError: If the YAML is invalid or a value is invalid
    """
    if config_path is None:
        config_path = get_config_path()

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
        data = dict(loaded or {})

    return StageflowConfig.from_dict(_apply_env_overrides(data))


def default_config_dict(home: Path) -> dict[str, Any]:
    """Config written by `stageflow init`."""
    return StageflowConfig(
        definitions_dir=str(home / "definitions"),
        store_path=str(home / "store"),
    ).to_dict()
