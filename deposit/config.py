"""Configuration for building a Deposit.

A configuration names the backend variant, the database name and version,
and the table schema. It can be built in code or loaded from YAML files,
with environment variables taking precedence.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any

import msgspec
import yaml

from .exceptions import ConfigError
from .schema import TableSchema


class AdapterType(Enum):
    """Available storage backends."""

    KEYVALUE = "keyvalue"
    SQLITE = "sqlite"


class DepositConfig(msgspec.Struct, kw_only=True):
    """Settings for one Deposit instance.

    ``migration`` and ``store`` hold Python objects and are only set from
    code, never from configuration files.
    """

    type: AdapterType
    db_name: str
    schema: dict[str, TableSchema]
    version: int = 1
    directory: str | None = None
    migration: Any = None
    store: Any = None


class Config:
    """Configuration file handling."""

    @staticmethod
    def from_file(path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path) as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Error reading config file: {e}") from e

    @staticmethod
    def get_config_paths() -> list[Path]:
        """Get the default configuration file paths to check."""
        paths = []

        xdg_config_home = Path(
            os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
        )
        paths.append(xdg_config_home / "deposit" / "config.yaml")

        paths.append(Path(".deposit.yaml"))
        paths.append(Path("deposit.yaml"))

        return paths

    @staticmethod
    def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
        """Merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = _deep_merge(result, config)
        return result


def get_config_paths() -> list[Path]:
    """Get configuration paths in precedence order."""
    return Config.get_config_paths()


def load_config(path: Path | str | None = None) -> DepositConfig:
    """Load configuration from files and environment variables.

    Args:
        path: Explicit config file. When omitted, every default location
            that exists is merged, later ones winning.

    Raises:
        ConfigError: If a file is unreadable or the result is invalid.
    """
    config: dict[str, Any] = {}

    if path is not None:
        config = Config.from_file(Path(path))
    else:
        for candidate in get_config_paths():
            if candidate.exists():
                config = Config.merge_configs(config, Config.from_file(candidate))

    env_overrides: dict[str, Any] = {}
    if adapter := os.environ.get("DEPOSIT_ADAPTER"):
        env_overrides["type"] = adapter
    if db_name := os.environ.get("DEPOSIT_DB_NAME"):
        env_overrides["db_name"] = db_name
    if version := os.environ.get("DEPOSIT_VERSION"):
        try:
            env_overrides["version"] = int(version)
        except ValueError:
            raise ConfigError(f"DEPOSIT_VERSION must be an integer: {version}")
    if directory := os.environ.get("DEPOSIT_DIRECTORY"):
        env_overrides["directory"] = directory

    config = Config.merge_configs(config, env_overrides)

    try:
        return msgspec.convert(config, DepositConfig)
    except msgspec.ValidationError as e:
        raise ConfigError(f"Invalid deposit configuration: {e}") from e


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
