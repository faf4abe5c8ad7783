"""Configuration loading for the settings transfer tool."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "SETTINGS_TRANSFER_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("plain", "json")
OUTPUT_FORMATS = ("plain", "json", "yaml", "table")


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    log_level: str = "INFO"
    log_format: str = "plain"
    output: str = "plain"
    backup_dir: Optional[Path] = None
    schema_version: Optional[str] = None
    catalog_path: Optional[Path] = None
    device_types: Sequence[str] = ()
    agent_restart_command: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "output": self.output,
            "backup_dir": str(self.backup_dir) if self.backup_dir else None,
            "schema_version": self.schema_version,
            "catalog_path": str(self.catalog_path) if self.catalog_path else None,
            "device_types": list(self.device_types),
            "agent_restart_command": self.agent_restart_command,
        }

    @classmethod
    def from_sources(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        config_path: Optional[Path] = None,
    ) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        file_config = _load_file_config(
            config_path
            or _coerce_optional_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, overrides or {})
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_choice("log_level", config.log_level, LOG_LEVELS)
    _validate_choice("log_format", config.log_format, LOG_FORMATS)
    _validate_choice("output", config.output, OUTPUT_FORMATS)
    if config.catalog_path is not None and not config.catalog_path.exists():
        raise ValueError(f"catalog_path does not exist: {config.catalog_path}")
    if config.schema_version is not None and not str(config.schema_version).strip():
        raise ValueError("schema_version must not be empty when provided.")


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade."
        )


def _validate_choice(name: str, value: str, allowed: Sequence[str]) -> None:
    if value not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key in {"backup_dir", "catalog_path"}:
            data[key] = _coerce_path(value)
        elif key == "config_version":
            data[key] = int(value)
        elif key == "log_level":
            data[key] = str(value).upper()
        elif key in {"log_format", "output"}:
            data[key] = str(value).lower()
        elif key == "device_types":
            data[key] = _coerce_str_tuple(value)
        elif key in {"schema_version", "agent_restart_command"}:
            data[key] = str(value)
        else:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_optional_path(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return _coerce_path(value)


def _coerce_str_tuple(value: Any) -> Sequence[str]:
    if isinstance(value, str):
        return tuple(part.strip().upper() for part in value.split(",") if part.strip())
    if isinstance(value, Iterable):
        return tuple(str(part).strip().upper() for part in value if str(part).strip())
    raise ValueError("device_types must be a list or a comma separated string")


def load_config(
    overrides: Optional[Mapping[str, Any]] = None, config_path: Optional[Path] = None
) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(overrides, config_path)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
