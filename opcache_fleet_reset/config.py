"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import os
import re
import tempfile
import typing
from dataclasses import dataclass, field, is_dataclass
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

DEFAULT_PORT = 8289
DEFAULT_FALLBACK_HOST = "127.0.0.1"


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


@dataclass(frozen=True)
class AWSConfig:
    region: str = ""
    load_balancer: str = ""  # Classic ELB name; exactly one is supported
    credential_profile: str = ""  # empty = use default boto3 credential chain
    connect_timeout: float = 5
    read_timeout: float = 10
    max_attempts: int = 2

    @property
    def is_configured(self) -> bool:
        """True when both identifiers needed for fleet discovery are present."""
        return bool(self.region) and bool(self.load_balancer)


@dataclass(frozen=True)
class CacheToolConfig:
    port: int = DEFAULT_PORT
    fallback_host: str | None = DEFAULT_FALLBACK_HOST  # empty or null disables
    chroot: str | None = None  # PHP-FPM chroot; script paths are sent relative to it
    temp_dir: str | None = None  # where the opcache script is written
    timeout: float = 10

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.fallback_host)

    @property
    def script_dir(self) -> str:
        """Directory for generated scripts: temp_dir, else chroot, else the system temp dir."""
        return self.temp_dir or self.chroot or tempfile.gettempdir()


@dataclass(frozen=True)
class LocalConfig:
    enabled: bool = True
    host: str = "127.0.0.1"  # a path starting with "/" selects a unix socket
    port: int = 9000


@dataclass(frozen=True)
class ScheduleConfig:
    stagger_seconds: int = 60
    interval_seconds: int = 0  # periodic trigger; 0 disables
    poll_seconds: float = 1


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    aws: AWSConfig = field(default_factory=AWSConfig)
    cachetool: CacheToolConfig = field(default_factory=CacheToolConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _dataclass_type(ft: Any) -> type | None:
    return ft if isinstance(ft, type) and is_dataclass(ft) else None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = typing.get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        dc_type = _dataclass_type(field_types[key])
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        elif dc_type is not None and value is None:
            # An empty YAML section ("aws:") keeps the defaults
            continue
        else:
            kwargs[key] = value
    return cls(**kwargs)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    config = _build_nested(AppConfig, raw)
    _validate(config)
    return config


def _validate(config: AppConfig) -> None:
    """Validate configuration values.

    Missing region or load balancer is not an error here: discovery reports it
    at reset time and the service degrades to local and fallback resets.
    """
    if not isinstance(config.aws.region, str) or not isinstance(config.aws.load_balancer, str):
        raise ConfigError("aws.region and aws.load_balancer must be strings")

    for name, port in (("cachetool.port", config.cachetool.port), ("local.port", config.local.port)):
        if not isinstance(port, int) or not 1 <= port <= 65535:
            raise ConfigError(f"{name} must be an integer between 1 and 65535")

    if config.cachetool.fallback_host is not None and not isinstance(config.cachetool.fallback_host, str):
        raise ConfigError("cachetool.fallback_host must be a string (empty disables the fallback)")

    if config.cachetool.timeout <= 0:
        raise ConfigError("cachetool.timeout must be > 0")

    if config.aws.connect_timeout <= 0 or config.aws.read_timeout <= 0:
        raise ConfigError("aws.connect_timeout and aws.read_timeout must be > 0")

    if config.aws.max_attempts < 1:
        raise ConfigError("aws.max_attempts must be >= 1")

    if config.schedule.stagger_seconds < 0:
        raise ConfigError("schedule.stagger_seconds must be >= 0")

    if config.schedule.interval_seconds < 0:
        raise ConfigError("schedule.interval_seconds must be >= 0 (0 disables the periodic trigger)")

    if config.schedule.poll_seconds <= 0:
        raise ConfigError("schedule.poll_seconds must be > 0")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
