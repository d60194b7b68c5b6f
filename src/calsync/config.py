"""Engine configuration loading and validation.

Reads ``calsync.toml`` (given directly or from a config directory), resolves
``${VAR}`` references from the environment, and returns a validated
``CalsyncConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "calsync.toml"

DEFAULT_STATUS_PATH = "/api/user/google-status"
DEFAULT_EVENTS_PATH = "/api/calendar/events"

_LOG_FORMATS = ("text", "json")

# Pattern matching ${VAR_NAME} — supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class EndpointsConfig:
    """Calendar endpoints of the host application from [calsync.endpoints]."""

    base_url: str
    status_path: str = DEFAULT_STATUS_PATH
    events_path: str = DEFAULT_EVENTS_PATH
    timeout_seconds: float = 10.0
    access_token: str | None = None

    @property
    def status_url(self) -> str:
        return _join_url(self.base_url, self.status_path)

    @property
    def events_url(self) -> str:
        return _join_url(self.base_url, self.events_path)


@dataclass
class SyncConfig:
    """Polling configuration from [calsync.sync]."""

    auto_sync: bool = True
    interval_minutes: float = 5
    max_results: int = 50


@dataclass
class RetryConfig:
    """Opt-in retry policy settings from [calsync.retry]."""

    max_attempts: int = 3
    max_delay_ms: float = 60_000


@dataclass
class StorageConfig:
    """Durable store settings from [calsync.storage].

    Without a ``path`` the engine keeps its state in memory only.
    """

    path: str | None = None
    cache_retention_days: int = 30


@dataclass
class CalsyncConfig:
    """Fully parsed calsync.toml."""

    endpoints: EndpointsConfig
    name: str = "calsync"
    sync: SyncConfig = field(default_factory=SyncConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Path | None = None


def _join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    value = section.get(key, default)
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    return value


def _integer(section: dict[str, Any], key: str, default: int, path: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{path}.{key} must be an integer")
    return value


def _parse_endpoints(section: dict[str, Any]) -> EndpointsConfig:
    path = "calsync.endpoints"
    base_url = _optional_str(section, "base_url", path)
    if base_url is None:
        raise ConfigError("Missing required field: calsync.endpoints.base_url")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"{path}.base_url must be an http(s) URL, got {base_url!r}")

    timeout = _number(section, "timeout_seconds", 10.0, path)
    if timeout <= 0:
        raise ConfigError(f"{path}.timeout_seconds must be > 0")

    return EndpointsConfig(
        base_url=base_url,
        status_path=_optional_str(section, "status_path", path) or DEFAULT_STATUS_PATH,
        events_path=_optional_str(section, "events_path", path) or DEFAULT_EVENTS_PATH,
        timeout_seconds=float(timeout),
        access_token=_optional_str(section, "access_token", path),
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    path = "calsync.sync"
    auto_sync = section.get("auto_sync", True)
    if not isinstance(auto_sync, bool):
        raise ConfigError(f"{path}.auto_sync must be a boolean")

    interval = _number(section, "interval_minutes", 5, path)
    if interval <= 0:
        raise ConfigError(f"{path}.interval_minutes must be > 0")

    max_results = _integer(section, "max_results", 50, path)
    if max_results < 1:
        raise ConfigError(f"{path}.max_results must be >= 1")

    return SyncConfig(auto_sync=auto_sync, interval_minutes=interval, max_results=max_results)


def _parse_retry(section: dict[str, Any]) -> RetryConfig:
    path = "calsync.retry"
    max_attempts = _integer(section, "max_attempts", 3, path)
    if max_attempts < 0:
        raise ConfigError(f"{path}.max_attempts must be >= 0")

    max_delay_ms = _number(section, "max_delay_ms", 60_000, path)
    if max_delay_ms <= 0:
        raise ConfigError(f"{path}.max_delay_ms must be > 0")

    return RetryConfig(max_attempts=max_attempts, max_delay_ms=max_delay_ms)


def _parse_storage(section: dict[str, Any]) -> StorageConfig:
    path = "calsync.storage"
    retention_days = _integer(section, "cache_retention_days", 30, path)
    if retention_days < 1:
        raise ConfigError(f"{path}.cache_retention_days must be >= 1")
    return StorageConfig(
        path=_optional_str(section, "path", path),
        cache_retention_days=retention_days,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    path = "calsync.logging"
    level = _optional_str(section, "level", path) or "INFO"
    fmt = (_optional_str(section, "format", path) or "text").lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"{path}.format must be one of {', '.join(_LOG_FORMATS)}, got {fmt!r}")
    return LoggingConfig(
        level=level.upper(),
        format=fmt,
        log_root=_optional_str(section, "log_root", path),
    )


def load_config(path: Path | str) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    Parameters
    ----------
    path:
        The TOML file itself, or a directory containing ``calsync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / CONFIG_FILE_NAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [calsync] section (required) ---
    root = data.get("calsync")
    if not isinstance(root, dict):
        raise ConfigError("Missing [calsync] section in config")

    name = _optional_str(root, "name", "calsync") or "calsync"

    return CalsyncConfig(
        name=name,
        endpoints=_parse_endpoints(_section(root, "endpoints", "calsync.endpoints")),
        sync=_parse_sync(_section(root, "sync", "calsync.sync")),
        retry=_parse_retry(_section(root, "retry", "calsync.retry")),
        storage=_parse_storage(_section(root, "storage", "calsync.storage")),
        logging=_parse_logging(_section(root, "logging", "calsync.logging")),
        config_path=toml_path,
    )
