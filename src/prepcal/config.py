"""prepcal configuration loading and validation.

Reads ``prepcal.toml``, resolves ``${VAR}`` references from the environment
and returns a validated :class:`PrepcalConfig`. Every section is optional.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

CONFIG_ENV_VAR = "PREPCAL_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.prepcal/prepcal.toml")
DEFAULT_SETTINGS_PATH = "~/.prepcal/settings.json"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when prepcal configuration is malformed or invalid."""


class StorageBackend(enum.StrEnum):
    MEMORY = "memory"
    JSON = "json"
    POSTGRES = "postgres"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Daily sync scheduling from the [sync] section."""

    cron: str = "0 6 * * *"
    resume_delay_s: float = 5.0
    resume_check_interval_s: float = 10.0
    resume_threshold_s: float = 30.0


@dataclass
class CacheConfig:
    extraction_ttl_s: float = 120.0
    detection_ttl_s: float = 300.0


@dataclass
class GoogleConfig:
    """OAuth client credentials from the [google] section.

    The refresh token itself lives in the settings store.
    """

    client_id: str | None = None
    client_secret: str | None = None
    calendar_id: str = "primary"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class StorageConfig:
    backend: StorageBackend = StorageBackend.JSON
    path: str = DEFAULT_SETTINGS_PATH
    dsn: str | None = None


@dataclass
class PrepcalConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    source_path: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _non_negative_number(
    section: dict[str, Any], key: str, default: float, *, path: str
) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    if value < 0:
        raise ConfigError(f"{path}.{key} must not be negative")
    return float(value)


def _optional_string(section: dict[str, Any], key: str, *, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError("logging.format must be 'text' or 'json'")
    return LoggingConfig(
        level=level,
        format=fmt,
        log_root=_optional_string(section, "log_root", path="logging"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    cron = section.get("cron", SyncConfig.cron)
    if not isinstance(cron, str) or not cron.strip():
        raise ConfigError("sync.cron must be a non-empty string")
    if not croniter.is_valid(cron.strip()):
        raise ConfigError(f"sync.cron is not a valid cron expression: {cron!r}")
    return SyncConfig(
        cron=cron.strip(),
        resume_delay_s=_non_negative_number(
            section, "resume_delay_s", SyncConfig.resume_delay_s, path="sync"
        ),
        resume_check_interval_s=_non_negative_number(
            section, "resume_check_interval_s", SyncConfig.resume_check_interval_s, path="sync"
        ),
        resume_threshold_s=_non_negative_number(
            section, "resume_threshold_s", SyncConfig.resume_threshold_s, path="sync"
        ),
    )


def _parse_cache(data: dict[str, Any]) -> CacheConfig:
    section = _section(data, "cache")
    return CacheConfig(
        extraction_ttl_s=_non_negative_number(
            section, "extraction_ttl_s", CacheConfig.extraction_ttl_s, path="cache"
        ),
        detection_ttl_s=_non_negative_number(
            section, "detection_ttl_s", CacheConfig.detection_ttl_s, path="cache"
        ),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    calendar_id = _optional_string(section, "calendar_id", path="google") or "primary"
    config = GoogleConfig(
        client_id=_optional_string(section, "client_id", path="google"),
        client_secret=_optional_string(section, "client_secret", path="google"),
        calendar_id=calendar_id,
    )
    if bool(config.client_id) != bool(config.client_secret):
        raise ConfigError("google.client_id and google.client_secret must be set together")
    return config


def _parse_storage(data: dict[str, Any]) -> StorageConfig:
    section = _section(data, "storage")
    raw_backend = section.get("backend", StorageBackend.JSON.value)
    try:
        backend = StorageBackend(str(raw_backend).lower())
    except ValueError as exc:
        choices = ", ".join(b.value for b in StorageBackend)
        raise ConfigError(f"storage.backend must be one of {choices}") from exc

    dsn = _optional_string(section, "dsn", path="storage")
    if backend is StorageBackend.POSTGRES and not dsn:
        raise ConfigError("storage.dsn is required when storage.backend = 'postgres'")
    return StorageConfig(
        backend=backend,
        path=_optional_string(section, "path", path="storage") or DEFAULT_SETTINGS_PATH,
        dsn=dsn,
    )


def parse_config(data: dict[str, Any], *, source_path: Path | None = None) -> PrepcalConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    return PrepcalConfig(
        logging=_parse_logging(data),
        sync=_parse_sync(data),
        cache=_parse_cache(data),
        google=_parse_google(data),
        storage=_parse_storage(data),
        source_path=source_path,
    )


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH).expanduser()


def load_config(path: Path | None = None) -> PrepcalConfig:
    """Load and validate ``prepcal.toml``.

    Parameters
    ----------
    path:
        Explicit config file. When omitted, ``$PREPCAL_CONFIG`` or
        ``~/.prepcal/prepcal.toml`` is used, and a missing default file
        yields the built-in defaults.

    Raises
    ------
    ConfigError
        If an explicit file is missing, the TOML is invalid, or a value fails
        validation.
    """
    explicit = path is not None
    toml_path = Path(path).expanduser() if path is not None else default_config_path()

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return PrepcalConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source_path=toml_path)
