"""Calendar core settings loading and validation.

Reads schoolcal.toml from a config directory, resolves ``${VAR}`` references
against the environment, and returns a validated CalendarSettings dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from schoolcal.calendar.models import SchoolConfig, resolve_zone

CONFIG_FILENAME = "schoolcal.toml"
API_BASE_URL_ENV = "SCHOOLCAL_API_BASE_URL"
DEFAULT_API_BASE_URL = "http://localhost:8000/api"
DEFAULT_SCHOOL_CONFIG_PATH = "/school-config/{school_id}"
DEFAULT_SCHOOL_CONFIG_PATH = "/school-config/{school_id}"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calendar settings are missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CacheConfig:
    """Event cache configuration from the [cache] section.

    ``max_entries`` of ``None`` keeps the cache unbounded; stale entries are
    evicted lazily on access either way.
    """

    ttl_seconds: float = 300.0
    max_entries: int | None = None


@dataclass
class RateLimitConfig:
    """Interactive Google sign-in attempt budget from [rate_limit]."""

    max_attempts: int = 10
    window_seconds: float = 300.0


@dataclass
class EndpointConfig:
    """REST backend endpoint paths from the [endpoints] section."""

    teacher_timetable: str = "/mobile-api/timetable/teacher"
    student_timetable: str = "/mobile-api/timetable/student"
    homework: str = "/mobile-api/homework"
    school_events: str = "/mobile-api/school-events"
    notifications: str = "/mobile-api/notifications"
    calendar_data: str = "/calendar/data"
    personal_events: str = "/calendar/personal"
    school_config: str = DEFAULT_SCHOOL_CONFIG_PATH


@dataclass
class CalendarSettings:
    """Parsed and validated calendar core settings."""

    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout_s: float = 30.0
    default_window_days: int = 30
    google_max_results: int = 100
    timezone: str = "UTC"
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    endpoints: EndpointConfig = field(default_factory=EndpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    schools: dict[str, SchoolConfig] = field(default_factory=dict)


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


def _positive_number(section: dict, key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    if raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be positive.")
    return raw


def _parse_cache(data: dict) -> CacheConfig:
    section = data.get("cache", {})
    if not isinstance(section, dict):
        raise ConfigError("[cache] must be a TOML table")
    ttl = float(_positive_number(section, "ttl_seconds", 300.0, "cache"))
    max_entries = section.get("max_entries")
    if max_entries is not None:
        if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries <= 0:
            raise ConfigError(
                f"Invalid cache.max_entries: {max_entries!r}. Must be a positive integer."
            )
    return CacheConfig(ttl_seconds=ttl, max_entries=max_entries)


def _parse_rate_limit(data: dict) -> RateLimitConfig:
    section = data.get("rate_limit", {})
    if not isinstance(section, dict):
        raise ConfigError("[rate_limit] must be a TOML table")
    return RateLimitConfig(
        max_attempts=int(_positive_number(section, "max_attempts", 10, "rate_limit")),
        window_seconds=float(_positive_number(section, "window_seconds", 300.0, "rate_limit")),
    )


def _parse_endpoints(data: dict) -> EndpointConfig:
    section = data.get("endpoints", {})
    if not isinstance(section, dict):
        raise ConfigError("[endpoints] must be a TOML table")
    endpoints = EndpointConfig()
    for key, value in section.items():
        if not hasattr(endpoints, key):
            raise ConfigError(f"Unknown endpoint: endpoints.{key}")
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"endpoints.{key} must be a non-empty string")
        setattr(endpoints, key, value.strip())
    return endpoints


def _parse_logging(data: dict) -> LoggingConfig:
    section = data.get("logging", {})
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a TOML table")
    fmt = section.get("format", "text")
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=section.get("log_root"),
    )


def parse_schools(raw: Any) -> dict[str, SchoolConfig]:
    """Parse the ``[[schools]]`` array into a registry keyed by school id."""
    if raw is None:
        return {}
    if not isinstance(raw, list):
        raise ConfigError("schools must be an array of tables ([[schools]])")

    schools: dict[str, SchoolConfig] = {}
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"schools[{index}] must be a TOML table")
        try:
            school = SchoolConfig.model_validate(entry)
        except ValidationError as exc:
            raise ConfigError(f"Invalid schools[{index}]: {exc}") from exc
        if school.school_id in schools:
            raise ConfigError(f"Duplicate school_id in schools[{index}]: {school.school_id!r}")
        schools[school.school_id] = school
    return schools


def parse_settings(data: dict[str, Any]) -> CalendarSettings:
    """Validate an already-decoded settings mapping."""
    data = resolve_env_vars(data)

    api_base_url = data.get("api_base_url") or os.environ.get(API_BASE_URL_ENV)
    if api_base_url is None:
        api_base_url = DEFAULT_API_BASE_URL
    if not isinstance(api_base_url, str) or not api_base_url.strip():
        raise ConfigError("api_base_url must be a non-empty string")

    timezone = data.get("timezone", "UTC")
    try:
        resolve_zone(timezone)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    return CalendarSettings(
        api_base_url=api_base_url.strip().rstrip("/"),
        request_timeout_s=float(_positive_number(data, "request_timeout_s", 30.0, "settings")),
        default_window_days=int(_positive_number(data, "default_window_days", 30, "settings")),
        google_max_results=int(_positive_number(data, "google_max_results", 100, "settings")),
        timezone=timezone,
        cache=_parse_cache(data),
        rate_limit=_parse_rate_limit(data),
        endpoints=_parse_endpoints(data),
        logging=_parse_logging(data),
        schools=parse_schools(data.get("schools")),
    )


def load_settings(config_dir: Path) -> CalendarSettings:
    """Load and validate ``schoolcal.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_settings(data)
