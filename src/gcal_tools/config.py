"""Configuration loading and validation.

Reads ``gcal_tools.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated :class:`ToolsConfig` dataclass.

Example::

    [logging]
    level = "INFO"
    format = "json"

    [calendar]
    calendar_id = "primary"
    timezone = "America/Los_Angeles"

    [calendar.conflicts]
    warning = 0.7
    blocking = 0.95

    [credentials]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    refresh_token = "${GOOGLE_REFRESH_TOKEN}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from gcal_tools.calendar.auth import OAuthCredentials
from gcal_tools.calendar.batch import (
    DEFAULT_BATCH_BASE_BACKOFF_SECONDS,
    DEFAULT_BATCH_MAX_RETRIES,
    GOOGLE_CALENDAR_BATCH_ENDPOINT,
)
from gcal_tools.calendar.client import GOOGLE_API_ROOT_URL
from gcal_tools.calendar.models import ConflictThresholds

DEFAULT_CONFIG_FILENAME = "gcal_tools.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


class CalendarConfig(BaseModel):
    """Configuration from the [calendar] section."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(default="primary", min_length=1)
    timezone: str = "UTC"
    api_base_url: str = GOOGLE_API_ROOT_URL
    batch_endpoint: str = GOOGLE_CALENDAR_BATCH_ENDPOINT
    request_timeout_s: float = Field(default=30.0, gt=0)
    max_batch_retries: int = Field(default=DEFAULT_BATCH_MAX_RETRIES, ge=0)
    retry_base_backoff_s: float = Field(default=DEFAULT_BATCH_BASE_BACKOFF_SECONDS, ge=0)
    conflicts: ConflictThresholds = Field(default_factory=ConflictThresholds)

    @field_validator("calendar_id", "timezone", "api_base_url", "batch_endpoint")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ValueError, ZoneInfoNotFoundError) as exc:
            raise ValueError(f"timezone must be a valid IANA timezone: {value!r}") from exc
        return value


@dataclass
class ToolsConfig:
    """Parsed and validated configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    credentials: OAuthCredentials | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values pass through
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
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _parse_logging(section: Any) -> LoggingConfig:
    if section is None:
        return LoggingConfig()
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a table")

    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    log_file = section.get("log_file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError("logging.log_file must be a string when set")
    return LoggingConfig(level=level, format=log_format, log_file=log_file)


def _parse_calendar(section: Any) -> CalendarConfig:
    if section is None:
        return CalendarConfig()
    if not isinstance(section, dict):
        raise ConfigError("[calendar] must be a table")
    try:
        return CalendarConfig.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [calendar] config: {exc}") from exc


def _parse_credentials(section: Any) -> OAuthCredentials | None:
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ConfigError("[credentials] must be a table")
    try:
        return OAuthCredentials.model_validate(section)
    except ValidationError as exc:
        # Field names only; credential values never reach the message.
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        raise ConfigError(f"Invalid [credentials] config: {', '.join(fields)}") from exc


def load_config(path: Path) -> ToolsConfig:
    """Load and validate a config file.

    *path* may be the TOML file itself or a directory containing
    ``gcal_tools.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references an unset
        environment variable, or holds an invalid value.
    """
    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    return ToolsConfig(
        logging=_parse_logging(data.get("logging")),
        calendar=_parse_calendar(data.get("calendar")),
        credentials=_parse_credentials(data.get("credentials")),
    )
