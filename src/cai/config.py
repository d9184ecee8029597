"""Cai configuration loading and validation.

Reads ``cai.toml``, resolves ``${VAR}`` references, and returns a validated
:class:`CaiConfig` dataclass.  User scheduling preferences are not part of this
file; they live in the state store (see :mod:`cai.core.preferences`).
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

DEFAULT_CONFIG_PATH = Path("cai.toml")
DEFAULT_STATE_PATH = "~/.cai/state.json"
DEFAULT_SYNC_CRON = "*/15 * * * *"
DEFAULT_HORIZON_DAYS = 14

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration or preferences are missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [cai.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Periodic sync configuration from [cai.sync] section."""

    enabled: bool = True
    cron: str = DEFAULT_SYNC_CRON


@dataclass
class StateConfig:
    """State store configuration from [cai.state] section."""

    backend: str = "local"  # "local" or "postgres"
    path: str = DEFAULT_STATE_PATH
    dsn: str | None = None


@dataclass
class GoogleConfig:
    """Google credentials configuration from [cai.google] section."""

    credentials_env: str = "CAI_GOOGLE_CREDENTIALS"


@dataclass
class CaiConfig:
    """Parsed and validated configuration."""

    timezone: str = "UTC"
    calendar_id: str = "primary"
    horizon_days: int = DEFAULT_HORIZON_DAYS
    skip_weekends: bool = True
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    state: StateConfig = field(default_factory=StateConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

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


def _section(parent: dict[str, Any], name: str, path: str) -> dict[str, Any]:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return value


def parse_config(data: dict[str, Any]) -> CaiConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    cai_section = _section(data, "cai", "cai")

    timezone = str(cai_section.get("timezone", "UTC")).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid cai.timezone: {timezone!r}") from exc

    calendar_id = str(cai_section.get("calendar_id", "primary")).strip()
    if not calendar_id:
        raise ConfigError("cai.calendar_id must be a non-empty string")

    horizon_days = int(cai_section.get("horizon_days", DEFAULT_HORIZON_DAYS))
    if horizon_days <= 0:
        raise ConfigError(
            f"Invalid cai.horizon_days: {horizon_days!r}. Must be a positive integer."
        )
    skip_weekends = bool(cai_section.get("skip_weekends", True))

    # --- [cai.logging] ---
    logging_section = _section(cai_section, "logging", "cai.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid cai.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [cai.sync] ---
    sync_section = _section(cai_section, "sync", "cai.sync")
    cron = str(sync_section.get("cron", DEFAULT_SYNC_CRON)).strip()
    if not croniter.is_valid(cron):
        raise ConfigError(f"Invalid cai.sync.cron: {cron!r}")
    sync_config = SyncConfig(enabled=bool(sync_section.get("enabled", True)), cron=cron)

    # --- [cai.state] ---
    state_section = _section(cai_section, "state", "cai.state")
    backend = str(state_section.get("backend", "local")).strip().lower()
    if backend not in ("local", "postgres"):
        raise ConfigError(
            f"Invalid cai.state.backend: {backend!r}. Expected 'local' or 'postgres'."
        )
    dsn = state_section.get("dsn")
    if backend == "postgres" and not dsn:
        raise ConfigError("cai.state.dsn is required when cai.state.backend is 'postgres'")
    state_config = StateConfig(
        backend=backend,
        path=str(state_section.get("path", DEFAULT_STATE_PATH)),
        dsn=dsn,
    )

    # --- [cai.google] ---
    google_section = _section(cai_section, "google", "cai.google")
    credentials_env = str(google_section.get("credentials_env", "CAI_GOOGLE_CREDENTIALS")).strip()
    if not credentials_env:
        raise ConfigError("cai.google.credentials_env must be a non-empty string")

    return CaiConfig(
        timezone=timezone,
        calendar_id=calendar_id,
        horizon_days=horizon_days,
        skip_weekends=skip_weekends,
        logging=logging_config,
        sync=sync_config,
        state=state_config,
        google=GoogleConfig(credentials_env=credentials_env),
    )


def load_config(path: Path | None = None) -> CaiConfig:
    """Load and validate ``cai.toml``.

    A missing file at the default location yields the default configuration;
    a missing file that was asked for explicitly is an error.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path or DEFAULT_CONFIG_PATH
    if not toml_path.exists():
        if path is None:
            return CaiConfig()
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    try:
        return parse_config(data)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value in {toml_path}: {exc}") from exc
