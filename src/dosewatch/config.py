"""Dosewatch configuration loading and validation.

Reads dosewatch.toml from a config directory, parses all sections, and returns
a validated DosewatchConfig dataclass.  Every section is optional; a missing
file is an error only when :func:`load_config` is called explicitly.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "dosewatch.toml"

# Matches ${VAR_NAME} references.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when dosewatch configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [dosewatch.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ToleranceConfig:
    """Default lateness thresholds from [dosewatch.tolerance].

    Regimens may override each threshold individually; these values fill in
    whatever a regimen leaves unset.
    """

    late_minutes: int = 60
    very_late_minutes: int = 180
    missed_cutoff_minutes: int = 240


@dataclass
class CoSignConfig:
    """Co-sign windows from [dosewatch.cosign]."""

    window_minutes: int = 30
    implicit_window_minutes: int = 30


@dataclass
class SweeperConfig:
    """Background sweeper settings from [dosewatch.sweeper]."""

    enabled: bool = True
    interval_seconds: int = 60
    lookback_hours: int = 48


@dataclass
class OfflineConfig:
    """Client-side offline queue settings from [dosewatch.offline]."""

    queue_path: str = "data/offline-queue.sqlite3"
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0


@dataclass
class ApiConfig:
    """HTTP server settings from [dosewatch.api]."""

    host: str = "127.0.0.1"
    port: int = 41300


@dataclass
class DosewatchConfig:
    """Fully parsed dosewatch configuration."""

    name: str = "dosewatch"
    db_name: str = "dosewatch"
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tolerance: ToleranceConfig = field(default_factory=ToleranceConfig)
    cosign: CoSignConfig = field(default_factory=CoSignConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    offline: OfflineConfig = field(default_factory=OfflineConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


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


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if isinstance(raw, bool) or value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be positive.")
    return value


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path}.{key} must be a TOML table")
    return value


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid dosewatch.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_tolerance(section: dict[str, Any]) -> ToleranceConfig:
    path = "dosewatch.tolerance"
    late = _positive_int(section, "late_minutes", 60, path)
    very_late = _positive_int(section, "very_late_minutes", 180, path)
    cutoff = _positive_int(section, "missed_cutoff_minutes", max(240, very_late), path)
    if very_late < late:
        raise ConfigError(
            f"Invalid {path}: very_late_minutes ({very_late}) must be >= late_minutes ({late})."
        )
    if cutoff < very_late:
        raise ConfigError(
            f"Invalid {path}: missed_cutoff_minutes ({cutoff}) must be >= "
            f"very_late_minutes ({very_late})."
        )
    return ToleranceConfig(
        late_minutes=late, very_late_minutes=very_late, missed_cutoff_minutes=cutoff
    )


def _parse_cosign(section: dict[str, Any]) -> CoSignConfig:
    path = "dosewatch.cosign"
    return CoSignConfig(
        window_minutes=_positive_int(section, "window_minutes", 30, path),
        implicit_window_minutes=_positive_int(section, "implicit_window_minutes", 30, path),
    )


def _parse_sweeper(section: dict[str, Any]) -> SweeperConfig:
    path = "dosewatch.sweeper"
    enabled = section.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{path}.enabled must be a boolean")
    return SweeperConfig(
        enabled=enabled,
        interval_seconds=_positive_int(section, "interval_seconds", 60, path),
        lookback_hours=_positive_int(section, "lookback_hours", 48, path),
    )


def _parse_offline(section: dict[str, Any]) -> OfflineConfig:
    path = "dosewatch.offline"
    queue_path = section.get("queue_path", OfflineConfig.queue_path)
    if not isinstance(queue_path, str) or not queue_path.strip():
        raise ConfigError(f"{path}.queue_path must be a non-empty string")
    base_delay = _positive_float(section, "base_delay_seconds", 0.5, path)
    max_delay = _positive_float(section, "max_delay_seconds", 30.0, path)
    if max_delay < base_delay:
        raise ConfigError(f"{path}.max_delay_seconds must be >= base_delay_seconds")
    return OfflineConfig(
        queue_path=queue_path.strip(),
        max_attempts=_positive_int(section, "max_attempts", 5, path),
        base_delay_seconds=base_delay,
        max_delay_seconds=max_delay,
    )


def _parse_api(section: dict[str, Any]) -> ApiConfig:
    host = section.get("host", ApiConfig.host)
    if not isinstance(host, str) or not host.strip():
        raise ConfigError("dosewatch.api.host must be a non-empty string")
    return ApiConfig(
        host=host.strip(), port=_positive_int(section, "port", ApiConfig.port, "dosewatch.api")
    )


def parse_config(data: dict[str, Any]) -> DosewatchConfig:
    """Validate an already-decoded TOML document into a DosewatchConfig."""
    data = resolve_env_vars(data)

    root = data.get("dosewatch", {})
    if not isinstance(root, dict):
        raise ConfigError("[dosewatch] must be a TOML table")

    name = str(root.get("name", "dosewatch")).strip()
    if not name:
        raise ConfigError("dosewatch.name must be a non-empty string")

    db_section = _section(root, "db", "dosewatch")
    db_name = str(db_section.get("name", name)).strip()
    if not db_name:
        raise ConfigError("dosewatch.db.name must be a non-empty string")

    db_schema_raw = db_section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str):
            raise ConfigError("dosewatch.db.schema must be a string when set")
        normalized_schema = db_schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                "Invalid dosewatch.db.schema: "
                f"{db_schema_raw!r}. Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema

    return DosewatchConfig(
        name=name,
        db_name=db_name,
        db_schema=db_schema,
        logging=_parse_logging(_section(root, "logging", "dosewatch")),
        tolerance=_parse_tolerance(_section(root, "tolerance", "dosewatch")),
        cosign=_parse_cosign(_section(root, "cosign", "dosewatch")),
        sweeper=_parse_sweeper(_section(root, "sweeper", "dosewatch")),
        offline=_parse_offline(_section(root, "offline", "dosewatch")),
        api=_parse_api(_section(root, "api", "dosewatch")),
    )


def load_config(config_dir: Path) -> DosewatchConfig:
    """Load and validate a dosewatch.toml from *config_dir*.

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

    return parse_config(data)
