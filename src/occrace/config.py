"""Harness configuration loading and validation.

Reads ``occrace.toml`` (or an explicit TOML file), resolves ``${VAR}``
references from the environment, and returns a validated HarnessConfig.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "occrace.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when harness configuration is missing, malformed, or invalid."""


class IsolationLevelError(ConfigError, ValueError):
    """Raised for an isolation level name that is not one of :class:`IsolationLevel`."""


class IsolationLevel(enum.StrEnum):
    """Transaction isolation levels, spelled the way asyncpg expects them."""

    READ_UNCOMMITTED = "read_uncommitted"
    READ_COMMITTED = "read_committed"
    REPEATABLE_READ = "repeatable_read"
    SERIALIZABLE = "serializable"

    @classmethod
    def parse(cls, value: str | IsolationLevel) -> IsolationLevel:
        """Accept ``"Read Committed"``, ``"read-committed"`` or ``"READ_COMMITTED"``."""
        if isinstance(value, IsolationLevel):
            return value
        normalized = re.sub(r"[\s\-]+", "_", str(value).strip()).lower()
        try:
            return cls(normalized)
        except ValueError as exc:
            levels = ", ".join(level.value for level in cls)
            raise IsolationLevelError(
                f"Invalid isolation level: {value!r}. Expected one of: {levels}"
            ) from exc


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from the [database] section.

    Connection parameters (host, port, credentials) are not part of the file;
    they come from DATABASE_URL or POSTGRES_* (see ``occrace.db``).
    """

    name: str = "occrace"
    schema: str = "occrace"
    min_pool_size: int = 2
    max_pool_size: int = 10
    command_timeout_s: float = 10.0


@dataclass
class RaceConfig:
    """Race scenario configuration from the [race] section.

    delay_s is how long each writer holds its first transaction open after
    both writers reached the rendezvous.  arrival_grace_s is how long a
    writer's first update may be in flight (typically blocked on the peer's
    row lock) before it counts as arrived.
    """

    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    delay_s: float = 1.0
    arrival_grace_s: float = 0.05
    timeout_s: float = 60.0


@dataclass
class HarnessConfig:
    """Parsed and validated harness configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    race: RaceConfig = field(default_factory=RaceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _number(section: dict, section_name: str, key: str, default: float, cast: type) -> Any:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{section_name}.{key} must be a number, got {raw!r}")
    if cast is int and isinstance(raw, float):
        raise ConfigError(f"{section_name}.{key} must be an integer, got {raw!r}")
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section_name}.{key} must be a number, got {raw!r}") from exc


def _parse_database(section: dict) -> DatabaseConfig:
    name = str(section.get("name", "occrace")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")

    schema_raw = section.get("schema", "occrace")
    if not isinstance(schema_raw, str):
        raise ConfigError("database.schema must be a string when set")
    schema = schema_raw.strip()
    if _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
        raise ConfigError(
            f"Invalid database.schema: {schema_raw!r}. Expected a valid SQL identifier-style value."
        )

    min_pool_size = _number(section, "database", "min_pool_size", 2, int)
    max_pool_size = _number(section, "database", "max_pool_size", 10, int)
    if min_pool_size < 0:
        raise ConfigError(f"Invalid database.min_pool_size: {min_pool_size!r}. Must be >= 0.")
    # Two writers each hold one connection, plus one for the baseline reads.
    if max_pool_size < 2:
        raise ConfigError(f"Invalid database.max_pool_size: {max_pool_size!r}. Must be >= 2.")
    if min_pool_size > max_pool_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")

    command_timeout_s = _number(section, "database", "command_timeout_s", 10.0, float)
    if command_timeout_s <= 0:
        raise ConfigError(
            f"Invalid database.command_timeout_s: {command_timeout_s!r}. Must be positive."
        )

    return DatabaseConfig(
        name=name,
        schema=schema,
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
        command_timeout_s=command_timeout_s,
    )


def validate_race(config: RaceConfig) -> RaceConfig:
    """Check the timing invariants of a [race] section and return it unchanged.

    Applied to parsed files and again after command-line overrides.
    """
    if config.delay_s < 0:
        raise ConfigError(f"Invalid race.delay_s: {config.delay_s!r}. Must be >= 0.")
    if config.arrival_grace_s < 0:
        raise ConfigError(
            f"Invalid race.arrival_grace_s: {config.arrival_grace_s!r}. Must be >= 0."
        )
    if config.timeout_s <= config.delay_s:
        raise ConfigError(
            f"Invalid race.timeout_s: {config.timeout_s!r}. Must be greater than race.delay_s."
        )
    return config


def _parse_race(section: dict) -> RaceConfig:
    isolation_level = IsolationLevel.parse(
        section.get("isolation_level", IsolationLevel.READ_COMMITTED.value)
    )
    delay_s = _number(section, "race", "delay_s", 1.0, float)
    arrival_grace_s = _number(section, "race", "arrival_grace_s", 0.05, float)
    timeout_s = _number(section, "race", "timeout_s", 60.0, float)
    return validate_race(
        RaceConfig(
            isolation_level=isolation_level,
            delay_s=delay_s,
            arrival_grace_s=arrival_grace_s,
            timeout_s=timeout_s,
        )
    )


def _parse_logging(section: dict) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_file=section.get("log_file"))


def parse_config(data: dict[str, Any]) -> HarnessConfig:
    """Validate an already-decoded TOML document and build a HarnessConfig."""
    data = resolve_env_vars(data)

    sections: dict[str, dict] = {}
    for name in ("database", "race", "logging"):
        section = data.get(name, {})
        if not isinstance(section, dict):
            raise ConfigError(f"[{name}] must be a TOML table")
        sections[name] = section

    return HarnessConfig(
        database=_parse_database(sections["database"]),
        race=_parse_race(sections["race"]),
        logging=_parse_logging(sections["logging"]),
    )


def load_config(path: Path) -> HarnessConfig:
    """Load and validate harness configuration.

    Parameters
    ----------
    path:
        Either a TOML file or a directory containing ``occrace.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
