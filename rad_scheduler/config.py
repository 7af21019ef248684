"""
YAML configuration for the scheduler process.

Strict parsing: unknown keys are rejected and every error names the offending
field path. Redis and database settings can be overridden from the
environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError
from .store import DEFAULT_DATABASE_URL
from .types import BackoffPolicy, JobOptions, QueueConfig, RedisSettings

DEFAULT_CONFIG = "rad_scheduler.yaml"
CONFIG_VERSION = 1
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
VALID_BACKOFF_TYPES = {"exponential", "fixed"}


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = DEFAULT_DATABASE_URL


@dataclass(frozen=True)
class LoggingSettings:
    file: Optional[str] = None
    level: str = "INFO"


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    queue: QueueConfig = field(default_factory=QueueConfig)
    jobs_modules: List[str] = field(default_factory=list)
    source: Optional[Path] = None


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def parse_retention(value: Any, field_path: str, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value >= 0:
        return value
    raise ConfigError(f"Error: {field_path} must be true, false or a number of seconds >= 0.")


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_queue_config(raw: Any, field_path: str = "queue") -> QueueConfig:
    queue_raw = ensure_mapping(raw, field_path, {"name", "connect_timeout_ms", "redis", "default_job_options"})
    defaults = QueueConfig()

    name = defaults.name
    if queue_raw.get("name") is not None:
        name = ensure_str(queue_raw.get("name"), f"{field_path}.name")
    connect_timeout_ms = ensure_int(
        queue_raw.get("connect_timeout_ms"),
        f"{field_path}.connect_timeout_ms",
        defaults.connect_timeout_ms,
    )

    redis_path = f"{field_path}.redis"
    redis_raw = ensure_mapping(queue_raw.get("redis"), redis_path, {"host", "port", "password", "db"})
    host = defaults.redis.host
    if redis_raw.get("host") is not None:
        host = ensure_str(redis_raw.get("host"), f"{redis_path}.host")
    password = redis_raw.get("password")
    if password is not None and not isinstance(password, str):
        raise ConfigError(f"Error: {redis_path}.password must be a string.")
    redis_settings = RedisSettings(
        host=host,
        port=ensure_int(redis_raw.get("port"), f"{redis_path}.port", defaults.redis.port),
        password=password or None,
        db=ensure_int(redis_raw.get("db"), f"{redis_path}.db", defaults.redis.db, minimum=0),
    )

    options_path = f"{field_path}.default_job_options"
    options_raw = ensure_mapping(
        queue_raw.get("default_job_options"),
        options_path,
        {"attempts", "backoff", "remove_on_complete", "remove_on_fail"},
    )
    default_options = defaults.default_job_options
    backoff_path = f"{options_path}.backoff"
    backoff_raw = ensure_mapping(options_raw.get("backoff"), backoff_path, {"type", "delay_ms"})
    backoff_type = default_options.backoff.type
    if backoff_raw.get("type") is not None:
        backoff_type = ensure_str(backoff_raw.get("type"), f"{backoff_path}.type").lower()
        if backoff_type not in VALID_BACKOFF_TYPES:
            raise ConfigError(
                f'Error: {backoff_path}.type must be one of {sorted(VALID_BACKOFF_TYPES)}, got "{backoff_type}".'
            )
    job_options = JobOptions(
        attempts=ensure_int(options_raw.get("attempts"), f"{options_path}.attempts", default_options.attempts),
        backoff=BackoffPolicy(
            type=backoff_type,
            delay_ms=ensure_int(
                backoff_raw.get("delay_ms"),
                f"{backoff_path}.delay_ms",
                default_options.backoff.delay_ms,
                minimum=0,
            ),
        ),
        remove_on_complete=parse_retention(
            options_raw.get("remove_on_complete"),
            f"{options_path}.remove_on_complete",
            default_options.remove_on_complete,
        ),
        remove_on_fail=parse_retention(
            options_raw.get("remove_on_fail"),
            f"{options_path}.remove_on_fail",
            default_options.remove_on_fail,
        ),
    )

    return QueueConfig(
        redis=redis_settings,
        default_job_options=job_options,
        name=name,
        connect_timeout_ms=connect_timeout_ms,
    )


def parse_config(payload: Dict[str, Any], source: Optional[Path] = None) -> AppConfig:
    unknown_top = set(payload.keys()) - {"version", "database", "logging", "jobs_modules", "queue"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    version = ensure_int(payload.get("version"), "version", CONFIG_VERSION)
    if version != CONFIG_VERSION:
        raise ConfigError(f"Error: Unsupported config version {version} (expected {CONFIG_VERSION}).")

    database_raw = ensure_mapping(payload.get("database"), "database", {"url"})
    database = DatabaseSettings()
    if database_raw.get("url") is not None:
        database = DatabaseSettings(url=ensure_str(database_raw.get("url"), "database.url"))

    logging_raw = ensure_mapping(payload.get("logging"), "logging", {"file", "level"})
    log_file = None
    if logging_raw.get("file") is not None:
        log_file = ensure_str(logging_raw.get("file"), "logging.file")
        if source is not None and not Path(log_file).is_absolute():
            log_file = str((source.parent / log_file).resolve())
    level = "INFO"
    if logging_raw.get("level") is not None:
        level = ensure_str(logging_raw.get("level"), "logging.level").upper()
        if level not in VALID_LOG_LEVELS:
            raise ConfigError(f'Error: logging.level must be one of {sorted(VALID_LOG_LEVELS)}, got "{level}".')

    modules_raw = payload.get("jobs_modules") or []
    if not isinstance(modules_raw, list):
        raise ConfigError("Error: jobs_modules must be a list of module names.")
    jobs_modules = [ensure_str(value, f"jobs_modules[{idx}]") for idx, value in enumerate(modules_raw)]

    return AppConfig(
        database=database,
        logging=LoggingSettings(file=log_file, level=level),
        queue=parse_queue_config(payload.get("queue")),
        jobs_modules=jobs_modules,
        source=source,
    )


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    redis_settings = config.queue.redis
    if environ.get("REDIS_HOST"):
        redis_settings = replace(redis_settings, host=environ["REDIS_HOST"].strip())
    if environ.get("REDIS_PORT"):
        redis_settings = replace(redis_settings, port=_env_int(environ, "REDIS_PORT", minimum=1))
    if environ.get("REDIS_PASSWORD"):
        redis_settings = replace(redis_settings, password=environ["REDIS_PASSWORD"])
    if environ.get("REDIS_DB"):
        redis_settings = replace(redis_settings, db=_env_int(environ, "REDIS_DB", minimum=0))

    database = config.database
    if environ.get("RAD_SCHEDULER_DATABASE_URL"):
        database = DatabaseSettings(url=environ["RAD_SCHEDULER_DATABASE_URL"].strip())

    return replace(
        config,
        database=database,
        queue=replace(config.queue, redis=redis_settings),
    )


def _env_int(environ: Mapping[str, str], name: str, minimum: int) -> int:
    raw = environ[name].strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f'Error: {name} must be an integer, got "{raw}".') from exc
    if value < minimum:
        raise ConfigError(f"Error: {name} must be >= {minimum}.")
    return value


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load config from `config_path`, or from the default file when it exists.

    An explicit path that does not exist is an error; a missing default file
    means built-in defaults plus environment overrides.
    """
    env = os.environ if environ is None else environ
    if config_path is not None:
        resolved = config_path.resolve()
        config = parse_config(_load_config_payload(resolved), source=resolved)
    else:
        default_path = Path(DEFAULT_CONFIG).resolve()
        if default_path.exists():
            config = parse_config(_load_config_payload(default_path), source=default_path)
        else:
            config = AppConfig()
    return apply_env_overrides(config, env)
