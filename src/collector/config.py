"""
Configuration loading.

Settings come from an optional TOML file (path in ``TG_COLLECTOR_CONFIG``)
and from environment variables, which take precedence over the file.
Every value has a documented default so the collector can start with an
empty environment; missing Telegram credentials only disable ingestion.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import toml
from cryptography.fernet import Fernet

from shared.errors import ConfigError

logger = logging.getLogger("collector.config")

CONFIG_PATH_ENV = "TG_COLLECTOR_CONFIG"

DEFAULT_SESSION_PATH = "session.session"
DEFAULT_DATABASE_URL = "postgresql://localhost/f1000"


@dataclass
class TelegramConfig:
    api_id: int = 0
    api_hash: str = ""
    phone_number: str = ""
    session_path: str = DEFAULT_SESSION_PATH
    session_key: Optional[str] = None


@dataclass
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL
    min_size: int = 1
    max_size: int = 5


@dataclass
class CollectorConfig:
    poll_timeout: float = 10.0
    retry_delay: float = 1.0
    queue_size: int = 1000
    status_interval: float = 300.0


@dataclass
class Config:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    log_level: str = "INFO"

    def is_telegram_configured(self) -> bool:
        """True when api id, api hash and phone number are all set."""
        return (
            self.telegram.api_id != 0
            and bool(self.telegram.api_hash)
            and bool(self.telegram.phone_number)
        )


# (env var, toml section, toml key, attribute path, converter)
_SETTINGS: tuple[tuple[str, str, str, str, Callable[[Any], Any]], ...] = (
    ("TELEGRAM_API_ID", "telegram", "api_id", "telegram.api_id", int),
    ("TELEGRAM_API_HASH", "telegram", "api_hash", "telegram.api_hash", str),
    ("TELEGRAM_PHONE_NUMBER", "telegram", "phone_number", "telegram.phone_number", str),
    ("TELEGRAM_SESSION_PATH", "telegram", "session_path", "telegram.session_path", str),
    ("TELEGRAM_SESSION_KEY", "telegram", "session_key", "telegram.session_key", str),
    ("DATABASE_URL", "database", "url", "database.url", str),
    ("DATABASE_MIN_POOL", "database", "min_size", "database.min_size", int),
    ("DATABASE_MAX_POOL", "database", "max_size", "database.max_size", int),
    ("COLLECTOR_POLL_TIMEOUT", "collector", "poll_timeout", "collector.poll_timeout", float),
    ("COLLECTOR_RETRY_DELAY", "collector", "retry_delay", "collector.retry_delay", float),
    ("COLLECTOR_QUEUE_SIZE", "collector", "queue_size", "collector.queue_size", int),
    ("COLLECTOR_STATUS_INTERVAL", "collector", "status_interval", "collector.status_interval", float),
    ("LOG_LEVEL", "logging", "level", "log_level", str),
)


def _read_file(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    try:
        return toml.load(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except toml.TomlDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid TOML: {exc}") from exc


def _convert(name: str, raw: Any, converter: Callable[[Any], Any]) -> Any:
    if isinstance(raw, str):
        raw = raw.strip()
    try:
        return converter(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a valid {converter.__name__}, got {raw!r}") from exc


def _assign(config: Config, attr_path: str, value: Any) -> None:
    target: Any = config
    *parents, leaf = attr_path.split(".")
    for part in parents:
        target = getattr(target, part)
    setattr(target, leaf, value)


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Build the collector configuration.

    Args:
        path: Optional TOML settings file.  Defaults to the path in
              ``TG_COLLECTOR_CONFIG`` when that variable is set.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        A populated :class:`Config`.

    Raises:
        ConfigError: If a numeric setting or the session key is malformed,
            or the config file cannot be parsed.
    """
    env = os.environ if environ is None else environ
    if path is None and env.get(CONFIG_PATH_ENV):
        path = Path(env[CONFIG_PATH_ENV])

    file_values = _read_file(path)
    config = Config()

    for env_name, section, key, attr_path, converter in _SETTINGS:
        raw = env.get(env_name)
        if raw is None or raw == "":
            raw = file_values.get(section, {}).get(key)
        if raw is None or raw == "":
            continue
        _assign(config, attr_path, _convert(env_name, raw, converter))

    config.log_level = config.log_level.upper()
    if not isinstance(logging.getLevelName(config.log_level), int):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got {config.log_level!r}")
    if config.telegram.session_key:
        try:
            Fernet(config.telegram.session_key.encode())
        except ValueError as exc:
            raise ConfigError(
                "TELEGRAM_SESSION_KEY must be a url-safe base64-encoded 32-byte Fernet key"
            ) from exc
    logger.info("Configuration loaded%s", f" from {path}" if path else "")

    if config.telegram.api_id == 0:
        logger.warning("TELEGRAM_API_ID not configured")
    if not config.telegram.api_hash:
        logger.warning("TELEGRAM_API_HASH not configured")
    if not config.telegram.phone_number:
        logger.warning("TELEGRAM_PHONE_NUMBER not configured")

    return config
