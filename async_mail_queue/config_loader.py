"""Settings loader for the mail queue service.

Values come from an INI file (default: ``config.ini``, overridable through
``GMQ_CONFIG``) with ``GMQ_*`` environment variables as fallbacks.

Environment variables:
  GMQ_CONFIG - Path to config.ini file (default: config.ini)
  GMQ_HOST / GMQ_PORT - HTTP server bind address (default: 0.0.0.0:8000)
  GMQ_API_TOKEN - API authentication token
  GMQ_HISTORY_DB_PATH - SQLite file for the delivery log (default: disabled)
  GMQ_TICK_INTERVAL - Scheduler tick in seconds (default: 1.0)
  GMQ_BATCH_SIZE - Messages per batch (default: 10)
  GMQ_RATE_PER_MINUTE - Throughput ceiling (default: 100)
  GMQ_MAX_RETRIES - Attempts before a message fails (default: 3)
  GMQ_RETENTION_SECONDS - How long processed messages stay visible (default: 3600)
  GMQ_SEND_TIMEOUT - Per-message delivery timeout (default: 30)
  GMQ_SHORT_CIRCUIT_PERMANENT - Fail permanent errors without retrying (default: False)
  GMQ_SMTP_HOST / GMQ_SMTP_PORT / GMQ_SMTP_USER / GMQ_SMTP_PASSWORD / GMQ_SMTP_USE_TLS / GMQ_SMTP_SENDER
  GMQ_TEMPLATES_DIR - Directory with ``<name>.html`` jinja2 templates
  GMQ_SITE_URL - Public site URL used in notification links
  GMQ_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

Config file sections/keys:
  [server] host, port, api_token
  [storage] history_db_path
  [delivery] tick_interval_seconds, batch_size, rate_per_minute, max_retries,
             retention_seconds, send_timeout_seconds, short_circuit_permanent
  [smtp] host, port, user, password, use_tls, sender
  [templates] directory
  [site] url
  [logging] delivery_activity
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .logger import get_logger

logger = get_logger()


@dataclass(frozen=True)
class QueueSettings:
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: Optional[str] = None
    history_db_path: Optional[str] = None
    tick_interval: float = 1.0
    batch_size: int = 10
    rate_per_minute: int = 100
    max_retries: int = 3
    retention_seconds: int = 3600
    send_timeout: float = 30.0
    short_circuit_permanent: bool = False
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: Optional[bool] = None
    smtp_sender: str = "noreply@forexfactory.cc"
    templates_dir: Optional[str] = None
    site_url: str = "https://forexfactory.cc"
    log_delivery_activity: bool = False


def _parse_bool(value: str | None, default: bool | None) -> bool | None:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(config_path: str | os.PathLike | None = None, environ: Mapping[str, str] | None = None) -> QueueSettings:
    """Build :class:`QueueSettings` from the INI file and the environment."""
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("GMQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded settings from %s", path)

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_name)

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}")

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}")

    def get_str(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        value = get(section, option, env_name)
        if value is None:
            return default
        value = value.strip()
        return value or default

    defaults = QueueSettings()
    history_db_path = get_str("storage", "history_db_path", "GMQ_HISTORY_DB_PATH")
    if history_db_path:
        history_db_path = os.path.expanduser(history_db_path)

    settings = QueueSettings(
        http_host=get_str("server", "host", "GMQ_HOST", defaults.http_host),
        http_port=get_int("server", "port", "GMQ_PORT", defaults.http_port),
        api_token=get_str("server", "api_token", "GMQ_API_TOKEN"),
        history_db_path=history_db_path,
        tick_interval=get_float("delivery", "tick_interval_seconds", "GMQ_TICK_INTERVAL", defaults.tick_interval),
        batch_size=get_int("delivery", "batch_size", "GMQ_BATCH_SIZE", defaults.batch_size),
        rate_per_minute=get_int("delivery", "rate_per_minute", "GMQ_RATE_PER_MINUTE", defaults.rate_per_minute),
        max_retries=get_int("delivery", "max_retries", "GMQ_MAX_RETRIES", defaults.max_retries),
        retention_seconds=get_int("delivery", "retention_seconds", "GMQ_RETENTION_SECONDS", defaults.retention_seconds),
        send_timeout=get_float("delivery", "send_timeout_seconds", "GMQ_SEND_TIMEOUT", defaults.send_timeout),
        short_circuit_permanent=bool(
            _parse_bool(get("delivery", "short_circuit_permanent", "GMQ_SHORT_CIRCUIT_PERMANENT"), False)
        ),
        smtp_host=get_str("smtp", "host", "GMQ_SMTP_HOST"),
        smtp_port=get_int("smtp", "port", "GMQ_SMTP_PORT", defaults.smtp_port),
        smtp_user=get_str("smtp", "user", "GMQ_SMTP_USER"),
        smtp_password=get_str("smtp", "password", "GMQ_SMTP_PASSWORD"),
        smtp_use_tls=_parse_bool(get("smtp", "use_tls", "GMQ_SMTP_USE_TLS"), None),
        smtp_sender=get_str("smtp", "sender", "GMQ_SMTP_SENDER", defaults.smtp_sender),
        templates_dir=get_str("templates", "directory", "GMQ_TEMPLATES_DIR"),
        site_url=get_str("site", "url", "GMQ_SITE_URL", defaults.site_url).rstrip("/"),
        log_delivery_activity=bool(
            _parse_bool(get("logging", "delivery_activity", "GMQ_LOG_DELIVERY_ACTIVITY"), False)
        ),
    )

    if settings.batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if settings.rate_per_minute <= 0:
        raise ValueError("rate_per_minute must be positive")
    if settings.max_retries < 1:
        raise ValueError("max_retries must be at least 1")
    return settings
