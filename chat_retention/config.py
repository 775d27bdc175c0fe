"""
Application configuration from a plain dict (e.g. parsed app.yaml) or environment variables.

Keys:
  database_url            postgresql+asyncpg://... (required)
  gdpr_cleanup_hour       daily cleanup hour, local time (default 2)
  gdpr_cleanup_minute     (default 0)
  freshdesk_domain        Freshdesk subdomain; queue poller is disabled when unset
  freshdesk_api_key
  freshdesk_poll_seconds  (default 60)
  freshdesk_batch_size    (default 5)
  development_mode        fake Freshdesk tickets instead of calling the API
  log_level               (default INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

from chat_retention.constants import DEFAULT_CLEANUP_HOUR, DEFAULT_CLEANUP_MINUTE

ENV_PREFIX = "CHAT_RETENTION_"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    database_url: str
    gdpr_cleanup_hour: int = DEFAULT_CLEANUP_HOUR
    gdpr_cleanup_minute: int = DEFAULT_CLEANUP_MINUTE
    freshdesk_domain: str | None = None
    freshdesk_api_key: str | None = None
    freshdesk_poll_seconds: int = 60
    freshdesk_batch_size: int = 5
    development_mode: bool = False
    log_level: str = "INFO"

    @property
    def freshdesk_enabled(self) -> bool:
        return bool(self.freshdesk_domain and self.freshdesk_api_key) or self.development_mode


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _as_int(config: Mapping[str, Any], key: str, default: int, low: int, high: int) -> int:
    raw = config.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e
    if not low <= value <= high:
        raise ValueError(f"{key} must be between {low} and {high}, got {value}")
    return value


def _as_str(config: Mapping[str, Any], key: str) -> str | None:
    value = (config.get(key) or "").strip()
    return value or None


def load_config(config: Mapping[str, Any]) -> AppConfig:
    """
    Build AppConfig from a config dict.

    Raises:
        ValueError: missing database_url or out-of-range numeric values.
    """
    database_url = _as_str(config, "database_url")
    if database_url is None:
        raise ValueError("database_url is required")
    return AppConfig(
        database_url=database_url,
        gdpr_cleanup_hour=_as_int(config, "gdpr_cleanup_hour", DEFAULT_CLEANUP_HOUR, 0, 23),
        gdpr_cleanup_minute=_as_int(config, "gdpr_cleanup_minute", DEFAULT_CLEANUP_MINUTE, 0, 59),
        freshdesk_domain=_as_str(config, "freshdesk_domain"),
        freshdesk_api_key=_as_str(config, "freshdesk_api_key"),
        freshdesk_poll_seconds=_as_int(config, "freshdesk_poll_seconds", 60, 1, 86400),
        freshdesk_batch_size=_as_int(config, "freshdesk_batch_size", 5, 1, 100),
        development_mode=_as_bool(config.get("development_mode", False)),
        log_level=(_as_str(config, "log_level") or "INFO").upper(),
    )


def config_from_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """
    Collect CHAT_RETENTION_* variables into a config dict for load_config().

    DATABASE_URL is accepted as a fallback for CHAT_RETENTION_DATABASE_URL.
    """
    env = os.environ if environ is None else environ
    config: dict[str, Any] = {
        key[len(ENV_PREFIX):].lower(): value for key, value in env.items() if key.startswith(ENV_PREFIX)
    }
    if "database_url" not in config and env.get("DATABASE_URL"):
        config["database_url"] = env["DATABASE_URL"]
    return config


def configure_logging(level: str = "INFO") -> None:
    """Basic stderr logging for entry points; library modules only create loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
