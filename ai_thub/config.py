"""
User configuration and logging setup.

``~/.ai_thub/config.json`` (override the directory with ``AI_THUB_HOME``)::

    {
      "dispatch": {"rateLimitDelay": 1.0, "retryDelay": 1.0, "maxRetries": 3,
                   "timeout": 30.0, "maxTokens": 7999},
      "endpoints": {"openai": "http://localhost:8080/v1/chat/completions"},
      "pollInterval": 2.0,
      "logging": {"level": "INFO", "file": "~/.ai_thub/ai_thub.log"}
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .providers import MAX_OUTPUT_TOKENS
from .storage import get_storage_path

logger = logging.getLogger(__name__)

RATE_LIMIT_DELAY = 1.0
RETRY_DELAY = 1.0
MAX_RETRIES = 3
REQUEST_TIMEOUT = 30.0
POLL_INTERVAL = 2.0


@dataclass
class Settings:
    rate_limit_delay: float = RATE_LIMIT_DELAY
    retry_delay: float = RETRY_DELAY
    max_retries: int = MAX_RETRIES
    timeout: float = REQUEST_TIMEOUT
    max_tokens: int = MAX_OUTPUT_TOKENS
    poll_interval: float = POLL_INTERVAL
    endpoint_overrides: dict[str, str] = field(default_factory=dict)
    log_level: str | None = None
    log_file: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        settings = cls()
        dispatch = raw.get("dispatch", {})
        if isinstance(dispatch, dict):
            settings.rate_limit_delay = _number(
                dispatch, "rateLimitDelay", settings.rate_limit_delay
            )
            settings.retry_delay = _number(dispatch, "retryDelay", settings.retry_delay)
            settings.max_retries = int(
                _number(dispatch, "maxRetries", settings.max_retries)
            )
            settings.timeout = _number(dispatch, "timeout", settings.timeout)
            settings.max_tokens = int(
                _number(dispatch, "maxTokens", settings.max_tokens)
            )

        endpoints = raw.get("endpoints", {})
        if isinstance(endpoints, dict):
            settings.endpoint_overrides = {
                str(k).lower(): v for k, v in endpoints.items() if isinstance(v, str) and v
            }

        settings.poll_interval = _number(raw, "pollInterval", settings.poll_interval)

        log_config = raw.get("logging", {})
        if isinstance(log_config, dict):
            level = log_config.get("level")
            settings.log_level = level.upper() if isinstance(level, str) else None
            log_file = log_config.get("file")
            settings.log_file = log_file if isinstance(log_file, str) and log_file else None
        return settings


def _number(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return default
    return float(value)


def get_config_path() -> Path:
    return get_storage_path() / "config.json"


def load_user_config(path: Path | None = None) -> dict[str, Any]:
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except (OSError, ValueError) as exc:
        logger.warning(f"Failed to load config from {config_path}: {exc}")
        return {}

    if not isinstance(loaded, dict):
        logger.warning(f"Config file {config_path} did not contain an object.")
        return {}

    return loaded


def load_settings(path: Path | None = None) -> Settings:
    return Settings.from_dict(load_user_config(path))


def setup_logging(settings: Settings, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO

    if not verbose and settings.log_level:
        level = getattr(logging, settings.log_level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if settings.log_file:
        expanded_path = os.path.expanduser(settings.log_file)
        try:
            handlers.append(logging.FileHandler(expanded_path, encoding="utf-8"))
        except OSError as e:
            logger.warning(f"Failed to setup log file {settings.log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
