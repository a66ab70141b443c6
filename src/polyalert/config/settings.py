"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = directory / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        polymarket: dict[str, Any] | None = None,
        cache: dict[str, Any] | None = None,
        engine: dict[str, Any] | None = None,
        storage: dict[str, Any] | None = None,
        notify: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.polymarket = polymarket or {}
        self.cache = cache or {}
        self.engine = engine or {}
        self.storage = storage or {}
        self.notify = notify or {}
        self.api = api or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            polymarket=raw.get("polymarket"),
            cache=raw.get("cache"),
            engine=raw.get("engine"),
            storage=raw.get("storage"),
            notify=raw.get("notify"),
            api=raw.get("api"),
            logging=raw.get("logging"),
        )

    # Convenience accessors with defaults
    @property
    def gamma_api_base(self) -> str:
        return self.polymarket.get("gamma_api_base", "https://gamma-api.polymarket.com")

    @property
    def page_size(self) -> int:
        return int(self.polymarket.get("page_size", 500))

    @property
    def max_pages(self) -> int:
        return int(self.polymarket.get("max_pages", 10))

    @property
    def request_timeout_sec(self) -> float:
        return float(self.polymarket.get("request_timeout_sec", 10.0))

    @property
    def requests_per_sec(self) -> float:
        return float(self.polymarket.get("requests_per_sec", 10.0))

    @property
    def refresh_interval_sec(self) -> float:
        return float(self.cache.get("refresh_interval_sec", 60))

    @property
    def poll_interval_sec(self) -> float:
        return float(self.engine.get("poll_interval_sec", 10))

    @property
    def max_concurrent_fetches(self) -> int:
        return int(self.engine.get("max_concurrent_fetches", 8))

    @property
    def fetch_timeout_sec(self) -> float:
        return float(self.engine.get("fetch_timeout_sec", 15.0))

    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/alerts.duckdb")

    @property
    def telegram_bot_token(self) -> str | None:
        return os.environ.get("TELEGRAM_BOT_TOKEN") or self.notify.get("telegram_bot_token") or None

    @property
    def telegram_chat_id(self) -> str | None:
        return os.environ.get("TELEGRAM_CHAT_ID") or self.notify.get("telegram_chat_id") or None

    @property
    def search_limit(self) -> int:
        return int(self.api.get("search_limit", 20))

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
