"""Configuration loading utilities for the onboarding narratives."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"
_ENV_PREFIX = "NARRATIVE_BOT_"
_TRUTHY = {"true", "1", "on", "yes"}


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    bot_user_id: int
    bot_username: str
    site_title: str
    category_id: Optional[int]
    category_slug: str
    welcome_topic_id: Optional[int]
    timeout_seconds: float
    reset_init_delay_seconds: float
    pacing_min_seconds: float
    pacing_max_seconds: float
    fast_mode: bool
    locale: str
    session_db_path: Path
    telemetry_db_path: Path

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        bot = data.get("bot", {})
        site = data.get("site", {})
        timing = data.get("timing", {})
        pacing = timing.get("pacing_seconds", {})
        storage = data.get("storage", {})
        return Settings(
            bot_user_id=int(bot.get("user_id", -2)),
            bot_username=str(bot.get("username", "discobot")),
            site_title=str(site.get("title", "")),
            category_id=_optional_int(site.get("category_id")),
            category_slug=str(site.get("category_slug", "")),
            welcome_topic_id=_optional_int(site.get("welcome_topic_id")),
            timeout_seconds=float(timing.get("timeout_seconds", 900)),
            reset_init_delay_seconds=float(timing.get("reset_init_delay_seconds", 2)),
            pacing_min_seconds=float(pacing.get("min", 2)),
            pacing_max_seconds=float(pacing.get("max", 3)),
            fast_mode=bool(data.get("fast_mode", False)),
            locale=str(data.get("locale", "en")),
            session_db_path=Path(storage.get("session_db", "narrative_sessions.db")),
            telemetry_db_path=Path(storage.get("telemetry_db", "narrative_telemetry.db")),
        )

    def with_env_overrides(self) -> "Settings":
        """Apply ``NARRATIVE_BOT_*`` environment overrides."""

        overrides: Dict[str, Any] = {}
        fast_mode = os.getenv(f"{_ENV_PREFIX}FAST_MODE")
        if fast_mode is not None:
            overrides["fast_mode"] = fast_mode.strip().lower() in _TRUTHY
        for field_name in ("welcome_topic_id", "category_id"):
            value = _env_int(f"{_ENV_PREFIX}{field_name.upper()}")
            if value is not None:
                overrides[field_name] = value
        timeout = _env_int(f"{_ENV_PREFIX}TIMEOUT_SECONDS")
        if timeout is not None:
            overrides["timeout_seconds"] = float(timeout)
        locale = os.getenv(f"{_ENV_PREFIX}LOCALE")
        if locale:
            overrides["locale"] = locale.strip()
        session_db = os.getenv(f"{_ENV_PREFIX}SESSION_DB")
        if session_db:
            overrides["session_db_path"] = Path(session_db)
        if not overrides:
            return self
        return replace(self, **overrides)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _env_int(env_key: str) -> Optional[int]:
    value = os.getenv(env_key)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring invalid integer %s for %s", value, env_key)
        return None


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data).with_env_overrides()
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
