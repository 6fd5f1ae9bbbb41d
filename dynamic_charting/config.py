from __future__ import annotations

import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .env import get_env

DEFAULT_TIMEZONE = "UTC"
DEFAULT_ENTRY_LIMIT = 500
DEFAULT_LOG_LEVEL = "INFO"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AnalyticsSettings:
    entry_limit: int = DEFAULT_ENTRY_LIMIT
    include_partial: bool = False
    auto_recalculate: bool = True


@dataclass(frozen=True)
class AppConfig:
    timezone: str = DEFAULT_TIMEZONE
    analytics: AnalyticsSettings = AnalyticsSettings()
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _config_path() -> Path | None:
    """Resolve the TOML configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    default_path = Path("config/dynamic_charting.toml")
    if default_path.exists():
        return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce_timezone(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        return DEFAULT_TIMEZONE
    candidate = raw.strip()
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return DEFAULT_TIMEZONE
    return candidate


def _coerce_bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_analytics(raw: Mapping[str, Any] | None) -> AnalyticsSettings:
    base = AnalyticsSettings()
    if not raw:
        return base
    try:
        entry_limit = int(raw.get("entry_limit", base.entry_limit))
    except (TypeError, ValueError):
        entry_limit = base.entry_limit
    if entry_limit <= 0:
        entry_limit = base.entry_limit
    return AnalyticsSettings(
        entry_limit=entry_limit,
        include_partial=_coerce_bool(raw.get("include_partial"), base.include_partial),
        auto_recalculate=_coerce_bool(raw.get("auto_recalculate"), base.auto_recalculate),
    )


def _coerce_log_level(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip().upper() in _LOG_LEVELS:
        return raw.strip().upper()
    return DEFAULT_LOG_LEVEL


def _build_config(raw: Mapping[str, Any]) -> AppConfig:
    analytics_section = raw.get("analytics")
    return AppConfig(
        timezone=_coerce_timezone(raw.get("timezone")),
        analytics=_coerce_analytics(analytics_section if isinstance(analytics_section, Mapping) else None),
        log_level=_coerce_log_level(raw.get("log_level")),
    )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    if not path:
        return AppConfig()
    data = _load_toml(path)
    return _build_config(data)


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    config = get_config()
    return {
        "timezone": config.timezone,
        "analytics": {
            "entry_limit": config.analytics.entry_limit,
            "include_partial": config.analytics.include_partial,
            "auto_recalculate": config.analytics.auto_recalculate,
        },
        "log_level": config.log_level,
        "source": str(_config_path() or "defaults"),
    }
