from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _resolve_data_dir() -> Path:
    override = _env("PULSE_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


DEFAULT_IMPACT_WEIGHTS: dict[str, int] = {
    "Network": 9,
    "Billing": 8,
    "Home Internet": 7,
    "Mobile App": 6,
    "General": 5,
}

DEFAULT_AREA_COLORS: dict[str, str] = {
    "Network": "#E8258E",
    "Mobile App": "#7C3E93",
    "Billing": "#00A19C",
    "Home Internet": "#F58220",
}

FALLBACK_AREA_COLOR = "#6B7280"


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_resolve_data_dir)
    database_path: Path | None = None
    config_file: Path | None = Field(
        default_factory=lambda: Path(_env("PULSE_CONFIG")) if _env("PULSE_CONFIG") else None
    )

    chi_cache_ttl_seconds: float = 300.0
    store_timeout_seconds: float = 10.0
    page_size: int = 1000
    page_retries: int = 3
    page_backoff_seconds: float = 1.0

    monitor_window_hours: int = 72
    monitor_workers: int = 4
    timeline_limit: int = 10

    users_per_intensity: int = 10
    critical_threshold: float = 100.0

    cron_secret: str = Field(default_factory=lambda: _env("CRON_SECRET"))
    site_url: str = Field(default_factory=lambda: _env("PULSE_SITE_URL", "http://localhost:8001"))

    impact_weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_IMPACT_WEIGHTS))
    product_area_colors: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_AREA_COLORS))

    @property
    def resolved_database_path(self) -> Path:
        return self.database_path or self.data_dir / "pulse.db"

    def area_color(self, name: str) -> str:
        return self.product_area_colors.get(name, FALLBACK_AREA_COLOR)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


# Scalar settings that may be overridden from PULSE_* environment variables.
_ENV_OVERRIDES: dict[str, str] = {
    "database_path": "PULSE_DB_PATH",
    "chi_cache_ttl_seconds": "PULSE_CHI_CACHE_TTL",
    "store_timeout_seconds": "PULSE_STORE_TIMEOUT",
    "page_size": "PULSE_PAGE_SIZE",
    "page_retries": "PULSE_PAGE_RETRIES",
    "page_backoff_seconds": "PULSE_PAGE_BACKOFF",
    "monitor_window_hours": "PULSE_MONITOR_WINDOW_HOURS",
    "monitor_workers": "PULSE_MONITOR_WORKERS",
    "users_per_intensity": "PULSE_USERS_PER_INTENSITY",
    "critical_threshold": "PULSE_CRITICAL_THRESHOLD",
}


def build_settings(overrides: dict[str, Any] | None = None) -> Settings:
    """Assemble settings from defaults, the optional YAML file, env, then *overrides*."""
    values: dict[str, Any] = {}
    base = Settings()
    if base.config_file is not None:
        raw = base.load_yaml(base.config_file)
        for key in ("impact_weights", "product_area_colors"):
            section = raw.get(key)
            if isinstance(section, dict):
                merged = dict(getattr(base, key))
                merged.update(section)
                values[key] = merged
        for key, val in raw.items():
            if key in Settings.model_fields and key not in values:
                values[key] = val
    for field, env_name in _ENV_OVERRIDES.items():
        val = _env(env_name)
        if val:
            values[field] = val
    values.update(overrides or {})
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return build_settings()
