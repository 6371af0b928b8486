"""Centralized settings management for the harvester."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from croniter import croniter
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import make_url
from sqlalchemy.exc import ArgumentError

PRODUCTION_SCHEDULE = "0 */3 * * *"
DEVELOPMENT_SCHEDULE = "*/10 * * * *"


def _split_csv(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


class HarvesterSettings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Every field can be set through a ``HARVESTER_``-prefixed environment
    variable (``HARVESTER_STAGGER_MINUTES=2``) or a ``.env`` file in the
    working directory.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    MODE: str = Field(default="production", pattern="^(development|production)$")

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    DATA_DIR: Path = Path("data")
    CONFIG_DIR: Path = Path("configs")
    LOG_DIR: Path | None = None

    # -------------------------------------------------------------------------
    # PERSISTENCE
    # -------------------------------------------------------------------------
    DATABASE_URL: str | None = None

    # -------------------------------------------------------------------------
    # SCHEDULING
    # -------------------------------------------------------------------------
    DEFAULT_SCHEDULE: str | None = None
    STAGGER_MINUTES: int = 5
    # JSON object: {"thekla": "*/30 * * * *"}
    SCHEDULE_OVERRIDES: dict[str, str] = Field(default_factory=dict)
    # comma separated source keys; empty means "all"
    ENABLED_SOURCES: str = ""
    DISABLED_SOURCES: str = ""

    HEALTH_CHECK_INTERVAL_S: float = 60.0
    STUCK_THRESHOLD_MINUTES: float = 30.0
    STALE_THRESHOLD_HOURS: float = 24.0
    ERROR_COOLDOWN_MINUTES: float = 30.0
    SHUTDOWN_TIMEOUT_S: float = 30.0

    # -------------------------------------------------------------------------
    # RATE LIMITING
    # -------------------------------------------------------------------------
    DEFAULT_RATE_LIMIT_PER_MIN: int = 60
    RATE_LIMIT_INTERVAL_S: float = 60.0
    BACKOFF_BASE_S: float = 1.0
    BACKOFF_MAX_S: float = 300.0
    FETCH_TIMEOUT_MS: int = 30000

    # -------------------------------------------------------------------------
    # INGESTION
    # -------------------------------------------------------------------------
    STRICT_VALIDATION: bool = False
    # JSON object: {"my-venue": 95}
    TRUST_SCORES: dict[str, int] = Field(default_factory=dict)

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False

    model_config = SettingsConfigDict(
        env_prefix="HARVESTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ---- derived values ----

    @property
    def is_development(self) -> bool:
        return self.MODE == "development"

    @property
    def raw_data_dir(self) -> Path:
        return self.DATA_DIR / "raw"

    @property
    def normalized_data_dir(self) -> Path:
        return self.DATA_DIR / "normalized"

    @property
    def log_dir(self) -> Path:
        return self.LOG_DIR or self.DATA_DIR / "logs"

    @property
    def default_schedule(self) -> str:
        if self.DEFAULT_SCHEDULE:
            return self.DEFAULT_SCHEDULE
        return DEVELOPMENT_SCHEDULE if self.is_development else PRODUCTION_SCHEDULE

    @property
    def enabled_sources(self) -> list[str]:
        return _split_csv(self.ENABLED_SOURCES)

    @property
    def disabled_sources(self) -> list[str]:
        return _split_csv(self.DISABLED_SOURCES)

    def is_source_enabled(self, source: str) -> bool:
        if source in self.disabled_sources:
            return False
        enabled = self.enabled_sources
        return not enabled or source in enabled

    def problems(self) -> list[str]:
        """
        Return a list of configuration problems; empty when consistent.

        Returns
        -------
        list[str]
            Human readable problem descriptions.
        """
        problems: list[str] = []
        if self.DEFAULT_RATE_LIMIT_PER_MIN <= 0:
            problems.append("DEFAULT_RATE_LIMIT_PER_MIN must be positive")
        if self.RATE_LIMIT_INTERVAL_S <= 0:
            problems.append("RATE_LIMIT_INTERVAL_S must be positive")
        if self.STAGGER_MINUTES < 0:
            problems.append("STAGGER_MINUTES must not be negative")
        if self.SHUTDOWN_TIMEOUT_S < 0:
            problems.append("SHUTDOWN_TIMEOUT_S must not be negative")

        schedules = {"DEFAULT_SCHEDULE": self.default_schedule}
        schedules.update({f"SCHEDULE_OVERRIDES[{k}]": v for k, v in self.SCHEDULE_OVERRIDES.items()})
        for name, expr in schedules.items():
            if len(expr.split()) != 5 or not croniter.is_valid(expr):
                problems.append(f"{name} is not a valid 5-field cron expression: {expr!r}")

        overlap = set(self.enabled_sources) & set(self.disabled_sources)
        if overlap:
            problems.append(f"sources both enabled and disabled: {', '.join(sorted(overlap))}")

        for source, score in self.TRUST_SCORES.items():
            if not 0 <= score <= 100:
                problems.append(f"TRUST_SCORES[{source}] must be within 0-100")

        if self.DATABASE_URL:
            try:
                make_url(self.DATABASE_URL)
            except (ArgumentError, ValueError) as e:
                problems.append(f"DATABASE_URL is not a valid URL: {e}")
        return problems

    def summary(self) -> dict[str, Any]:
        """Printable view of the effective settings (no secrets)."""
        return {
            "mode": self.MODE,
            "data_dir": str(self.DATA_DIR),
            "config_dir": str(self.CONFIG_DIR),
            "default_schedule": self.default_schedule,
            "stagger_minutes": self.STAGGER_MINUTES,
            "default_rate_limit_per_min": self.DEFAULT_RATE_LIMIT_PER_MIN,
            "enabled_sources": self.enabled_sources or "all",
            "disabled_sources": self.disabled_sources,
            "strict_validation": self.STRICT_VALIDATION,
            "database": make_url(self.DATABASE_URL).render_as_string(hide_password=True)
            if self.DATABASE_URL
            else None,
        }


@lru_cache
def get_settings() -> HarvesterSettings:
    """
    Get cached application settings.

    Returns
    -------
    HarvesterSettings
        The singleton settings instance.
    """
    return HarvesterSettings()
