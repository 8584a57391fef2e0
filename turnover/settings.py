"""Application settings loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo


DEFAULT_TIMEZONE = "America/Sao_Paulo"
DEFAULT_ESTIMATED_DURATION_MINUTES = 90
DEFAULT_DRAFT_DEBOUNCE_MS = 500


class Settings:
    """Runtime settings for the service."""

    @property
    def db_path(self) -> Path:
        return Path(os.environ.get("TURNOVER_DB_PATH", "./data/turnover.db"))

    @property
    def api_token(self) -> str:
        return os.environ.get("TURNOVER_API_TOKEN", "dev-token")

    @property
    def db_url(self) -> str:
        return f"sqlite:///{self.db_path}"

    @property
    def timezone_name(self) -> str:
        return os.environ.get("TURNOVER_TIMEZONE", DEFAULT_TIMEZONE)

    @property
    def timezone(self) -> ZoneInfo:
        """Operator locale used for every "today" and calendar-day decision."""

        return ZoneInfo(self.timezone_name)

    @property
    def log_level(self) -> str:
        return os.environ.get("TURNOVER_LOG_LEVEL", "INFO").upper()

    @property
    def default_estimated_duration(self) -> int:
        raw = os.environ.get("TURNOVER_DEFAULT_ESTIMATED_DURATION")
        if not raw:
            return DEFAULT_ESTIMATED_DURATION_MINUTES
        return int(raw)

    @property
    def draft_debounce_seconds(self) -> float:
        raw = os.environ.get("TURNOVER_DRAFT_DEBOUNCE_MS")
        return (int(raw) if raw else DEFAULT_DRAFT_DEBOUNCE_MS) / 1000


settings = Settings()
