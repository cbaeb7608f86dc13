from __future__ import annotations

from datetime import time
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOG_DIR = BASE_DIR / "logs"
DB_PATH = DATA_DIR / "attendance.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATTENDANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Face Attendance Engine"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    log_dir: Path = LOG_DIR

    database_url: str = f"sqlite:///{DB_PATH}"
    timezone: str = "UTC"

    # Recognition settings
    match_threshold: float = 0.6
    descriptor_dimension: int = 128
    duplicate_enrollment_threshold: float = 0.4

    # Attendance policy. Unset means every check-in is recorded as present.
    late_cutoff: time | None = None

    # Capture session settings
    probe_interval_seconds: float = 1.0
    store_refresh_seconds: float = 60.0
    session_workers: int = 4

    @field_validator("late_cutoff", mode="before")
    @classmethod
    def _blank_cutoff(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown time zone: {value}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
