import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="STUDY_CALENDAR_DATABASE_URL")
    database_pool_size: int = Field(10, alias="STUDY_CALENDAR_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="STUDY_CALENDAR_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="STUDY_CALENDAR_DATABASE_ECHO")
    api_host: str = Field("127.0.0.1", alias="STUDY_CALENDAR_HOST")
    api_port: int = Field(8000, ge=1, le=65535, alias="STUDY_CALENDAR_PORT")

    # Scheduling policy
    weekly_slack_ratio: float = Field(0.1, ge=0.0, alias="STUDY_CALENDAR_WEEKLY_SLACK_RATIO")
    session_break_minutes: int = Field(15, ge=0, alias="STUDY_CALENDAR_SESSION_BREAK_MINUTES")
    stats_window_days: int = Field(90, ge=1, alias="STUDY_CALENDAR_STATS_WINDOW_DAYS")
    lock_timeout_seconds: float = Field(5.0, ge=0.0, alias="STUDY_CALENDAR_LOCK_TIMEOUT_SECONDS")

    # Adaptation thresholds
    on_pace_completion_rate: float = Field(0.8, ge=0.0, le=1.0, alias="STUDY_CALENDAR_ON_PACE_RATE")
    falling_behind_completion_rate: float = Field(
        0.6, ge=0.0, le=1.0, alias="STUDY_CALENDAR_FALLING_BEHIND_RATE"
    )
    falling_behind_gap_factor: float = Field(1.5, gt=0.0, alias="STUDY_CALENDAR_GAP_FACTOR")
    duration_variance_band: float = Field(0.2, ge=0.0, alias="STUDY_CALENDAR_VARIANCE_BAND")
    struggling_variance: float = Field(0.5, ge=0.0, alias="STUDY_CALENDAR_STRUGGLING_VARIANCE")
    struggling_sample_size: int = Field(3, ge=1, alias="STUDY_CALENDAR_STRUGGLING_SAMPLE")
    min_history_events: int = Field(2, ge=1, alias="STUDY_CALENDAR_MIN_HISTORY")
    pull_forward_sessions: int = Field(2, ge=1, le=2, alias="STUDY_CALENDAR_PULL_FORWARD_SESSIONS")
    review_gap_days: int = Field(1, ge=0, alias="STUDY_CALENDAR_REVIEW_GAP_DAYS")
    max_duration_growth: float = Field(2.0, ge=1.0, alias="STUDY_CALENDAR_MAX_DURATION_GROWTH")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid calendar engine configuration: {exc}") from exc
