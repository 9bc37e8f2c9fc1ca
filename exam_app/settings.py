"""Environment-driven settings for ExamDesk."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from exam_app.constants.exam_constants import (
    DEFAULT_SHUFFLE_QUESTIONS,
    SIGNAL_DEDUPE_SECONDS,
    STRIKE_LIMIT,
    SUBMIT_RETRY_ATTEMPTS,
    SUBMIT_RETRY_DELAY_SECONDS,
    TICK_INTERVAL_SECONDS,
)
from exam_app.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_app.core.exam_manager import EngineConfig


class Settings(BaseSettings):
    """Settings loaded from ``EXAM_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(env_prefix="EXAM_", env_file=".env", extra="ignore")

    strike_limit: int = Field(default=STRIKE_LIMIT, ge=1)
    submit_retry_attempts: int = Field(default=SUBMIT_RETRY_ATTEMPTS, ge=1)
    submit_retry_delay_seconds: float = Field(default=SUBMIT_RETRY_DELAY_SECONDS, ge=0)
    tick_interval_seconds: float = Field(default=TICK_INTERVAL_SECONDS, gt=0)
    signal_dedupe_seconds: float = Field(default=SIGNAL_DEDUPE_SECONDS, ge=0)
    shuffle_questions: bool = DEFAULT_SHUFFLE_QUESTIONS

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    seed_path: Path | None = Field(default=None, description="JSON file used to seed the in-memory store")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            strike_limit=self.strike_limit,
            submit_retry_attempts=self.submit_retry_attempts,
            submit_retry_delay_seconds=self.submit_retry_delay_seconds,
            tick_interval_seconds=self.tick_interval_seconds,
            signal_dedupe_seconds=self.signal_dedupe_seconds,
            shuffle_questions=self.shuffle_questions,
        )


@lru_cache()
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""
    return Settings()
