from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Backend
    OLLAMA_URL: str = "http://localhost:11434"
    BACKEND_TIMEOUT_SECONDS: float = 120.0

    # Storage
    DATABASE_PATH: str = "data"  # directory; the sqlite file is jobs.db inside it
    DB_POOL_SIZE: int = 5
    DB_BUSY_TIMEOUT_MS: int = 10000
    STAGING_DIR: str = "tmp-files"

    # Jobs
    JOB_WORKER_INTERVAL_SECONDS: float = 5.0
    JOB_RESULT_EXPIRY_MINUTES: int = 60
    JOB_STALE_AFTER_TICKS: int = 120  # 0 disables reclaiming stranded running jobs

    # Callers
    API_KEY: Optional[str] = None
    ADMIN_API_KEY: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    PORT: int = 3000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def db_file(self) -> Path:
        return Path(self.DATABASE_PATH) / "jobs.db"

    @property
    def result_expiry(self) -> timedelta:
        return timedelta(minutes=self.JOB_RESULT_EXPIRY_MINUTES)

    @property
    def stale_after(self) -> Optional[timedelta]:
        if self.JOB_STALE_AFTER_TICKS <= 0:
            return None
        return timedelta(seconds=self.JOB_WORKER_INTERVAL_SECONDS * self.JOB_STALE_AFTER_TICKS)
