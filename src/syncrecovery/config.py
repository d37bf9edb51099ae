from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./syncrecovery.db"
    worker_base_url: str = "http://localhost:54321/functions/v1"
    worker_auth_token: str = ""
    resume_timeout_seconds: float = 30.0

    # Stuck detection thresholds
    syncing_stuck_minutes: int = 5
    partial_stuck_minutes: int = 10
    debounce_minutes: int = 2
    recovery_claim_minutes: int = 2

    # Recovery guards
    max_stuck_minutes: int = 30
    max_resume_attempts_per_hour: int = 3
    attempt_history_limit: int = 10

    progress_error_cap: int = 50
    stale_progress_minutes: int = 5

    retry_batch_size: int = 5
    retry_processing_timeout_minutes: int = 15
    recovery_interval_minutes: int = 5
    retry_interval_minutes: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
