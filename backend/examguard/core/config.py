import os
import json
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):

    port: int = 8000
    environment: str = "development"

    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "examguard_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432

    # Full SQLAlchemy URL; overrides the postgres_* parts when set
    database_url: Optional[str] = None

    @property
    def async_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    cors_origins_str: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]

    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_enabled: bool = True
    cache_default_ttl: int = 600

    slow_request_threshold: float = 1.0
    ingest_slow_request_threshold: float = 0.2

    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    celery_task_always_eager: bool = False
    report_cache_purge_seconds: float = 21600.0

    default_timezone: str = "Asia/Almaty"
    timezone_display_format: str = "%d.%m.%Y, %H:%M:%S"

    # Scoring policy
    proctor_severity_weights: str = '{"low": 2, "medium": 5, "high": 12, "critical": 25}'
    proctor_decay_per_minute: float = 1.0
    proctor_decay_floor: float = 0.0
    proctor_scoring_max_retries: int = 3
    proctor_scoring_retry_delay: float = 0.05

    # Escalation thresholds
    proctor_warning_threshold: float = 25.0
    proctor_review_threshold: float = 50.0
    proctor_terminate_threshold: float = 75.0
    proctor_auto_disqualify_enabled: bool = False
    proctor_disqualify_threshold: float = 90.0

    # Ingestion
    proctor_dedup_window_seconds: float = 2.0

    # Liveness
    proctor_heartbeat_interval_seconds: float = 30.0
    proctor_heartbeat_missed_intervals: int = 3
    proctor_heartbeat_max_timeouts: int = 3
    proctor_heartbeat_sweep_seconds: float = 10.0

    proctor_verification_timeout_seconds: float = 10.0
    proctor_face_match_threshold: float = 0.8

    @property
    def severity_weights(self) -> dict[str, float]:
        return {key: float(value) for key, value in json.loads(self.proctor_severity_weights).items()}

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
