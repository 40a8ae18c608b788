from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ─────────────────────────────────────
    APP_NAME: str = "A11y Audit Engine"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    DEBUG: bool = True

    # ── Logging ─────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    LOG_DIR: Optional[str] = None  # defaults to ./logs

    # ── Database ────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./a11y_audit.db"
    # Workers use a sync engine; derived from DATABASE_URL when unset
    SYNC_DATABASE_URL: Optional[str] = None

    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    CELERY_TASK_SERIALIZER: str = "json"
    CELERY_RESULT_SERIALIZER: str = "json"
    CELERY_ACCEPT_CONTENT: str = "json"
    CELERY_TASK_TRACK_STARTED: bool = True
    CELERY_TASK_TIME_LIMIT: int = 900  # longest tier budget plus persistence headroom

    # ── Progress pub/sub ────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    PUBLISH_PROGRESS: bool = True
    PROGRESS_SUBSCRIBER_QUEUE_SIZE: int = 64
    PROGRESS_RETENTION_SECONDS: int = 300

    # ── Work queue ──────────────────────────────
    WORKER_ID: Optional[str] = None
    POLL_INTERVAL_SECONDS: float = 5.0
    JOB_MAX_ATTEMPTS: int = 3
    STALE_JOB_TIMEOUT_SECONDS: int = 1200
    JOB_RETENTION_DAYS: int = 30
    START_URL_ATTEMPTS: int = 2

    # ── Crawling / rendering ────────────────────
    CHROMEDRIVER_PATH: Optional[str] = None
    BROWSERLESS_URL: Optional[str] = None
    NAVIGATION_TIMEOUT_SECONDS: int = 30
    FETCH_TIMEOUT_SECONDS: float = 10.0
    MAX_REDIRECTS: int = 5
    CRAWLER_USER_AGENT: str = "Mozilla/5.0 (compatible; A11yAuditBot/2.0)"

    class Config:
        env_file = str(Path(__file__).parent.parent.parent / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def sync_database_url(self) -> str:
        if self.SYNC_DATABASE_URL:
            return self.SYNC_DATABASE_URL
        url = self.DATABASE_URL
        if url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql+asyncpg://", "postgresql://")
        if url.startswith("sqlite+aiosqlite://"):
            return url.replace("sqlite+aiosqlite://", "sqlite://")
        return url


settings = Settings()
