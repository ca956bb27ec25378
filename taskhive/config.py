"""Configuration settings for taskhive."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "taskhive"
    db_user: str = "hive"
    db_password: str = "hive"
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = True
    redis_dispatch_enabled: bool = False
    redis_dispatch_max_depth: int = 1000

    # Claim engine
    stale_worker_minutes: int = 15
    claim_lease_minutes: int = 15
    default_max_tasks: int = 3

    # Scheduler
    max_schedules_per_tick: int = 50
    trigger_fetch_timeout: float = 10.0
    trigger_user_agent: str = "taskhive-scheduler/1.0"
    tick_interval_seconds: int = 60

    # Agent sessions
    agent_api_url: str = "http://localhost:4096"
    agent_timeout: int = 300  # 5 minutes
    milestone_limit: int = 50
    transcript_limit: int = 200

    # Attachment storage (S3-compatible)
    storage_endpoint: str | None = None
    storage_access_key: str | None = None
    storage_secret_key: str | None = None
    storage_region: str = "auto"
    storage_bucket: str = "taskhive-attachments"
    attachment_url_ttl: int = 3600  # 1 hour

    @property
    def storage_configured(self) -> bool:
        return bool(self.storage_endpoint and self.storage_access_key and self.storage_secret_key)

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def database_url(self) -> str:
        """Sync SQLAlchemy database URL (alembic)."""
        return self.async_database_url.replace("+asyncpg", "").replace("+aiosqlite", "")

    class Config:
        env_prefix = "TASKHIVE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
