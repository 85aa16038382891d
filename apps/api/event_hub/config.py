from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./events.db"
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: list[str] = ["http://localhost:5174", "http://localhost:3000"]
    auto_create_schema: bool = True

    # Ingestion
    max_event_bytes: int = 256 * 1024

    # Live delivery
    subscriber_queue_size: int = 256
    backfill_limit: int = 100
    backfill_page_size: int = 500
    query_limit_max: int = 1000
    cursor_wait_seconds: float = 0.5
    heartbeat_seconds: float = 30.0

    # Session bookkeeping
    idle_timeout_seconds: float = 600.0
    idle_sweep_interval_seconds: float = 30.0

    class Config:
        env_file = ".env"


settings = Settings()
