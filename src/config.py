from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Environment
    environment: str = "development"  # "development" or "production"

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/bossroom.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False
    app_url: str = "http://localhost:8000"  # base URL for internal calls

    # Notification queue
    notifications_enabled: bool = True
    notification_daily_cap: int = 100
    notification_poll_interval_seconds: int = 30
    notification_stuck_job_minutes: int = 15
    notification_cleanup_days: int = 30

    # Delivery channels
    telegram_bot_token: str = ""

    # Scraping queue
    scraping_poll_interval_seconds: int = 30
    scraping_max_concurrent_jobs: int = 5
    scraper_timeout_seconds: int = 30
    scraper_max_retries: int = 3
    scraping_result_retention_days: int = 30
    scraper_user_agent: str = (
        "SoloSuccess-Intelligence-Bot/1.0 (+https://solobossai.fun/robots)"
    )

    # CORS (comma-separated origins, empty means localhost only)
    cors_origins: str = ""

    # Admin
    admin_api_key: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
