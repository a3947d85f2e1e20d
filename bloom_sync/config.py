"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Bloom Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/bloom"  # asyncpg DSN
    database_pool_min_size: int = 2
    database_pool_max_size: int = 10

    # --- Halaxy ---
    halaxy_client_id: str = ""
    halaxy_client_secret: str = ""  # server-side only
    halaxy_fhir_url: str = "https://au-api.halaxy.com/fhir"
    halaxy_token_url: str = "https://au-api.halaxy.com/oauth2/token"
    halaxy_webhook_secret: str | None = None  # verification is skipped when unset
    halaxy_max_requests_per_minute: int = 60
    halaxy_request_timeout_ms: int = 30_000

    # --- Reconciler ---
    sync_scheduler_enabled: bool = True
    sync_interval_minutes: int = 15

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def has_halaxy_credentials(self) -> bool:
        return bool(self.halaxy_client_id and self.halaxy_client_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()
