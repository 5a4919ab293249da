from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./finsync.db"
    secret_key: str
    algorithm: str = "HS256"

    # Open Finance provider
    provider_base_url: str = "https://api.pluggy.ai"
    provider_timeout_seconds: float = 30.0

    # Token lifetimes (seconds)
    api_key_ttl_seconds: int = 7200
    connect_token_ttl_seconds: int = 1800
    token_refresh_buffer_seconds: int = 300

    # Outbound rate limiting
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    max_rate_limit_retries: int = 3

    # Sync windows
    transactions_webhook_window_hours: int = 24
    bills_window_days: int = 90
    initial_sync_days: int = 30

    # Webhooks
    webhook_secret: Optional[str] = None
    webhook_max_attempts: int = 3
    webhook_retry_window_minutes: int = 60

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
