from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"
    log_level: str = "INFO"

    frontend_url: str = "http://localhost:3000"

    # QuickBooks OAuth application
    quickbooks_client_id: str = ""
    quickbooks_client_secret: str = ""
    quickbooks_redirect_uri: str = "http://localhost:8000/api/quickbooks/callback"
    quickbooks_environment: str = "sandbox"
    quickbooks_minor_version: int = 75

    # Token lifecycle
    token_refresh_margin_minutes: int = 10
    oauth_state_max_age_minutes: int = 10

    # Remote API budget (Intuit allows 500/min per realm, stay well below)
    qbo_rate_limit_max_requests: int = 90
    qbo_rate_limit_window_seconds: float = 60.0
    http_timeout_seconds: float = 30.0

    # Sync jobs
    sync_batch_size: int = 25
    sync_batch_delay_seconds: float = 2.0
    sync_default_min_confidence: int = 70

    # AI mapping suggestions
    ai_provider: str = "anthropic"
    ai_api_key: Optional[str] = None
    ai_model: Optional[str] = None
    ai_max_tokens: int = 4000
    ai_temperature: float = 0.3
    ai_timeout_seconds: float = 60.0

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
