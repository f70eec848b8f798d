"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "CareLink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Clerk ---
    clerk_secret_key: str
    clerk_publishable_key: str
    clerk_jwks_url: str = "https://api.clerk.com/v1/jwks"

    # --- Withings ---
    # No defaults for the client credentials: a missing value is a
    # ConfigurationError at first use, never a silent fallback.
    withings_client_id: str | None = None
    withings_client_secret: str | None = None
    withings_redirect_uri: str | None = None
    withings_webhook_url: str | None = None  # public URL of POST /integrations/withings/webhook
    provider_timeout_seconds: float = 10.0

    # --- Client app redirects ---
    client_app_url: str = "http://localhost:3000"
    client_devices_path: str = "/patient/devices"

    # --- Integration lifecycle ---
    oauth_state_ttl_seconds: int = 600
    token_refresh_margin_seconds: int = 300
    sync_timeout_seconds: float = 30.0
    sync_lookback_days: int = 30
    poll_interval_seconds: int = 3600  # 0 disables scheduled polling
    poll_max_concurrent: int = 5
    shutdown_drain_seconds: float = 20.0

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 60
    provider_calls_per_minute: int = 6  # manual sync, subscribe, re-link

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
