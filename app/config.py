from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Opportunity Radar"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Search provider
    exa_api_key: str | None = None
    exa_base_url: str = "https://api.exa.ai"
    exa_timeout_seconds: float = 30.0
    exa_num_results: int = 50
    exa_use_autoprompt: bool = True
    search_lookback_months: int = 6

    # Ingestion
    default_relevance_score: float = 0.8

    # Security
    cors_origins: list[str] = []  # Empty by default for security
    allowed_hosts: list[str] = ["localhost", "127.0.0.1"]

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "opportunities"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
