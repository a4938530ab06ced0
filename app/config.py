from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Job Dispatch Service"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_auto_create_schema: bool = False

    # Providers
    openai_api_key: str | None = None
    ranker_model: str = "gpt-4o-mini"
    ranker_temperature: float = 0.0
    ranker_max_retries: int = 2
    hunter_api_key: str | None = None
    hunter_base_url: str = "https://api.hunter.io"
    hunter_timeout_seconds: float = 15.0
    sendgrid_api_key: str | None = None
    sendgrid_base_url: str = "https://api.sendgrid.com"
    sendgrid_from_email: str = "jobs@example.com"
    sendgrid_from_name: str = "Dispatch Jobs"
    sendgrid_template_id: str | None = None

    # Dispatch
    public_pool_org_id: str = "00000000-0000-0000-0000-000000000001"
    dispatch_max_distance_miles: float = 50.0
    dispatch_cold_lead_limit: int = 50
    dispatch_send_concurrency: int = 10
    app_public_url: str = "http://localhost:3000"
    company_name: str = "Dispatch Co"
    company_address: str = "100 Main St, Anytown, USA"

    # Lead sourcing pipeline
    pipeline_select_limit: int = 20
    pipeline_verify_limit: int = 10
    pipeline_min_confidence: int = 70
    pipeline_skip_if_cold_exists: bool = True
    pipeline_candidate_fetch_limit: int = 100
    pipeline_ai_context_limit: int = 50
    pipeline_ai_min_pool: int = 5
    verification_pause_seconds: float = 0.5

    # Backoff
    backoff_max_retries: int = 3
    backoff_initial_delay_seconds: float = 1.0
    backoff_max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.2

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "dispatch"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
