"""
Configuration management using Pydantic settings.
Loads environment variables for Supabase, ActiveCampaign, Nuvemshop and the sync jobs.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Supabase Configuration
    supabase_url: str
    supabase_service_key: str

    # ActiveCampaign Configuration
    activecampaign_base_url: str = ""  # e.g. https://hudlab.api-us1.com
    activecampaign_api_token: str = ""
    activecampaign_webhook_secret: str = ""  # Optional ?token= check on the deal webhook
    activecampaign_requests_per_second: float = 5.0

    # Nuvemshop Configuration
    nuvemshop_api_base_url: str = "https://api.nuvemshop.com.br/v1"
    nuvemshop_access_token: str = ""
    nuvemshop_user_id: str = ""  # Store id, also used to validate webhook payloads
    nuvemshop_webhook_secret: str = ""  # Optional, enables HMAC verification
    nuvemshop_user_agent: str = "HudLab Dashboard (contato@hudlab.com.br)"
    nuvemshop_requests_per_second: float = 2.0

    # Application Configuration
    app_environment: str = "development"
    app_base_url: str = "http://localhost:8000"
    app_timezone: str = "America/Sao_Paulo"
    log_level: str = "INFO"
    cron_secret: str = ""

    # Retry Configuration
    max_retry_attempts: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_initial_delay_seconds: float = 1.0

    # Deal sync Configuration
    deal_sync_window_days: int = 90
    deal_sync_page_size: int = 100
    deal_sync_concurrency: int = 10
    deal_sync_upsert_batch_size: int = 100
    deal_sync_timeout_seconds: float = 300.0
    sync_lock_stale_minutes: int = 10

    # Nuvemshop bulk sync Configuration
    nuvemshop_sync_page_size: int = 100
    nuvemshop_sync_max_pages: int = 50

    # Webhook Configuration
    webhook_max_retries: int = 5
    webhook_batch_retry_delay_seconds: float = 0.1
    webhook_rate_limit_per_minute: int = 100
    webhook_trust_forwarded_for: bool = False  # Only behind a proxy that sets X-Forwarded-For itself

    # Partners Configuration
    coupon_max_percentage: int = 15
    franchise_brands: List[str] = ["zenith"]

    # Slack alerts
    slack_webhook_url: Optional[str] = None
    slack_alerts_enabled: str = "false"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
