"""
Application settings

Loaded from environment variables (and an optional .env file) through
pydantic-settings. Use get_settings() rather than instantiating Settings
directly so every component shares one cached instance.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from partner_messaging.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    app_name: str = "Partner Messaging Service"
    api_v1_str: str = "/api/v1"
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "standard"

    # Storage and queues
    database_url: str = "sqlite:///./partner_messaging.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None

    # Gupshup partner account
    gupshup_partner_base_url: str = "https://partner.gupshup.io/partner"
    gupshup_partner_email: Optional[str] = None
    gupshup_partner_password: Optional[str] = None

    # 32-byte AES key, hex encoded
    token_encryption_key: Optional[str] = None

    # Outbound HTTP
    http_timeout: float = 30.0
    http_max_attempts: int = 3
    http_retry_base_delay: float = 2.0
    http_user_agent: str = "partner-messaging/1.0"

    # Webhooks
    webhook_base_url: Optional[str] = None
    webhook_path: str = "/api/gupshup/webhook"
    webhook_retry_base_delay: float = 1.0

    # Partner token policy
    partner_token_ttl_hours: int = 23
    partner_token_history_limit: int = 5

    # Phone normalization
    default_country_code: str = "65"
    local_number_length: int = 8

    # Campaign pacing
    campaign_message_delay: float = 1.0
    campaign_pause_poll_interval: float = 5.0
    campaign_pause_timeout: float = 300.0

    # Template status polling
    template_poll_interval_minutes: int = 30
    template_poll_item_delay: float = 1.0
    template_default_language: str = "en"
    template_default_vertical: str = Field(default="TEXT", description="Vertical sent with template submissions")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

    def get_celery_broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    def get_celery_result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    def get_webhook_url(self) -> Optional[str]:
        """Full callback URL for gateway subscriptions, or None when unset."""
        if not self.webhook_base_url:
            return None
        return self.webhook_base_url.rstrip("/") + self.webhook_path

    def require_partner_secrets(self) -> None:
        """
        Fail fast when the secrets every partner operation depends on are absent.

        Raises:
            ConfigurationError: If the encryption key or partner login is missing
        """
        missing = []
        if not self.token_encryption_key:
            missing.append("TOKEN_ENCRYPTION_KEY")
        if not self.gupshup_partner_email:
            missing.append("GUPSHUP_PARTNER_EMAIL")
        if not self.gupshup_partner_password:
            missing.append("GUPSHUP_PARTNER_PASSWORD")
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}",
                context={"missing": missing}
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
