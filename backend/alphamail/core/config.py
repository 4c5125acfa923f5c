"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Anthropic Claude API (routed through LiteLLM)
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    LLM_MODEL: str = "claude-sonnet-4-20250514"

    # Resend Email Configuration
    RESEND_API_KEY: SecretStr = SecretStr("")
    FROM_EMAIL: str = "Alpha <alpha@alphamail.ai>"

    # Resend webhook signing secrets (Svix). Per-endpoint secrets win over the shared one.
    RESEND_WEBHOOK_SECRET: str = ""
    RESEND_WEBHOOK_SECRET_INBOUND: str = ""
    RESEND_WEBHOOK_SECRET_EVENTS: str = ""

    # Bearer secret for the weekly check-in trigger
    CRON_SECRET: str = ""

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"
    APP_URL: str = "https://bealphamail.com"  # Base URL for signup links

    # AI retry policy
    AI_MAX_ATTEMPTS: int = 3
    AI_INITIAL_DELAY_SECONDS: float = 1.0

    # Conversation context bounds
    THREAD_HISTORY_LIMIT: int = 20
    RECENT_HISTORY_LIMIT: int = 10
    SUMMARY_HISTORY_LIMIT: int = 50

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("APP_URL")
    @classmethod
    def strip_app_url(cls, v: str) -> str:
        """Drop the trailing slash so links can be joined with a path."""
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    def webhook_secret_for(self, endpoint: Literal["inbound", "events"]) -> str:
        """Return the signing secret for a webhook endpoint.

        Args:
            endpoint: Which Resend webhook is being verified.

        Returns:
            The endpoint-specific secret, else the shared secret, else "".
        """
        if endpoint == "inbound":
            return self.RESEND_WEBHOOK_SECRET_INBOUND or self.RESEND_WEBHOOK_SECRET
        return self.RESEND_WEBHOOK_SECRET_EVENTS or self.RESEND_WEBHOOK_SECRET

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            "ANTHROPIC_API_KEY": self.ANTHROPIC_API_KEY.get_secret_value(),
        }
        if self.is_production:
            required_secrets["RESEND_WEBHOOK_SECRET_INBOUND"] = self.webhook_secret_for("inbound")
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance with validated configuration.

    Raises:
        ValueError: If required secrets are missing.
    """
    settings = Settings()
    settings.validate_startup()
    return settings


# Global settings instance - import this for easy access
settings = get_settings()
