"""Application configuration using Pydantic BaseSettings"""
import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# Setup logging
logger = logging.getLogger("config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    # Database
    DATABASE_URL: str = "sqlite:///./fitmate.db"
    
    # Domain & URLs
    FRONTEND_URL: str = "http://127.0.0.1:3000"
    ENVIRONMENT: str = "development"
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "fitmate-backend"
    OTEL_ENVIRONMENT: str = "development"
    
    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = ""
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    
    # Membership payments
    PAYMENT_GATEWAY: str = "stripe"
    DEFAULT_CURRENCY: str = "THB"
    MEMBERSHIP_PLANS_FILE: Optional[str] = None

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def normalize_currency(cls, v):
        return v.strip().upper()

    @field_validator("STRIPE_WEBHOOK_SECRET")
    @classmethod
    def check_webhook_secret(cls, v):
        if not v or v.strip() == "":
            # Webhooks are rejected until this is set; verify still works
            logger.warning("STRIPE_WEBHOOK_SECRET is not set - webhook deliveries will be rejected")
        return v


# Create global settings instance
settings = Settings()
