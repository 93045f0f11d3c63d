"""
Centralized configuration for the Loan Lead Pipeline.

All settings are loaded from environment variables via .env file.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    # Service
    service_name: str = Field(default="Loan Lead Pipeline", env="SERVICE_NAME")
    service_version: str = Field(default="1.0.0", env="SERVICE_VERSION")
    base_url: str = Field(default="https://app.example.com", env="BASE_URL")

    # Email (SendGrid primary, SES fallback)
    sendgrid_api_key: Optional[str] = Field(default=None, env="SENDGRID_API_KEY")
    email_from_address: str = Field(default="no-reply@example.com", env="EMAIL_FROM_ADDRESS")
    email_from_name: str = Field(default="Loan Team", env="EMAIL_FROM_NAME")
    ses_region: Optional[str] = Field(default=None, env="SES_REGION")

    # Credit scorer
    credit_scorer_url: Optional[str] = Field(default=None, env="CREDIT_SCORER_URL")
    credit_scorer_api_key: Optional[str] = Field(default=None, env="CREDIT_SCORER_API_KEY")

    # Dealer CRM
    crm_url: Optional[str] = Field(default=None, env="CRM_URL")
    crm_api_key: Optional[str] = Field(default=None, env="CRM_API_KEY")

    # Pipeline timing
    external_call_timeout_seconds: float = Field(default=10.0, env="EXTERNAL_CALL_TIMEOUT_SECONDS")
    submission_base_delay_seconds: float = Field(default=1.0, env="SUBMISSION_BASE_DELAY_SECONDS")
    abandonment_inactivity_minutes: int = Field(default=30, env="ABANDONMENT_INACTIVITY_MINUTES")
    abandonment_sweep_interval_seconds: int = Field(default=600, env="ABANDONMENT_SWEEP_INTERVAL_SECONDS")
    dead_letter_reprocess_interval_seconds: int = Field(
        default=0, env="DEAD_LETTER_REPROCESS_INTERVAL_SECONDS"
    )
    event_replay_interval_seconds: int = Field(default=60, env="EVENT_REPLAY_INTERVAL_SECONDS")
    event_delivery: str = Field(default="background", env="EVENT_DELIVERY")  # inline | background

    # Database
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    cors_origins: str = Field(default="*", env="CORS_ORIGINS")
    rate_limit_per_minute: int = Field(default=120, env="RATE_LIMIT_PER_MINUTE")
    return_link_rate_limit_per_minute: int = Field(default=20, env="RETURN_LINK_RATE_LIMIT_PER_MINUTE")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    debug: bool = Field(default=False, env="DEBUG")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def background_delivery(self) -> bool:
        return self.event_delivery.lower() == "background"

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
