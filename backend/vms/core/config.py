"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Visit limits live here as well so
that a deployment can tune them without touching the policy table.
"""

from functools import lru_cache
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./data/vms.db"
    # Server databases only; one venue runs a handful of workers
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_recycle_seconds: int = 1800

    # CORS - comma-separated origins
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Venue
    venue_name: str = "Nyeri Club"
    timezone: str = "Africa/Nairobi"

    # ==========================================================================
    # Visit limits
    # ==========================================================================
    guest_monthly_limit: int = 4
    guest_yearly_limit: int = 24
    member_yearly_limit: int = 24
    host_daily_limit: int = 4
    exempt_purposes: List[str] = ["golf_tournament"]

    # Advisory visit-count cache
    count_cache_ttl_seconds: int = 300

    # ==========================================================================
    # SMS gateway
    # ==========================================================================
    sms_provider: Literal["gateway", "mock"] = "mock"
    sms_api_url: str = "https://api.smsleopard.com/v1"
    sms_api_key: Optional[str] = None
    sms_api_secret: Optional[str] = None
    sms_sender_id: str = "SMS_TEST"
    sms_status_callback_url: Optional[str] = None
    sms_status_secret: Optional[str] = None
    sms_timeout_seconds: float = 30.0

    # ==========================================================================
    # Email/SMTP
    # ==========================================================================
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_from_name: str = "Visitor Management"
    smtp_use_tls: bool = True

    # Administrators copied on registration outcomes
    admin_phones: List[str] = []
    admin_emails: List[str] = []
    notify_admins_on_registration: bool = False

    notification_log_retention_days: int = 90

    # Role -> permissions, merged over the built-in capability matrix
    capability_overrides: Dict[str, List[str]] = {}

    # Rate limiting
    rate_limit_enabled: bool = True
    callback_rate_limit: str = "120/minute"
    registration_rate_limit: str = "60/minute"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"
    scheduler_enabled: bool = True

    @field_validator(
        "guest_monthly_limit", "guest_yearly_limit", "member_yearly_limit", "host_daily_limit"
    )
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("visit limits must be positive")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Warn about development-only values when running in production mode."""
        import warnings

        if not self.debug:
            localhost_patterns = ["localhost", "127.0.0.1", "0.0.0.0"]
            origins = [o.strip() for o in self.cors_origins.split(",")]
            localhost_origins = [o for o in origins if any(p in o for p in localhost_patterns)]
            if localhost_origins:
                warnings.warn(
                    f"CORS origins contain localhost URLs in production mode: {localhost_origins}. "
                    "Set CORS_ORIGINS for production.",
                    UserWarning,
                    stacklevel=2,
                )
            if self.sms_provider == "gateway" and not (self.sms_api_key and self.sms_api_secret):
                warnings.warn(
                    "SMS_PROVIDER=gateway but SMS_API_KEY/SMS_API_SECRET are not set; "
                    "every SMS will be rejected.",
                    UserWarning,
                    stacklevel=2,
                )

        return self

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
