# dentalcrm/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Dental Practice CRM"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./dentalcrm.db", alias="DATABASE_URL")
    database_pool_size: int = Field(default=20, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=30, alias="DATABASE_MAX_OVERFLOW")

    # Security
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:5173"], alias="CORS_ORIGINS")

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@dentalcrm.co.uk", alias="SENDER_EMAIL")
    admin_notification_email: str = Field(default="admin@dentalcrm.co.uk", alias="ADMIN_NOTIFICATION_EMAIL")

    # Pricing schedule
    installation_fee: int = Field(default=1000, alias="INSTALLATION_FEE")
    included_seats: int = Field(default=2, alias="INCLUDED_SEATS")
    additional_seat_price: int = Field(default=50, alias="ADDITIONAL_SEAT_PRICE")
    free_trial_months: int = Field(default=12, alias="FREE_TRIAL_MONTHS")
    currency: str = Field(default="GBP", alias="CURRENCY")
    currency_symbol: str = Field(default="£", alias="CURRENCY_SYMBOL")

    # Scheduling
    clinic_day_start_hour: int = Field(default=8, alias="CLINIC_DAY_START_HOUR")
    clinic_day_end_hour: int = Field(default=20, alias="CLINIC_DAY_END_HOUR")
    slot_interval_minutes: int = Field(default=30, alias="SLOT_INTERVAL_MINUTES")

    # UI feature flags
    show_gdc_public_footer: bool = Field(default=True, alias="SHOW_GDC_PUBLIC_FOOTER")
    show_compact_internal_footer: bool = Field(default=True, alias="SHOW_COMPACT_INTERNAL_FOOTER")

    # Rate limiting
    public_rate_limit: str = Field(default="10/minute", alias="PUBLIC_RATE_LIMIT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    # Initial super admin
    seed_admin_email: Optional[str] = Field(default=None, alias="SEED_ADMIN_EMAIL")
    seed_admin_password: Optional[str] = Field(default=None, alias="SEED_ADMIN_PASSWORD")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:5173"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ("json", "console"):
            raise ValueError("LOG_FORMAT must be 'json' or 'console'")
        return v.lower()

    @field_validator("clinic_day_end_hour")
    @classmethod
    def validate_clinic_hours(cls, v, info):
        start = info.data.get("clinic_day_start_hour", 0)
        if not 0 < v <= 24 or v <= start:
            raise ValueError("CLINIC_DAY_END_HOUR must be after CLINIC_DAY_START_HOUR and at most 24")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

