# backend/shipment_ledger/core/settings.py
"""
Shipment Ledger - Configuration Management with pydantic-settings

- Loads from environment and root .env
- Validates and normalizes values
- Cached singleton via get_settings()
"""
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# backend/shipment_ledger/core/settings.py -> <repo>/.env
_ENV_FILE = Path(__file__).resolve().parent.parent.parent.parent / ".env"


class Settings(BaseSettings):
    """
    Ledger settings with validation.

    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Application Settings
    # ===================
    PROJECT_NAME: str = "Shipment Ledger"
    VERSION: str = "1.0.0"
    DEBUG: bool = Field(default=False, description="Enable debug mode")
    ENVIRONMENT: str = Field(default="development", description="Deployment environment")

    # ===================
    # Database Settings
    # ===================
    DB_HOST: str = Field(default="localhost", description="PostgreSQL host")
    DB_PORT: int = Field(default=5432, description="PostgreSQL port")
    DB_NAME: str = Field(default="shipment_ledger", description="Database name")
    DB_USER: str = Field(default="postgres", description="Database user")
    DB_PASSWORD: str = Field(default="postgres", description="Database password")
    DATABASE_URL: Optional[str] = Field(
        default=None, description="Full database URL (overrides DB_* settings)"
    )

    @property
    def database_url(self) -> str:
        """Build PostgreSQL database URL from components or use explicit URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # ===================
    # Concurrency
    # ===================
    LOCK_TIMEOUT_MS: int = Field(
        default=5000, description="Max wait for a stock row lock before giving up"
    )

    @field_validator("LOCK_TIMEOUT_MS")
    @classmethod
    def validate_lock_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("LOCK_TIMEOUT_MS must be positive")
        return v

    # ===================
    # Settlement
    # ===================
    COMPANY_COMMISSION_RATE: Decimal = Field(
        default=Decimal("6"), description="Company commission, percent of net sales"
    )
    SHIPMENT_AGING_WARNING_DAYS: int = Field(
        default=14, description="Shipments open longer than this are flagged on reports"
    )

    @field_validator("COMPANY_COMMISSION_RATE")
    @classmethod
    def validate_commission_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("COMPANY_COMMISSION_RATE must be between 0 and 100")
        return v

    @property
    def commission_rate(self) -> Decimal:
        """Commission as a fraction (6 -> 0.06)."""
        return self.COMPANY_COMMISSION_RATE / Decimal("100")

    # ===================
    # Logging
    # ===================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    LOG_FILE: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    """Singleton settings loader (cached)."""
    return Settings()
