"""
Application configuration.

All configuration is loaded from environment variables.
Never hardcode secrets or connection strings in code.
"""

import os
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file into environment variables
load_dotenv()


class Settings:
    """Engine settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Ledger Core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/ledger_core"
    )

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "console").lower()

    # Money
    HOME_CURRENCY: str = os.getenv("HOME_CURRENCY", "USD")
    MONEY_DECIMAL_PLACES: int = int(os.getenv("MONEY_DECIMAL_PLACES", "2"))
    # Allowed debit/credit difference, in minor units (cents)
    BALANCE_TOLERANCE_MINOR_UNITS: int = int(
        os.getenv("BALANCE_TOLERANCE_MINOR_UNITS", "0")
    )

    # Document numbering
    FIRST_DOCUMENT_NUMBER: int = int(os.getenv("FIRST_DOCUMENT_NUMBER", "1001"))

    # Recurring invoices
    RECURRING_CLAIM_TIMEOUT_SECONDS: int = int(
        os.getenv("RECURRING_CLAIM_TIMEOUT_SECONDS", "900")
    )
    DEFAULT_PAYMENT_TERMS_DAYS: int = int(
        os.getenv("DEFAULT_PAYMENT_TERMS_DAYS", "30")
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Return cached settings instance.

    Using lru_cache means the Settings object is created once
    and reused for all subsequent calls. This avoids reading
    environment variables repeatedly.
    """
    return Settings()
