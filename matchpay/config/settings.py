"""
Runtime settings for the match payment service.

Values come from the environment (a local .env is loaded first).
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def get_int_list_env(key: str, default: List[int]) -> List[int]:
    """Get a comma-separated list of integers from environment variable."""
    raw = os.getenv(key, "")
    if not raw.strip():
        return list(default)
    try:
        return [int(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValueError(f"{key} must be comma-separated integers")


class Settings:
    """Service settings."""

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Match Record Store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./matchpay.db")
    PERSIST_MAX_RETRIES: int = get_int_env("PERSIST_MAX_RETRIES", 3)
    PERSIST_BACKOFF_MS: List[int] = get_int_list_env("PERSIST_BACKOFF_MS", [50, 150, 300])

    # Reminder scheduler
    REMINDER_SWEEP_INTERVAL_SECONDS: int = get_int_env("REMINDER_SWEEP_INTERVAL_SECONDS", 60)
    REMINDER_LEASE_SECONDS: int = get_int_env("REMINDER_LEASE_SECONDS", 120)
    REMINDER_SWEEP_BATCH_SIZE: int = get_int_env("REMINDER_SWEEP_BATCH_SIZE", 200)
    DELIVERY_TIMEOUT_SECONDS: int = get_int_env("DELIVERY_TIMEOUT_SECONDS", 10)
    MAX_CONCURRENT_DELIVERIES: int = get_int_env("MAX_CONCURRENT_DELIVERIES", 20)

    # Collaborators
    PAYMENT_CAPTURE_URL: str = os.getenv("PAYMENT_CAPTURE_URL", "")
    PAYMENT_CAPTURE_API_KEY: str = os.getenv("PAYMENT_CAPTURE_API_KEY", "")
    NOTIFICATION_WEBHOOK_URL: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    COLLABORATOR_TIMEOUT_SECONDS: int = get_int_env("COLLABORATOR_TIMEOUT_SECONDS", 15)

    # Display
    CURRENCY_SYMBOL: str = os.getenv("CURRENCY_SYMBOL", "₹")

    # Rate limiting on the pay endpoint (slowapi syntax)
    PAY_RATE_LIMIT: str = os.getenv("PAY_RATE_LIMIT", "10/minute")

    @classmethod
    def validate(cls) -> None:
        """Validate settings that the service cannot run without."""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is not set")
        if cls.REMINDER_SWEEP_INTERVAL_SECONDS <= 0:
            raise ValueError("REMINDER_SWEEP_INTERVAL_SECONDS must be positive")
        if cls.MAX_CONCURRENT_DELIVERIES <= 0:
            raise ValueError("MAX_CONCURRENT_DELIVERIES must be positive")
        if not cls.PERSIST_BACKOFF_MS:
            raise ValueError("PERSIST_BACKOFF_MS must list at least one delay")


settings = Settings()
