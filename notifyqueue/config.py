"""Environment configuration for the notification delivery queue."""

import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        self.DATABASE_URL: str = os.getenv(
            "DATABASE_URL", "sqlite:///./notifications.db"
        )

        # Dispatch tick
        self.WORKER_BATCH_SIZE: int = _int_env("WORKER_BATCH_SIZE", 50)
        self.WORKER_POOL_SIZE: int = _int_env("WORKER_POOL_SIZE", 4)
        self.WORKER_POLL_INTERVAL_MS: int = _int_env("WORKER_POLL_INTERVAL_MS", 5000)
        self.DELIVERY_TIMEOUT_MS: int = _int_env("DELIVERY_TIMEOUT_MS", 10000)
        self.CLAIM_TIMEOUT_SECONDS: int = _int_env("CLAIM_TIMEOUT_SECONDS", 300)

        # Retry budget and backoff
        self.DEFAULT_MAX_RETRIES: int = _int_env("DEFAULT_MAX_RETRIES", 3)
        self.RETRY_BACKOFF_BASE_SECONDS: float = _float_env(
            "RETRY_BACKOFF_BASE_SECONDS", 60.0
        )
        self.RETRY_BACKOFF_CAP_SECONDS: float = _float_env(
            "RETRY_BACKOFF_CAP_SECONDS", 3600.0
        )
        self.RETRY_BACKOFF_JITTER: float = _float_env("RETRY_BACKOFF_JITTER", 0.2)

        # Retention sweeper
        self.RETENTION_WINDOW_DAYS: int = _int_env("RETENTION_WINDOW_DAYS", 30)
        self.RETENTION_INTERVAL_SECONDS: int = _int_env(
            "RETENTION_INTERVAL_SECONDS", 3600
        )
        self.RETENTION_BATCH_SIZE: int = _int_env("RETENTION_BATCH_SIZE", 500)

        # Delivery channels (empty URL means simulated delivery)
        self.EMAIL_WEBHOOK_URL: str = os.getenv("EMAIL_WEBHOOK_URL", "")
        self.PUSH_WEBHOOK_URL: str = os.getenv("PUSH_WEBHOOK_URL", "")
        self.IN_APP_WEBHOOK_URL: str = os.getenv("IN_APP_WEBHOOK_URL", "")

    def validate(self) -> None:
        """Validate that required environment variables are set and sane."""
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        for name in (
            "WORKER_BATCH_SIZE",
            "WORKER_POOL_SIZE",
            "WORKER_POLL_INTERVAL_MS",
            "DELIVERY_TIMEOUT_MS",
            "CLAIM_TIMEOUT_SECONDS",
            "RETENTION_INTERVAL_SECONDS",
            "RETENTION_BATCH_SIZE",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")
        if self.DEFAULT_MAX_RETRIES < 0:
            raise ValueError("DEFAULT_MAX_RETRIES must not be negative")
        if self.RETENTION_WINDOW_DAYS < 0:
            raise ValueError("RETENTION_WINDOW_DAYS must not be negative")
        if self.RETRY_BACKOFF_BASE_SECONDS <= 0:
            raise ValueError("RETRY_BACKOFF_BASE_SECONDS must be positive")
        if self.RETRY_BACKOFF_CAP_SECONDS < self.RETRY_BACKOFF_BASE_SECONDS:
            raise ValueError(
                "RETRY_BACKOFF_CAP_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS"
            )
        if not 0 <= self.RETRY_BACKOFF_JITTER < 1:
            raise ValueError("RETRY_BACKOFF_JITTER must be in [0, 1)")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    return settings
