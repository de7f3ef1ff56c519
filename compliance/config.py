"""
Runtime configuration

Values come from the environment (optionally a .env file). Settings are
passed explicitly into the orchestrator, approvals and marketplace
components rather than read as globals.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    maintenance_mode: bool = False

    # External-service retry (store / notification sink)
    store_retry_attempts: int = 4
    backoff_base_seconds: float = 0.2   # delay = base * 2^attempt
    backoff_max_seconds: float = 5.0

    # Optimistic concurrency: automatic re-read attempts
    conflict_retry_attempts: int = 3

    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    offer_sweep_interval_seconds: int = 300
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"


def load_settings() -> Settings:
    """Build Settings from environment variables."""
    return Settings(
        maintenance_mode=_env_bool("MAINTENANCE_MODE"),
        store_retry_attempts=int(os.getenv("STORE_RETRY_ATTEMPTS", "4")),
        backoff_base_seconds=float(os.getenv("RETRY_BACKOFF_BASE_SECONDS", "0.2")),
        backoff_max_seconds=float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "5.0")),
        conflict_retry_attempts=int(os.getenv("CONFLICT_RETRY_ATTEMPTS", "3")),
        notification_webhook_url=os.getenv("NOTIFICATION_WEBHOOK_URL") or None,
        notification_timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10")),
        offer_sweep_interval_seconds=int(os.getenv("OFFER_SWEEP_INTERVAL_SECONDS", "300")),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
    )
