"""
Retry helpers

Two local recovery paths exist and nothing else is retried:

- StateConflictError: re-run the whole read/compute/write unit with a fresh
  read. The unit re-checks its preconditions, so a conflict either
  re-applies cleanly or turns into a PreconditionError.
- ExternalServiceError: exponential backoff up to a bounded attempt count.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from compliance.config import Settings
from compliance.errors import ExternalServiceError, StateConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 4
    base_seconds: float = 0.2
    max_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.store_retry_attempts,
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_seconds * (2 ** attempt), self.max_seconds)


def retry_on_conflict(operation: Callable[[], T], attempts: int, label: str = "operation") -> T:
    """Run ``operation``, re-running it on StateConflictError up to ``attempts`` extra times."""
    for attempt in range(attempts + 1):
        try:
            return operation()
        except StateConflictError:
            if attempt >= attempts:
                raise
            logger.warning(f"{label}: version conflict, retrying with fresh read ({attempt + 1}/{attempts})")
    raise AssertionError("unreachable")


def call_with_backoff(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    label: str = "operation",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Run ``operation``, retrying ExternalServiceError with exponential backoff.

    The last ExternalServiceError propagates once ``policy.max_attempts``
    attempts have failed. Other errors propagate immediately.
    """
    sleep = sleep or time.sleep
    max_attempts = max(policy.max_attempts, 1)
    for attempt in range(max_attempts):
        try:
            return operation()
        except ExternalServiceError as e:
            if attempt + 1 >= max_attempts:
                logger.error(f"{label}: giving up after {max_attempts} attempts: {e}")
                raise
            delay = policy.delay(attempt)
            logger.warning(f"{label}: external service error, retry {attempt + 1} in {delay:.2f}s: {e}")
            sleep(delay)
    raise AssertionError("unreachable")


def run_unit(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    conflict_attempts: int,
    label: str = "operation",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Conflict re-reads nested inside external-service backoff."""
    return call_with_backoff(
        lambda: retry_on_conflict(operation, conflict_attempts, label),
        policy,
        label=label,
        sleep=sleep,
    )
