"""
Retry helper tests
"""

import pytest

from compliance.config import Settings
from compliance.errors import ExternalServiceError, PreconditionError, StateConflictError
from compliance.retry import BackoffPolicy, call_with_backoff, retry_on_conflict, run_unit


class Flaky:
    """Callable that raises the given errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_delay_doubles_up_to_cap():
    policy = BackoffPolicy(max_attempts=6, base_seconds=0.2, max_seconds=1.0)
    assert [policy.delay(attempt) for attempt in range(5)] == [0.2, 0.4, 0.8, 1.0, 1.0]


def test_policy_from_settings():
    policy = BackoffPolicy.from_settings(Settings(store_retry_attempts=7, backoff_base_seconds=0.5, backoff_max_seconds=3))
    assert policy == BackoffPolicy(max_attempts=7, base_seconds=0.5, max_seconds=3)


def test_backoff_retries_external_errors():
    sleeps = []
    operation = Flaky(ExternalServiceError("down"), ExternalServiceError("still down"))

    assert call_with_backoff(operation, BackoffPolicy(4, 0.1, 1.0), sleep=sleeps.append) == "ok"
    assert operation.calls == 3
    assert sleeps == [0.1, 0.2]


def test_backoff_gives_up():
    operation = Flaky(*[ExternalServiceError("down")] * 5)
    with pytest.raises(ExternalServiceError):
        call_with_backoff(operation, BackoffPolicy(3, 0, 0), sleep=lambda s: None)
    assert operation.calls == 3


def test_backoff_does_not_retry_domain_errors():
    operation = Flaky(PreconditionError("gate closed"))
    with pytest.raises(PreconditionError):
        call_with_backoff(operation, BackoffPolicy(3, 0, 0), sleep=lambda s: None)
    assert operation.calls == 1


def test_conflicts_are_rerun():
    operation = Flaky(StateConflictError("moved"), StateConflictError("moved again"))
    assert retry_on_conflict(operation, attempts=2) == "ok"
    assert operation.calls == 3


def test_conflict_retries_are_bounded():
    operation = Flaky(*[StateConflictError("moved")] * 4)
    with pytest.raises(StateConflictError):
        retry_on_conflict(operation, attempts=2)
    assert operation.calls == 3


def test_run_unit_handles_both():
    operation = Flaky(StateConflictError("moved"), ExternalServiceError("down"), StateConflictError("moved"))
    assert run_unit(operation, BackoffPolicy(3, 0, 0), conflict_attempts=1, sleep=lambda s: None) == "ok"
    assert operation.calls == 4
