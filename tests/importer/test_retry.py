from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from chambers_app.importer.pipeline.retry import RetryPolicy, TransientBatchError, execute_with_retry


def _flaky(failures, exc_factory=lambda: TransientBatchError("lock timeout")):
    calls = {"count": 0}

    def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_factory()
        return "done"

    return operation, calls


def test_retries_transient_errors_with_exponential_backoff():
    sleeps: list[float] = []
    retries: list[tuple[int, float]] = []
    operation, calls = _flaky(2)

    result = execute_with_retry(
        operation,
        RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0),
        on_retry=lambda attempt, exc, delay: retries.append((attempt, delay)),
        sleep=sleeps.append,
    )

    assert result == "done"
    assert calls["count"] == 3
    assert sleeps == [1.0, 2.0]
    assert retries == [(1, 1.0), (2, 2.0)]


def test_operational_errors_count_as_transient():
    operation, calls = _flaky(1, lambda: OperationalError("UPDATE", {}, Exception("database is locked")))
    assert execute_with_retry(operation, RetryPolicy(base_delay=0.0), sleep=lambda _: None) == "done"
    assert calls["count"] == 2


def test_exhausted_retries_reraise_last_error():
    operation, calls = _flaky(5)
    with pytest.raises(TransientBatchError):
        execute_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=0.0), sleep=lambda _: None)
    assert calls["count"] == 3


def test_non_transient_errors_are_not_retried():
    operation, calls = _flaky(1, lambda: ValueError("bad row"))
    with pytest.raises(ValueError):
        execute_with_retry(operation, RetryPolicy(base_delay=0.0), sleep=lambda _: None)
    assert calls["count"] == 1


def test_policy_delays_and_validation():
    policy = RetryPolicy(base_delay=0.5, multiplier=3.0, max_delay=4.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.5, 4.0]
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(multiplier=0.5)


def test_policy_from_config():
    policy = RetryPolicy.from_config(
        {"IMPORTER_RETRY_ATTEMPTS": "5", "IMPORTER_RETRY_BASE_DELAY": "0.25", "IMPORTER_RETRY_MULTIPLIER": 3}
    )
    assert policy == RetryPolicy(max_attempts=5, base_delay=0.25, multiplier=3.0)
