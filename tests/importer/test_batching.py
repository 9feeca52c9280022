from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

import pytest

from chambers_app.importer.pipeline.batching import (
    BatchCoordinator,
    CancellationToken,
    InstrumentedSemaphore,
    chunked,
)
from chambers_app.importer.pipeline.retry import RetryPolicy, TransientBatchError


@dataclass(frozen=True)
class Item:
    row_number: int


class FakeSession:
    def __init__(self, journal):
        self.journal = journal

    @contextmanager
    def begin_nested(self):
        yield

    def commit(self):
        self.journal.append("commit")

    def rollback(self):
        self.journal.append("rollback")

    def close(self):
        self.journal.append("close")


def _coordinator(journal, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0.0))
    return BatchCoordinator(lambda: FakeSession(journal), sleep=lambda _: None, **kwargs)


def _items(count):
    return [Item(row_number=index + 2) for index in range(count)]


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_all_rows_written_in_batches():
    journal: list[str] = []
    written: list[int] = []
    lock = threading.Lock()

    def factory(session):
        def write(item):
            with lock:
                written.append(item.row_number)

        return write

    outcome = _coordinator(journal, batch_size=3, max_concurrency=2).run(_items(7), factory)

    assert sorted(written) == list(range(2, 9))
    assert outcome.total == 7
    assert outcome.processed == 7
    assert outcome.succeeded == 7
    assert outcome.failed == 0
    assert len(outcome.batch_results) == 3
    assert journal.count("commit") == 3
    assert not outcome.cancelled


def test_concurrency_never_exceeds_limit():
    active = {"now": 0, "peak": 0}
    lock = threading.Lock()

    def factory(session):
        def write(item):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            time.sleep(0.005)
            with lock:
                active["now"] -= 1

        return write

    coordinator = _coordinator([], batch_size=1, max_concurrency=2)
    outcome = coordinator.run(_items(10), factory)

    assert outcome.processed == 10
    assert outcome.peak_concurrency <= 2
    assert active["peak"] <= 2
    assert coordinator.semaphore.in_flight == 0


def test_row_failure_is_isolated_to_that_row():
    def factory(session):
        def write(item):
            if item.row_number == 3:
                raise ValueError("client name collides")

        return write

    outcome = _coordinator([], batch_size=5, max_concurrency=1).run(_items(4), factory)

    assert outcome.processed == 4
    assert outcome.succeeded == 3
    assert [error.row for error in outcome.errors] == [3]
    assert "client name collides" in outcome.errors[0].message


def test_transient_batch_failure_is_retried_as_a_whole():
    journal: list[str] = []
    attempts = {"count": 0}

    def factory(session):
        attempts["count"] += 1
        current = attempts["count"]

        def write(item):
            if current == 1 and item.row_number == 3:
                raise TransientBatchError("connection lost")

        return write

    outcome = _coordinator(journal, batch_size=5, max_concurrency=1).run(_items(3), factory)

    assert outcome.succeeded == 3
    assert outcome.batch_results[0].attempts == 2
    assert journal.count("rollback") == 1
    assert journal.count("commit") == 1


def test_exhausted_batch_marks_every_row_failed():
    def factory(session):
        def write(item):
            raise TransientBatchError("database is locked")

        return write

    outcome = _coordinator([], batch_size=2, max_concurrency=1).run(_items(3), factory)

    assert outcome.processed == 3
    assert outcome.succeeded == 0
    assert {error.row for error in outcome.errors} == {2, 3, 4}
    assert all(error.message.startswith("System error") for error in outcome.errors)
    assert all(result.batch_failed for result in outcome.batch_results)


def test_callbacks_report_cumulative_progress():
    progress: list[tuple[int, int]] = []
    batches: list[int] = []

    def factory(session):
        return lambda item: None

    _coordinator(
        [],
        batch_size=2,
        max_concurrency=1,
        progress_callback=lambda processed, total: progress.append((processed, total)),
        batch_callback=lambda result: batches.append(result.attempted),
    ).run(_items(5), factory)

    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert batches == [2, 2, 1]


def test_cancellation_stops_dispatch_of_remaining_batches():
    token = CancellationToken()

    def factory(session):
        def write(item):
            token.cancel("user requested")

        return write

    outcome = _coordinator([], batch_size=2, max_concurrency=1, cancel_token=token).run(_items(6), factory)

    assert outcome.cancelled
    assert outcome.processed == 2
    assert outcome.skipped_rows == 4
    assert token.reason == "user requested"


def test_cancelled_before_start_dispatches_nothing():
    token = CancellationToken()
    token.cancel()
    outcome = _coordinator([], cancel_token=token).run(_items(3), lambda session: (lambda item: None))
    assert outcome.processed == 0
    assert outcome.skipped_rows == 3
    assert outcome.cancelled


def test_cancellation_token_keeps_first_reason():
    token = CancellationToken()
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled
    assert token.reason == "first"


def test_recorded_cancel_request_is_polled_before_each_dispatch():
    requests = []
    token = CancellationToken(poll=lambda: requests[0] if requests else None)

    def factory(session):
        def write(item):
            requests.append("cancelled elsewhere")

        return write

    outcome = _coordinator([], batch_size=2, max_concurrency=1, cancel_token=token).run(_items(6), factory)

    assert outcome.cancelled
    assert outcome.processed == 2
    assert outcome.skipped_rows == 4
    assert token.reason == "cancelled elsewhere"


def test_failed_poll_leaves_the_job_running():
    def poll():
        raise RuntimeError("database is locked")

    token = CancellationToken(poll=poll)
    outcome = _coordinator([], batch_size=2, cancel_token=token).run(_items(4), lambda session: (lambda item: None))

    assert not outcome.cancelled
    assert outcome.processed == 4
    assert not token.is_cancelled


def test_instrumented_semaphore_tracks_peak():
    semaphore = InstrumentedSemaphore(2)
    semaphore.acquire()
    semaphore.acquire()
    semaphore.release()
    assert semaphore.in_flight == 1
    assert semaphore.peak == 2
    with pytest.raises(ValueError):
        InstrumentedSemaphore(0)
