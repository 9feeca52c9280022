"""Bounded-concurrency batch coordinator for row writes.

Rows are split into fixed-size batches that run on a thread pool. At most
``max_concurrency`` batches are in flight at once; each batch owns a database
session, isolates every row in a savepoint, and is retried as a whole when the
store reports a transient failure.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chambers_app.importer.metrics import record_batch, record_batch_retry

from .diagnostics import RowDiagnostic
from .retry import TRANSIENT_ERRORS, RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_CONCURRENCY = 3
MESSAGE_LIMIT = 200

RowWriter = Callable[[T], None]
WriterFactory = Callable[[Session], RowWriter]
ProgressCallback = Callable[[int, int], None]


def _short(message: object) -> str:
    text = " ".join(str(message).split())
    return text if len(text) <= MESSAGE_LIMIT else text[: MESSAGE_LIMIT - 3] + "..."


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[start : start + size] for start in range(0, len(items), size)]


class CancellationToken:
    """Cooperative cancellation flag checked before each batch dispatch.

    ``poll`` reads a cancellation request recorded outside this process and
    returns its reason, or ``None`` when nothing has been requested.
    """

    def __init__(self, poll: Callable[[], str | None] | None = None) -> None:
        self._event = threading.Event()
        self.reason: str | None = None
        self.poll = poll

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> bool:
        """Pick up any externally recorded request, then report the flag."""

        if self._event.is_set() or self.poll is None:
            return self._event.is_set()
        try:
            reason = self.poll()
        except Exception:
            logger.exception("Could not read the cancellation request; the batch will run")
            return False
        if reason:
            self.cancel(reason)
        return self._event.is_set()


class InstrumentedSemaphore:
    """Bounded semaphore that tracks current and peak holders."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def acquire(self) -> None:
        self._semaphore.acquire()
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)

    def release(self) -> None:
        with self._lock:
            self.in_flight -= 1
        self._semaphore.release()


@dataclass
class BatchResult:
    index: int
    attempted: int
    succeeded: int = 0
    errors: list[RowDiagnostic] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    attempts: int = 1
    batch_failed: bool = False

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


@dataclass
class CoordinatorOutcome:
    total: int
    processed: int = 0
    succeeded: int = 0
    errors: list[RowDiagnostic] = field(default_factory=list)
    batch_results: list[BatchResult] = field(default_factory=list)
    cancelled: bool = False
    skipped_rows: int = 0
    peak_concurrency: int = 0

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded


def _row_failure(row_number: int, exc: Exception) -> RowDiagnostic:
    if isinstance(exc, IntegrityError):
        return RowDiagnostic.error(row_number, None, None, _short(f"Duplicate or conflicting record: {exc.orig}"))
    return RowDiagnostic.error(row_number, None, None, _short(f"System error while writing row: {exc}"))


class BatchCoordinator(Generic[T]):
    """Run row writes in bounded, retried, savepoint-isolated batches."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        retry_policy: RetryPolicy | None = None,
        progress_callback: ProgressCallback | None = None,
        batch_callback: Callable[[BatchResult], None] | None = None,
        cancel_token: CancellationToken | None = None,
        row_number: Callable[[T], int] = lambda item: item.row_number,  # type: ignore[attr-defined]
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress_callback = progress_callback
        self.batch_callback = batch_callback
        self.cancel_token = cancel_token or CancellationToken()
        self.row_number = row_number
        self.sleep = sleep
        self.semaphore = InstrumentedSemaphore(max_concurrency)
        self._progress_lock = threading.Lock()
        self._processed_so_far = 0

    def run(self, rows: Sequence[T], writer_factory: WriterFactory) -> CoordinatorOutcome:
        total = len(rows)
        outcome = CoordinatorOutcome(total=total)
        batches = chunked(rows, self.batch_size)
        futures: list[Future[BatchResult]] = []
        self._processed_so_far = 0

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="lex-batch") as pool:
            for index, batch in enumerate(batches):
                if self.cancel_token.is_cancelled:
                    break
                self.semaphore.acquire()
                # The slot wait can be long; re-check before committing to the dispatch.
                if self.cancel_token.check():
                    self.semaphore.release()
                    break
                futures.append(pool.submit(self._run_slot, index, batch, writer_factory, total))

        dispatched_rows = 0
        for future in futures:
            result = future.result()
            dispatched_rows += result.attempted
            outcome.batch_results.append(result)
            outcome.processed += result.attempted
            outcome.succeeded += result.succeeded
            outcome.errors.extend(result.errors)

        outcome.skipped_rows = total - dispatched_rows
        outcome.cancelled = self.cancel_token.is_cancelled and outcome.skipped_rows > 0
        outcome.peak_concurrency = self.semaphore.peak
        return outcome

    def _run_slot(self, index: int, batch: Sequence[T], writer_factory: WriterFactory, total: int) -> BatchResult:
        try:
            result = self._run_batch(index, batch, writer_factory)
        finally:
            self.semaphore.release()
        self._notify(result, total)
        return result

    def _notify(self, result: BatchResult, total: int) -> None:
        with self._progress_lock:
            self._processed_so_far += result.attempted
            processed = self._processed_so_far
            try:
                if self.batch_callback is not None:
                    self.batch_callback(result)
                if self.progress_callback is not None:
                    self.progress_callback(processed, total)
            except Exception:
                logger.exception("Progress callback failed after batch %s", result.index)

    def _run_batch(self, index: int, batch: Sequence[T], writer_factory: WriterFactory) -> BatchResult:
        started = time.perf_counter()
        attempts = 0

        def _attempt() -> tuple[int, list[RowDiagnostic]]:
            nonlocal attempts
            attempts += 1
            session = self.session_factory()
            try:
                write_row = writer_factory(session)
                succeeded = 0
                errors: list[RowDiagnostic] = []
                for item in batch:
                    try:
                        with session.begin_nested():
                            write_row(item)
                        succeeded += 1
                    except TRANSIENT_ERRORS:
                        raise
                    except Exception as exc:
                        errors.append(_row_failure(self.row_number(item), exc))
                session.commit()
                return succeeded, errors
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            record_batch_retry()
            logger.warning(
                "Batch %s attempt %s failed transiently; retrying in %.2fs",
                index,
                attempt,
                delay,
                extra={"importer_batch_index": index, "importer_batch_error": str(exc)},
            )

        try:
            succeeded, errors = execute_with_retry(
                _attempt, self.retry_policy, on_retry=_on_retry, sleep=self.sleep
            )
            batch_failed = False
        except Exception as exc:
            logger.error(
                "Batch %s failed after %s attempt(s): %s",
                index,
                attempts,
                exc,
                extra={"importer_batch_index": index, "importer_batch_attempts": attempts},
            )
            message = _short(f"System error: batch {index + 1} failed after {attempts} attempt(s): {exc}")
            succeeded = 0
            errors = [RowDiagnostic.error(self.row_number(item), None, None, message) for item in batch]
            batch_failed = True

        elapsed = time.perf_counter() - started
        record_batch(status="failure" if batch_failed else "success", duration_seconds=elapsed, row_count=len(batch))
        return BatchResult(
            index=index,
            attempted=len(batch),
            succeeded=succeeded,
            errors=errors,
            elapsed_seconds=elapsed,
            attempts=attempts,
            batch_failed=batch_failed,
        )
