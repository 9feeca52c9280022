"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_job_counter = Counter(
    "importer_lex_jobs_total",
    "LEX import jobs reaching a terminal state, by status.",
    ["status"],
)
_row_counter = Counter(
    "importer_lex_rows_total",
    "LEX rows processed, by outcome.",
    ["outcome"],
)
_batch_counter = Counter(
    "importer_lex_batches_total",
    "Number of LEX write batches processed by status.",
    ["status"],
)
_batch_duration = Histogram(
    "importer_lex_batch_duration_seconds",
    "Duration of LEX batch processing in seconds.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
_batch_retries = Counter(
    "importer_lex_batch_retries_total",
    "Transient batch failures that were retried.",
)
_reconcile_counter = Counter(
    "importer_lex_reconcile_total",
    "Entity reconciliation outcomes.",
    ["entity", "kind"],
)
_security_alerts = Counter(
    "importer_lex_security_alerts_total",
    "Security alerts raised while screening LEX uploads.",
    ["severity"],
)


def record_job(status: Literal["completed", "failed", "cancelled"]) -> None:
    """Increment the terminal job counter."""

    _job_counter.labels(status=status).inc()


def record_rows(*, succeeded: int, failed: int) -> None:
    if succeeded:
        _row_counter.labels(outcome="succeeded").inc(succeeded)
    if failed:
        _row_counter.labels(outcome="failed").inc(failed)


def record_batch(
    *,
    status: Literal["success", "failure"],
    duration_seconds: float,
    row_count: int,
) -> None:
    """Capture metrics for a LEX batch write."""

    _batch_counter.labels(status=status).inc()
    _batch_duration.observe(max(duration_seconds, 0.0))
    if status == "failure":
        _row_counter.labels(outcome="batch_failed").inc(max(row_count, 0))


def record_batch_retry() -> None:
    _batch_retries.inc()


def record_reconcile(entity: Literal["client", "fee_earner"], kind: str) -> None:
    _reconcile_counter.labels(entity=entity, kind=kind).inc()


def record_security_alert(severity: str) -> None:
    _security_alerts.labels(severity=severity).inc()
