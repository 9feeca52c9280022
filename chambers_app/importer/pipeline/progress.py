"""In-memory job progress with throttled persistence and permissioned reads.

A :class:`ProgressTracker` lives in the importer extension state for the life
of the application. Hot counters and the most recent diagnostics stay in
memory for cheap polling; a persister callback writes a snapshot to the job
row at most every ``persist_interval`` seconds, and always on a terminal
transition, so progress survives a restart.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Iterable

from chambers_app.models.importer.schema import ImportJobStatus
from chambers_app.utils.permissions import can_access_job

from .batching import CancellationToken
from .diagnostics import DiagnosticBuffer, RowDiagnostic, Severity
from .errors import ImportAccessDenied, ImportJobNotFound, InvalidTransitionError
from .reporting import sanitize_value

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_INTERVAL = 2.0
DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_SWEEP_INTERVAL = 15 * 60.0
DEFAULT_CAPACITY = 100
VIEW_ITEM_LIMIT = 10
MESSAGE_LIMIT = 200

_ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.PROCESSING, ImportJobStatus.FAILED}),
    ImportJobStatus.PROCESSING: frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED}),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def percent_complete(processed: int, total: int, status: ImportJobStatus | None = None) -> int:
    if total <= 0:
        return 100 if status == ImportJobStatus.COMPLETED else 0
    return min(100, int(processed * 100 / total + 0.5))


def _truncate(message: str) -> str:
    if len(message) <= MESSAGE_LIMIT:
        return message
    return message[: MESSAGE_LIMIT - 3] + "..."


def _view_items(items: list[RowDiagnostic], total: int) -> dict[str, Any]:
    shown = items[:VIEW_ITEM_LIMIT]
    return {
        "count": total,
        "items": [
            {
                "row": diagnostic.row,
                "field": diagnostic.field,
                "message": _truncate(diagnostic.message),
                "severity": diagnostic.severity.value,
                "value_preview": sanitize_value(diagnostic.value),
            }
            for diagnostic in shown
        ],
        "has_more": total > len(shown),
    }


@dataclass
class ProgressSnapshot:
    """Point-in-time copy of a job's progress, as written to the job row."""

    job_id: int
    owner_id: int | None
    filename: str
    import_type: str
    status: ImportJobStatus
    total_rows: int
    processed_rows: int
    error_rows: int
    started_at: datetime | None
    completed_at: datetime | None
    errors: list[RowDiagnostic] = field(default_factory=list)
    warnings: list[RowDiagnostic] = field(default_factory=list)
    error_count: int = 0
    warning_count: int = 0
    summary: dict[str, Any] | None = None
    error_summary: str | None = None
    cancel_reason: str | None = None
    estimated_completion: datetime | None = None
    version: int = 0

    def diagnostics_payload(self) -> dict[str, Any]:
        return {
            "errors": [diagnostic.as_dict() for diagnostic in self.errors],
            "warnings": [diagnostic.as_dict() for diagnostic in self.warnings],
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "summary": self.summary,
        }

    def as_view(self) -> dict[str, Any]:
        duration = None
        if self.started_at and self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()
        return {
            "id": self.job_id,
            "filename": self.filename,
            "type": self.import_type,
            "status": self.status.value,
            "progress": {
                "total": self.total_rows,
                "processed": self.processed_rows,
                "errors": self.error_rows,
                "succeeded": max(0, self.processed_rows - self.error_rows),
                "percent": percent_complete(self.processed_rows, self.total_rows, self.status),
            },
            "timing": {
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "completed_at": self.completed_at.isoformat() if self.completed_at else None,
                "estimated_completion": (
                    self.estimated_completion.isoformat() if self.estimated_completion else None
                ),
                "duration_seconds": duration,
            },
            "errors": _view_items(self.errors, self.error_count),
            "warnings": _view_items(self.warnings, self.warning_count),
            "summary": self.summary,
            "error_summary": self.error_summary,
            "cancel_reason": self.cancel_reason,
        }


@dataclass
class _JobState:
    job_id: int
    owner_id: int | None
    filename: str
    import_type: str
    errors: DiagnosticBuffer
    warnings: DiagnosticBuffer
    status: ImportJobStatus = ImportJobStatus.PENDING
    total_rows: int = 0
    processed_rows: int = 0
    error_rows: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    batches_completed: int = 0
    summary: dict[str, Any] | None = None
    error_summary: str | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    last_update: float = 0.0
    last_persist: float | None = None
    version: int = 0


Persister = Callable[[ProgressSnapshot], None]
Loader = Callable[[int], "ProgressSnapshot | None"]
CancelSource = Callable[[int], "str | None"]


class ProgressTracker:
    """Thread-safe registry of running import jobs."""

    def __init__(
        self,
        *,
        persister: Persister | None = None,
        loader: Loader | None = None,
        cancel_source: CancelSource | None = None,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
        capacity: int = DEFAULT_CAPACITY,
        retention: timedelta = DEFAULT_RETENTION,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persister = persister
        self.loader = loader
        self.cancel_source = cancel_source
        self.persist_interval = persist_interval
        self.capacity = capacity
        self.retention = retention
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._last_sweep = clock()
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._persisted_versions: dict[int, int] = {}
        self._jobs: dict[int, _JobState] = {}
        self._jobs_by_owner: dict[int, set[int]] = {}

    # Registration ----------------------------------------------------------

    def register(self, job_id: int, *, owner_id: int | None, filename: str, import_type: str) -> CancellationToken:
        self._sweep_if_due()
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None:
                state = _JobState(
                    job_id=job_id,
                    owner_id=owner_id,
                    filename=filename,
                    import_type=import_type,
                    errors=DiagnosticBuffer(self.capacity),
                    warnings=DiagnosticBuffer(self.capacity),
                    cancel_token=CancellationToken(
                        poll=partial(self.cancel_source, job_id) if self.cancel_source is not None else None
                    ),
                    last_update=self.clock(),
                )
                self._jobs[job_id] = state
                if owner_id is not None:
                    self._jobs_by_owner.setdefault(owner_id, set()).add(job_id)
            return state.cancel_token

    def is_tracked(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._jobs

    def jobs_for_owner(self, owner_id: int) -> set[int]:
        with self._lock:
            return set(self._jobs_by_owner.get(owner_id, ()))

    def cancel_token(self, job_id: int) -> CancellationToken | None:
        with self._lock:
            state = self._jobs.get(job_id)
            return state.cancel_token if state else None

    # Mutations -------------------------------------------------------------

    def _state(self, job_id: int) -> _JobState:
        state = self._jobs.get(job_id)
        if state is None:
            raise ImportJobNotFound(job_id)
        return state

    def _transition(self, state: _JobState, target: ImportJobStatus) -> None:
        if state.status == target and not target.is_terminal:
            return
        if target not in _ALLOWED_TRANSITIONS[state.status]:
            raise InvalidTransitionError(
                f"Import job {state.job_id} cannot move from {state.status.value} to {target.value}."
            )
        state.status = target

    def _touch(self, state: _JobState) -> None:
        state.version += 1
        state.last_update = self.clock()

    def _ensure_mutable(self, state: _JobState) -> None:
        if state.status.is_terminal:
            raise InvalidTransitionError(f"Import job {state.job_id} is {state.status.value} and can no longer change.")

    def start(self, job_id: int, *, total_rows: int) -> None:
        with self._lock:
            state = self._state(job_id)
            self._transition(state, ImportJobStatus.PROCESSING)
            state.total_rows = max(0, total_rows)
            state.started_at = state.started_at or _utc_now()
            self._touch(state)
        self._maybe_persist(job_id, force=True)

    def set_total(self, job_id: int, total_rows: int) -> None:
        with self._lock:
            state = self._state(job_id)
            self._ensure_mutable(state)
            state.total_rows = max(0, total_rows)
            self._touch(state)
        self._maybe_persist(job_id, force=True)

    def add_diagnostics(self, job_id: int, diagnostics: Iterable[RowDiagnostic]) -> None:
        with self._lock:
            state = self._state(job_id)
            self._ensure_mutable(state)
            for diagnostic in diagnostics:
                if diagnostic.severity == Severity.WARNING:
                    state.warnings.append(diagnostic)
                else:
                    state.errors.append(diagnostic)
            self._touch(state)

    def update_progress(
        self,
        job_id: int,
        *,
        processed_rows: int,
        error_rows: int,
        batch_completed: bool = False,
    ) -> None:
        """Advance counters; values never move backward while the job is processing."""

        with self._lock:
            state = self._state(job_id)
            self._ensure_mutable(state)
            state.processed_rows = min(state.total_rows, max(state.processed_rows, processed_rows))
            state.error_rows = min(state.processed_rows, max(state.error_rows, error_rows))
            if batch_completed:
                state.batches_completed += 1
            self._touch(state)
        self._maybe_persist(job_id)

    def complete(self, job_id: int, *, summary: dict[str, Any] | None = None) -> ProgressSnapshot:
        return self._finish(job_id, ImportJobStatus.COMPLETED, summary=summary)

    def fail(
        self,
        job_id: int,
        *,
        error_summary: str,
        summary: dict[str, Any] | None = None,
    ) -> ProgressSnapshot:
        return self._finish(job_id, ImportJobStatus.FAILED, summary=summary, error_summary=error_summary)

    def _finish(
        self,
        job_id: int,
        target: ImportJobStatus,
        *,
        summary: dict[str, Any] | None,
        error_summary: str | None = None,
    ) -> ProgressSnapshot:
        with self._lock:
            state = self._state(job_id)
            self._transition(state, target)
            state.completed_at = _utc_now()
            state.summary = summary
            state.error_summary = error_summary
            self._touch(state)
            snapshot = self._snapshot(state)
        self._persist(snapshot, raise_errors=True)
        return snapshot

    # Persistence -----------------------------------------------------------

    def _maybe_persist(self, job_id: int, *, force: bool = False) -> None:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None or self.persister is None:
                return
            now = self.clock()
            due = state.last_persist is None or now - state.last_persist >= self.persist_interval
            if not (force or due or state.status.is_terminal):
                return
            snapshot = self._snapshot(state)
        self._persist(snapshot, raise_errors=False)

    def _persist(self, snapshot: ProgressSnapshot, *, raise_errors: bool) -> None:
        if self.persister is None:
            return
        with self._persist_lock:
            if snapshot.version <= self._persisted_versions.get(snapshot.job_id, -1):
                return
            try:
                self.persister(snapshot)
            except Exception:
                logger.exception(
                    "Failed to persist progress for import job %s",
                    snapshot.job_id,
                    extra={"importer_job_id": snapshot.job_id},
                )
                if raise_errors:
                    raise
                return
            self._persisted_versions[snapshot.job_id] = snapshot.version
        with self._lock:
            state = self._jobs.get(snapshot.job_id)
            if state is not None:
                # Throttle window starts once the write has finished.
                state.last_persist = self.clock()

    # Reads -----------------------------------------------------------------

    def _estimate_completion(self, state: _JobState) -> datetime | None:
        if state.status != ImportJobStatus.PROCESSING or state.batches_completed < 1:
            return None
        if state.processed_rows <= 0 or state.started_at is None:
            return None
        now = _utc_now()
        elapsed = (now - state.started_at).total_seconds()
        per_row = elapsed / state.processed_rows
        remaining = max(0, state.total_rows - state.processed_rows)
        return now + timedelta(seconds=per_row * remaining)

    def _snapshot(self, state: _JobState) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=state.job_id,
            owner_id=state.owner_id,
            filename=state.filename,
            import_type=state.import_type,
            status=state.status,
            total_rows=state.total_rows,
            processed_rows=state.processed_rows,
            error_rows=state.error_rows,
            started_at=state.started_at,
            completed_at=state.completed_at,
            errors=state.errors.items(),
            warnings=state.warnings.items(),
            error_count=state.errors.total,
            warning_count=state.warnings.total,
            summary=state.summary,
            error_summary=state.error_summary,
            cancel_reason=state.cancel_token.reason if state.cancel_token.is_cancelled else None,
            estimated_completion=self._estimate_completion(state),
            version=state.version,
        )

    def snapshot(self, job_id: int) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot(self._state(job_id))

    def snapshot_or_load(self, job_id: int) -> ProgressSnapshot:
        """Live snapshot when this process is running the job, otherwise the persisted record."""

        with self._lock:
            state = self._jobs.get(job_id)
            snapshot = self._snapshot(state) if state is not None else None
        # A pending local entry has not started here; the job row may be further along.
        if (snapshot is None or snapshot.status == ImportJobStatus.PENDING) and self.loader is not None:
            snapshot = self.loader(job_id) or snapshot
        if snapshot is None:
            raise ImportJobNotFound(job_id)
        return snapshot

    def get_progress(self, job_id: int, user) -> dict[str, Any]:
        """Return the progress view for ``job_id`` if ``user`` owns it or is elevated."""

        self._sweep_if_due()
        snapshot = self.snapshot_or_load(job_id)
        if not can_access_job(user, snapshot.owner_id):
            raise ImportAccessDenied(job_id)
        return snapshot.as_view()

    # Housekeeping ----------------------------------------------------------

    def forget(self, job_id: int) -> None:
        with self._lock:
            state = self._jobs.pop(job_id, None)
            if state is not None and state.owner_id is not None:
                owned = self._jobs_by_owner.get(state.owner_id)
                if owned is not None:
                    owned.discard(job_id)
                    if not owned:
                        self._jobs_by_owner.pop(state.owner_id, None)
        with self._persist_lock:
            self._persisted_versions.pop(job_id, None)

    def sweep_stale(self, max_age: timedelta | None = None) -> list[int]:
        """Drop trackers with no update inside ``max_age``; returns the removed job ids."""

        max_age = self.retention if max_age is None else max_age
        now = self.clock()
        cutoff = now - max_age.total_seconds()
        with self._lock:
            self._last_sweep = now
            stale = [job_id for job_id, state in self._jobs.items() if state.last_update < cutoff]
        for job_id in stale:
            self.forget(job_id)
        if stale:
            logger.info("Swept %s stale import trackers", len(stale), extra={"importer_swept_jobs": stale})
        return stale

    def _sweep_if_due(self) -> None:
        with self._lock:
            due = self.clock() - self._last_sweep >= self.sweep_interval
        if due:
            self.sweep_stale()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
