"""
Import job lifecycle: creation, execution, cancellation and listing.

``ImportJobService`` wires the CSV adapter, row validator, batch coordinator,
reconciler, progress tracker and reporter together for a single job. It runs
inside a Flask application context (request, CLI or Celery task); batch
workers get their own sessions bound to the application's engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from flask import Flask, current_app
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from chambers_app.importer.adapters import CSVAdapterError, LexCSVAdapter
from chambers_app.importer.metrics import record_job, record_reconcile, record_rows
from chambers_app.models import db
from chambers_app.models.base import SQLITE_IMMEDIATE_OPTION, utc_now
from chambers_app.models.importer.schema import (
    ImportAuditEntry,
    ImportJob,
    ImportJobStatus,
    ImportType,
)
from chambers_app.utils.permissions import can_access_job, is_elevated

from .batching import BatchCoordinator, BatchResult
from .diagnostics import RowDiagnostic
from .errors import (
    ImportAccessDenied,
    ImportJobNotFound,
    InvalidTransitionError,
    UnsafeFilenameError,
)
from .formats import is_safe_filename
from .progress import ProgressSnapshot, ProgressTracker
from .reconcile import EntityReconciler
from .reporting import ErrorReporter, log_security_alert, sanitize_value
from .repository import EnquiryWrite, LexRepository
from .retry import RetryPolicy
from .similarity import get_scorer
from .validation import ValidRow, validate_batch

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
FILE_LEVEL_ROW = 0
HEADER_ROW = 1
CANCELLED_REASON = "cancelled"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Persistence of tracker snapshots
# ---------------------------------------------------------------------------


def snapshot_from_job(job: ImportJob) -> ProgressSnapshot:
    payload = job.diagnostics_json or {}
    errors = [RowDiagnostic.from_dict(item) for item in payload.get("errors", ())]
    warnings = [RowDiagnostic.from_dict(item) for item in payload.get("warnings", ())]
    return ProgressSnapshot(
        job_id=job.id,
        owner_id=job.owner_id,
        filename=job.filename,
        import_type=job.import_type.value,
        status=job.status,
        total_rows=job.total_rows or 0,
        processed_rows=job.processed_rows or 0,
        error_rows=job.error_rows or 0,
        started_at=_as_utc(job.started_at),
        completed_at=_as_utc(job.completed_at),
        errors=errors,
        warnings=warnings,
        error_count=int(payload.get("error_count", len(errors))),
        warning_count=int(payload.get("warning_count", len(warnings))),
        summary=payload.get("summary"),
        error_summary=job.error_summary,
        cancel_reason=job.cancel_reason,
    )


class JobSnapshotStore:
    """Reads and writes job rows on behalf of the tracker.

    Each call pushes its own application context so it gets a fresh scoped
    session; callers on the main thread must not hold an open write
    transaction while it runs.
    """

    def __init__(self, app: Flask) -> None:
        self.app = app

    def persist(self, snapshot: ProgressSnapshot) -> None:
        values: dict[str, Any] = {
            "status": snapshot.status,
            "total_rows": snapshot.total_rows,
            "processed_rows": snapshot.processed_rows,
            "error_rows": snapshot.error_rows,
            "started_at": snapshot.started_at,
            "completed_at": snapshot.completed_at,
            "diagnostics_json": snapshot.diagnostics_payload(),
            "error_summary": snapshot.error_summary,
            "updated_at": utc_now(),
        }
        if snapshot.cancel_reason:
            values["cancel_reason"] = snapshot.cancel_reason
        with self.app.app_context():
            # A single UPDATE takes the write lock on its first statement.
            result = db.session.execute(update(ImportJob).where(ImportJob.id == snapshot.job_id).values(**values))
            db.session.commit()
        if not result.rowcount:
            logger.warning(
                "Import job %s vanished before progress could be saved",
                snapshot.job_id,
                extra={"importer_job_id": snapshot.job_id},
            )

    def load(self, job_id: int) -> ProgressSnapshot | None:
        with self.app.app_context():
            job = db.session.get(ImportJob, job_id)
            return snapshot_from_job(job) if job is not None else None

    def cancel_requested(self, job_id: int) -> str | None:
        with self.app.app_context():
            return db.session.execute(
                select(ImportJob.cancel_reason).where(ImportJob.id == job_id)
            ).scalar_one_or_none()


def build_tracker(app: Flask) -> ProgressTracker:
    store = JobSnapshotStore(app)
    return ProgressTracker(
        persister=store.persist,
        loader=store.load,
        cancel_source=store.cancel_requested,
        persist_interval=float(app.config.get("IMPORTER_PROGRESS_PERSIST_SECONDS", 2.0)),
        capacity=int(app.config.get("IMPORTER_DIAGNOSTIC_CAPACITY", 100)),
        retention=timedelta(hours=float(app.config.get("IMPORTER_PROGRESS_RETENTION_HOURS", 24))),
        sweep_interval=float(app.config.get("IMPORTER_PROGRESS_SWEEP_MINUTES", 15)) * 60,
    )


def get_tracker(app: Flask | None = None) -> ProgressTracker:
    app = app or current_app._get_current_object()  # type: ignore[attr-defined]
    state = app.extensions.setdefault("importer", {})
    tracker = state.get("tracker")
    if tracker is None:
        tracker = state["tracker"] = build_tracker(app)
    return tracker


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobFilters:
    """Canonical set of filter options applied to import job queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[ImportJobStatus, ...] = field(default_factory=tuple)
    import_types: tuple[ImportType, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        import_types: Iterable[str] | None = None,
    ) -> "JobFilters":
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
        resolved_statuses = tuple(
            _coerce_enum(ImportJobStatus, value, "status") for value in (statuses or ()) if value
        )
        resolved_types = tuple(_coerce_enum(ImportType, value, "type") for value in (import_types or ()) if value)
        return cls(
            page=resolved_page,
            page_size=resolved_size,
            statuses=resolved_statuses,
            import_types=resolved_types,
        )


@dataclass(slots=True)
class JobListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def summarize_job(job: ImportJob) -> dict[str, Any]:
    started_at = _as_utc(job.started_at)
    completed_at = _as_utc(job.completed_at)
    return {
        "id": job.id,
        "filename": job.filename,
        "type": job.import_type.value,
        "status": job.status.value,
        "total_rows": job.total_rows,
        "processed_rows": job.processed_rows,
        "error_rows": job.error_rows,
        "succeeded_rows": job.succeeded_rows,
        "owner_id": job.owner_id,
        "created_at": _as_utc(job.created_at).isoformat() if job.created_at else None,
        "started_at": started_at.isoformat() if started_at else None,
        "completed_at": completed_at.isoformat() if completed_at else None,
        "cancel_reason": job.cancel_reason,
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IngestSettings:
    max_rows: int = 50_000
    batch_size: int = 500
    max_concurrency: int = 3
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    client_threshold: float = 0.90
    fee_earner_threshold: float = 0.80
    scorer: str = "token_sort"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "IngestSettings":
        return cls(
            max_rows=int(config.get("IMPORTER_MAX_ROWS", 50_000)),
            batch_size=int(config.get("IMPORTER_BATCH_SIZE", 500)),
            max_concurrency=int(config.get("IMPORTER_MAX_CONCURRENT_BATCHES", 3)),
            retry_policy=RetryPolicy.from_config(config),
            client_threshold=float(config.get("RECONCILE_CLIENT_THRESHOLD", 0.90)),
            fee_earner_threshold=float(config.get("RECONCILE_FEE_EARNER_THRESHOLD", 0.80)),
            scorer=str(config.get("RECONCILE_SCORER", "token_sort")),
        )


class ImportJobService:
    """Facade over the import job lifecycle with consistent audit semantics."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        tracker: ProgressTracker | None = None,
        settings: IngestSettings | None = None,
        reporter: ErrorReporter | None = None,
        today: date | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.tracker = tracker if tracker is not None else get_tracker()
        self.settings = settings or IngestSettings.from_config(current_app.config)
        self.reporter = reporter or ErrorReporter(
            alert_handler=log_security_alert if current_app.config.get("SECURITY_ALERTS_ENABLED", True) else None,
            audit_handler=self._audit_from_report,
        )
        self.today = today
        self._audit_context: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit(self, action: str, details: Mapping[str, Any], *, job_id: int | None, user_id: int | None) -> None:
        self.session.add(
            ImportAuditEntry(job_id=job_id, user_id=user_id, action=action, details_json=dict(details))
        )

    def _audit_from_report(self, action: str, details: dict[str, Any]) -> None:
        self._audit(
            action,
            details,
            job_id=details.get("job_id") or self._audit_context.get("job_id"),
            user_id=self._audit_context.get("user_id"),
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        filename: str,
        import_type: ImportType | str,
        owner,
        *,
        ingest_params: Mapping[str, Any] | None = None,
    ) -> ImportJob:
        """Create a pending job; unsafe filenames are screened, audited and refused."""

        owner_id = getattr(owner, "id", owner)
        resolved_type = _coerce_enum(ImportType, import_type, "type")

        if not is_safe_filename(filename):
            self._audit_context = {"user_id": owner_id}
            try:
                report = self.reporter.screen_upload(filename)
            finally:
                self._audit_context = {}
            self.session.commit()
            current_app.logger.warning(
                "Rejected LEX upload with unsafe filename",
                extra={"importer_filename": sanitize_value(filename), "importer_owner_id": owner_id},
            )
            raise UnsafeFilenameError(filename, report.security_concerns)

        job = ImportJob(
            filename=filename,
            import_type=resolved_type,
            status=ImportJobStatus.PENDING,
            owner_id=owner_id,
            ingest_params_json=dict(ingest_params or {}),
        )
        self.session.add(job)
        self.session.flush()
        job_id = job.id
        self._audit(
            "IMPORT_CREATED",
            {"filename": filename, "type": resolved_type.value},
            job_id=job_id,
            user_id=owner_id,
        )
        self.session.commit()
        current_app.logger.info(
            "Import job %s created for %s",
            job_id,
            filename,
            extra={"importer_job_id": job_id, "importer_owner_id": owner_id},
        )
        return job

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_job(self, job_id: int, file_path: str | Path) -> ProgressSnapshot:
        """Parse, validate, reconcile and persist one uploaded LEX file."""

        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFound(job_id)
        owner_id = job.owner_id
        filename = job.filename
        import_type = job.import_type.value
        status = job.status
        # Worker threads write through their own connections; release ours first.
        self.session.commit()

        if status.is_terminal:
            current_app.logger.info(
                "Import job %s already %s; skipping run", job_id, status.value, extra={"importer_job_id": job_id}
            )
            return self.tracker.snapshot_or_load(job_id)

        token = self.tracker.register(job_id, owner_id=owner_id, filename=filename, import_type=import_type)
        self.tracker.start(job_id, total_rows=0)
        current_app.logger.info(
            "Import job %s started", job_id, extra={"importer_job_id": job_id, "importer_type": import_type}
        )

        try:
            return self._execute(job_id, Path(file_path), filename=filename, owner_id=owner_id, token=token)
        except CSVAdapterError as exc:
            self.session.rollback()
            return self._fail(job_id, owner_id, str(exc), row=HEADER_ROW)
        except Exception as exc:
            self.session.rollback()
            current_app.logger.exception(
                "Import job %s failed unexpectedly", job_id, extra={"importer_job_id": job_id}
            )
            return self._fail(job_id, owner_id, f"System error: {exc}", row=FILE_LEVEL_ROW)

    def _execute(self, job_id: int, path: Path, *, filename: str, owner_id: int | None, token) -> ProgressSnapshot:
        settings = self.settings
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            rows = LexCSVAdapter(handle, max_rows=settings.max_rows).read_all()

        total = len(rows)
        self.tracker.set_total(job_id, total)

        validation = validate_batch(((row.row_number, row.values) for row in rows), today=self.today)
        all_diagnostics: list[RowDiagnostic] = []
        for invalid in validation.invalid:
            all_diagnostics.extend(invalid.errors)
            all_diagnostics.extend(invalid.warnings)
        for valid in validation.valid:
            all_diagnostics.extend(valid.warnings)
        self.tracker.add_diagnostics(job_id, all_diagnostics)

        invalid_count = len(validation.invalid)
        self.tracker.update_progress(job_id, processed_rows=invalid_count, error_rows=invalid_count)

        counters = {"processed": invalid_count, "errors": invalid_count}
        touched_clients: set[int] = set()

        def on_batch(result: BatchResult) -> None:
            counters["processed"] += result.attempted
            counters["errors"] += result.failed
            self.tracker.add_diagnostics(job_id, result.errors)
            self.tracker.update_progress(
                job_id,
                processed_rows=counters["processed"],
                error_rows=counters["errors"],
                batch_completed=True,
            )

        coordinator: BatchCoordinator[ValidRow] = BatchCoordinator(
            sessionmaker(bind=db.engine.execution_options(**{SQLITE_IMMEDIATE_OPTION: True})),
            batch_size=settings.batch_size,
            max_concurrency=settings.max_concurrency,
            retry_policy=settings.retry_policy,
            batch_callback=on_batch,
            cancel_token=token,
        )
        outcome = coordinator.run(validation.valid, self._writer_factory(touched_clients))
        all_diagnostics.extend(outcome.errors)

        if touched_clients:
            LexRepository(self.session).refresh_client_totals(touched_clients)

        error_rows = invalid_count + outcome.failed
        self._audit_context = {"job_id": job_id, "user_id": owner_id}
        try:
            report = self.reporter.generate(
                all_diagnostics,
                filename=filename,
                total_rows=total,
                error_rows=error_rows,
                job_id=job_id,
                cell_values=(value for row in rows for value in row.values.values()),
            )
        finally:
            self._audit_context = {}
        self.session.commit()

        succeeded = outcome.succeeded
        record_rows(succeeded=succeeded, failed=error_rows)
        if outcome.cancelled:
            reason = token.reason or CANCELLED_REASON
            snapshot = self.tracker.fail(
                job_id,
                error_summary=f"Import cancelled ({reason}); {outcome.skipped_rows} rows were not processed.",
                summary=report.as_dict(),
            )
            record_job("cancelled")
            action = "IMPORT_CANCELLED"
        else:
            snapshot = self.tracker.complete(job_id, summary=report.as_dict())
            record_job("completed")
            action = "IMPORT_COMPLETED"

        self._audit(
            action,
            {
                "total_rows": total,
                "processed_rows": snapshot.processed_rows,
                "error_rows": snapshot.error_rows,
                "peak_concurrency": outcome.peak_concurrency,
            },
            job_id=job_id,
            user_id=owner_id,
        )
        self.session.commit()
        current_app.logger.info(
            "Import job %s %s: %s processed, %s errors",
            job_id,
            snapshot.status.value,
            snapshot.processed_rows,
            snapshot.error_rows,
            extra={
                "importer_job_id": job_id,
                "importer_rows_total": total,
                "importer_rows_succeeded": succeeded,
                "importer_rows_failed": error_rows,
            },
        )
        return snapshot

    def _writer_factory(self, touched_clients: set[int]):
        settings = self.settings
        scorer = get_scorer(settings.scorer)

        def factory(session: Session):
            repository = LexRepository(session)
            reconciler = EntityReconciler(
                repository,
                scorer=scorer,
                client_threshold=settings.client_threshold,
                fee_earner_threshold=settings.fee_earner_threshold,
            )

            def write_row(item: ValidRow) -> None:
                parsed = item.parsed
                client = reconciler.resolve_client(parsed.client_name, parsed.client_type)
                record_reconcile("client", client.kind.value)
                fee_earner = reconciler.resolve_fee_earner(parsed.fee_earner)
                record_reconcile("fee_earner", fee_earner.kind.value)
                repository.upsert_enquiry(
                    EnquiryWrite(
                        reference=parsed.reference,
                        client_id=client.id,
                        fee_earner_id=fee_earner.id,
                        description=parsed.description,
                        value=parsed.value,
                        status=parsed.status,
                        received_on=parsed.date_received,
                    )
                )
                touched_clients.add(client.id)

            return write_row

        return factory

    def _fail(self, job_id: int, owner_id: int | None, message: str, *, row: int) -> ProgressSnapshot:
        snapshot = self.tracker.snapshot(job_id)
        if snapshot.status.is_terminal:
            return snapshot
        self.tracker.add_diagnostics(job_id, [RowDiagnostic.error(row, None, None, message[:200])])
        snapshot = self.tracker.fail(job_id, error_summary=message)
        record_job("failed")
        self._audit("IMPORT_FAILED", {"error": message[:200]}, job_id=job_id, user_id=owner_id)
        self.session.commit()
        current_app.logger.error(
            "Import job %s failed: %s", job_id, message, extra={"importer_job_id": job_id}
        )
        return snapshot

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_job(self, job_id: int, user, *, reason: str = CANCELLED_REASON) -> dict[str, Any]:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFound(job_id)
        if not can_access_job(user, job.owner_id):
            raise ImportAccessDenied(job_id)
        if job.status.is_terminal:
            raise InvalidTransitionError(f"Import job {job_id} is already {job.status.value}.")

        user_id = getattr(user, "id", None)
        token = self.tracker.cancel_token(job_id)

        if job.status == ImportJobStatus.PENDING:
            if token is not None:
                token.cancel(reason)
            job.status = ImportJobStatus.FAILED
            job.completed_at = datetime.now(timezone.utc)
            job.cancel_reason = reason
            job.error_summary = "Import cancelled before processing started."
            self._audit("IMPORT_CANCELLED", {"reason": reason, "stage": "pending"}, job_id=job_id, user_id=user_id)
            self.session.commit()
            if self.tracker.is_tracked(job_id):
                self.tracker.forget(job_id)
            record_job("cancelled")
            return {"job_id": job_id, "status": ImportJobStatus.FAILED.value, "cancel_reason": reason}

        # The running job may live in another process; it polls this column between dispatches.
        requested = self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status == ImportJobStatus.PROCESSING)
            .values(cancel_reason=reason, updated_at=utc_now())
        )
        if not requested.rowcount:
            self.session.rollback()
            raise InvalidTransitionError(f"Import job {job_id} finished before it could be cancelled.")
        self._audit(
            "IMPORT_CANCEL_REQUESTED", {"reason": reason, "stage": "processing"}, job_id=job_id, user_id=user_id
        )
        self.session.commit()
        if token is not None:
            token.cancel(reason)
        current_app.logger.info(
            "Cancellation requested for import job %s", job_id, extra={"importer_job_id": job_id}
        )
        return {"job_id": job_id, "status": ImportJobStatus.PROCESSING.value, "cancel_reason": reason}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_progress(self, job_id: int, user) -> dict[str, Any]:
        return self.tracker.get_progress(job_id, user)

    def list_jobs(self, filters: JobFilters, user) -> JobListResult:
        query = self.session.query(ImportJob)
        if not is_elevated(user):
            query = query.filter(ImportJob.owner_id == getattr(user, "id", None))
        if filters.statuses:
            query = query.filter(ImportJob.status.in_(filters.statuses))
        if filters.import_types:
            query = query.filter(ImportJob.import_type.in_(filters.import_types))

        total = query.with_entities(func.count(ImportJob.id)).scalar() or 0
        if total == 0:
            return JobListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        jobs = (
            query.order_by(ImportJob.created_at.desc(), ImportJob.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return JobListResult(
            items=[summarize_job(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError:
        raise ValueError(f"Unsupported {label} filter '{value}'.") from None


__all__ = [
    "ImportJobService",
    "IngestSettings",
    "JobFilters",
    "JobListResult",
    "JobSnapshotStore",
    "build_tracker",
    "get_tracker",
    "snapshot_from_job",
    "summarize_job",
]
