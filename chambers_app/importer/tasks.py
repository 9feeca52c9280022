"""
Importer Celery tasks.

Tasks run inside a Flask application context (see ``FlaskContextTask``) and
delegate to :class:`ImportJobService` so the worker and the inline CLI path
share one code path.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from celery import shared_task
from flask import current_app

from chambers_app.importer.pipeline.job_service import ImportJobService, get_tracker
from chambers_app.importer.utils import cleanup_upload


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.lex.run_import", bind=True)
def run_import(self, *, job_id: int, file_path: str, keep_file: bool = False) -> dict[str, Any]:
    """
    Execute a LEX import job asynchronously via the importer worker.
    """

    path = Path(file_path)
    try:
        snapshot = ImportJobService().run_job(job_id, path)
    finally:
        if not keep_file:
            cleanup_upload(path)

    current_app.logger.info(
        "LEX import task finished",
        extra={
            "importer_job_id": job_id,
            "importer_task_id": self.request.id,
            "importer_status": snapshot.status.value,
        },
    )
    return {
        "job_id": job_id,
        "status": snapshot.status.value,
        "total_rows": snapshot.total_rows,
        "processed_rows": snapshot.processed_rows,
        "error_rows": snapshot.error_rows,
    }


@shared_task(name="importer.lex.sweep_progress", bind=True)
def sweep_progress(self, *, max_age_hours: float | None = None) -> dict[str, Any]:
    """
    Drop in-memory progress trackers that have not changed within the retention window.
    """

    hours = max_age_hours if max_age_hours is not None else current_app.config.get("IMPORTER_PROGRESS_RETENTION_HOURS", 24)
    removed = get_tracker().sweep_stale(timedelta(hours=float(hours)))
    return {"removed": removed, "max_age_hours": float(hours)}
