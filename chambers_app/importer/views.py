"""
Importer blueprint endpoints: LEX uploads, job progress, cancellation and export.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user
from werkzeug.exceptions import RequestEntityTooLarge

from config.monitoring import ImporterMonitoring
from chambers_app.models import db
from chambers_app.utils.permissions import has_permission

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .pipeline.errors import (
    ImportAccessDenied,
    ImportJobError,
    ImportJobNotFound,
    InvalidTransitionError,
    UnsafeFilenameError,
)
from .pipeline.export import count_exportable, export_enquiries
from .pipeline.job_service import ImportJobService, JobFilters, get_tracker
from .utils import cleanup_upload, is_importer_enabled, max_upload_bytes, persist_upload

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")

RUN_IMPORT_TASK = "importer.lex.run_import"


def _json_error(message: str, status: HTTPStatus, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _ensure_authenticated_api():
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED)
    return None


def _ensure_permission(permission_name: str):
    if not has_permission(current_user, permission_name):
        return _json_error(f"Missing {permission_name} permission.", HTTPStatus.FORBIDDEN)
    return None


def _guard(permission_name: str | None = None):
    for check in (_ensure_importer_enabled_api, _ensure_authenticated_api):
        response = check()
        if response:
            return response
    if permission_name:
        return _ensure_permission(permission_name)
    return None


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@importer_blueprint.errorhandler(RequestEntityTooLarge)
def _upload_too_large(_exc):
    ImporterMonitoring.record_upload(status="too_large")
    limit_mb = current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 50)
    return _json_error(f"Upload exceeds the {limit_mb} MB limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    tracker = importer_state.get("tracker")
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "tracked_jobs": len(tracker) if tracker is not None else 0,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "importer_enabled": importer_state.get("enabled", False),
        "worker_enabled": importer_state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["importer_enabled"] or not payload["worker_enabled"]:
        payload["status"] = "disabled"
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def _dispatch(job_id: int, file_path) -> str:
    """Queue the job on the worker when enabled; otherwise run it inline."""

    if current_app.config.get("IMPORTER_WORKER_ENABLED"):
        celery_app = get_celery_app(current_app)
        if celery_app is None:
            raise ImportJobError("Importer worker is enabled but Celery is unavailable.")
        celery_app.send_task(
            RUN_IMPORT_TASK,
            kwargs={"job_id": job_id, "file_path": str(file_path), "keep_file": False},
            queue=DEFAULT_QUEUE_NAME,
        )
        return "queued"

    try:
        snapshot = ImportJobService().run_job(job_id, file_path)
    finally:
        cleanup_upload(file_path)
    return snapshot.status.value


@importer_blueprint.post("/imports")
def importer_create_import():
    guard = _guard("run_imports")
    if guard:
        return guard

    if request.content_length and request.content_length > max_upload_bytes(current_app):
        raise RequestEntityTooLarge()

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        ImporterMonitoring.record_upload(status="invalid_request")
        return _json_error("A CSV file is required in the 'file' field.", HTTPStatus.BAD_REQUEST)

    service = ImportJobService()
    try:
        job = service.create_job(upload.filename, request.form.get("type") or "enquiries", current_user)
    except UnsafeFilenameError as exc:
        ImporterMonitoring.record_upload(status="rejected")
        return _json_error(
            str(exc),
            HTTPStatus.BAD_REQUEST,
            security_concerns=[concern.as_dict() for concern in exc.concerns],
        )
    except ValueError as exc:
        ImporterMonitoring.record_upload(status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    job_id = job.id
    file_path = persist_upload(upload, current_app)
    job.ingest_params_json = {"file_path": str(file_path), "keep_file": False}
    db.session.commit()

    status = _dispatch(job_id, file_path)
    ImporterMonitoring.record_upload(status="accepted")
    current_app.logger.info(
        "LEX upload accepted",
        extra={"importer_job_id": job_id, "importer_dispatch": status, "user_id": current_user.id},
    )
    return jsonify({"job_id": job_id, "status": status}), HTTPStatus.ACCEPTED


@importer_blueprint.get("/imports")
def importer_list_imports():
    guard = _guard("view_imports")
    if guard:
        return guard

    raw = request.args
    try:
        filters = JobFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("limit") or raw.get("page_size"),
            statuses=_split_csv(raw.get("status")),
            import_types=_split_csv(raw.get("type")),
        )
    except ValueError as exc:
        ImporterMonitoring.record_jobs_list(status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = ImportJobService().list_jobs(filters, current_user)
    ImporterMonitoring.record_jobs_list(status="success", result_count=len(result.items))
    payload = result.as_dict()
    payload["jobs"] = payload.pop("items")
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/imports/<int:job_id>/progress")
def importer_job_progress(job_id: int):
    guard = _guard()
    if guard:
        return guard

    start_time = time.perf_counter()
    try:
        payload = get_tracker().get_progress(job_id, current_user)
    except ImportJobNotFound as exc:
        ImporterMonitoring.record_progress(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ImportAccessDenied as exc:
        ImporterMonitoring.record_progress(duration_seconds=time.perf_counter() - start_time, status="forbidden")
        current_app.logger.warning(
            "Denied progress read for import job %s",
            job_id,
            extra={"importer_job_id": job_id, "user_id": current_user.id},
        )
        return _json_error(str(exc), HTTPStatus.FORBIDDEN)

    ImporterMonitoring.record_progress(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.delete("/imports/<int:job_id>")
def importer_cancel_import(job_id: int):
    guard = _guard()
    if guard:
        return guard

    try:
        payload = ImportJobService().cancel_job(job_id, current_user)
    except ImportJobNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ImportAccessDenied as exc:
        return _json_error(str(exc), HTTPStatus.FORBIDDEN)
    except (InvalidTransitionError, ImportJobError) as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    return jsonify(payload), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@importer_blueprint.get("/export")
def importer_export_enquiries():
    guard = _guard("export_enquiries")
    if guard:
        return guard

    include_unreferenced = request.args.get("include_unreferenced", "").lower() in ("1", "true", "yes")
    start_time = time.perf_counter()
    body = export_enquiries(db.session, include_unreferenced=include_unreferenced)
    row_count = count_exportable(db.session, include_unreferenced=include_unreferenced)
    ImporterMonitoring.record_export(
        duration_seconds=time.perf_counter() - start_time, status="success", row_count=row_count
    )

    filename = f"lex_export_{datetime.now(timezone.utc):%Y%m%d}.csv"
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
