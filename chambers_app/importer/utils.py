"""
Importer-specific utilities for handling uploaded files and cleanup.
"""

from __future__ import annotations

import time
from pathlib import Path
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

DEFAULT_UPLOAD_SUBDIR = "import_uploads"


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = app.config if app is not None else current_app.config
    return bool(config.get("IMPORTER_ENABLED", False))


def _normalize_upload_dir(configured_path: str | None, instance_path: str, *, default_subdir: str) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(
        app.config.get("IMPORTER_UPLOAD_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_UPLOAD_SUBDIR,
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def max_upload_bytes(app) -> int:
    return int(app.config.get("IMPORTER_MAX_UPLOAD_MB", 50)) * 1024 * 1024


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist the uploaded file to disk and return the fully-qualified path.

    Files are stored under ``resolve_upload_directory(app)`` using a UUID-based
    filename; the client-supplied name is only kept on the job row.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix.lower() if original_name else ""
    target_path = upload_dir / f"{uuid4().hex}{extension or '.csv'}"
    file_storage.save(target_path)
    current_app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """
    Remove a stored upload, logging but ignoring filesystem errors.
    """

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", path, exc)


def cleanup_stale_uploads(app, *, max_age_hours: float = 24.0, now: float | None = None) -> list[Path]:
    """
    Delete stored uploads older than ``max_age_hours``; returns the removed paths.
    """

    upload_dir = resolve_upload_directory(app)
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed: list[Path] = []
    for candidate in sorted(upload_dir.glob("*.csv")):
        if candidate.stat().st_mtime < cutoff:
            cleanup_upload(candidate)
            removed.append(candidate)
    return removed
