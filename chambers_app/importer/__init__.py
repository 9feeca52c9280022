"""
LEX importer feature package.

Mounts the importer blueprint and CLI, builds the app-scoped progress tracker
and configures Celery when the importer is enabled; stays inert otherwise.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline.job_service import ImportJobService, JobFilters, build_tracker
from .utils import is_importer_enabled, max_upload_bytes
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "ImportJobService",
    "JobFilters",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
            "tracker": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    if importer_cli.name in app.cli.commands:
        app.cli.commands.pop(importer_cli.name)
    app.cli.add_command(importer_cli if enabled else get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer blueprint and CLI based on configuration.

    State lives in ``app.extensions['importer']``: the enabled flags, the
    progress tracker shared by requests, CLI and tasks, and the Celery app.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    if state.get("tracker") is None:
        state["tracker"] = build_tracker(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", max_upload_bytes(app))
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    app.logger.info(
        "LEX importer enabled",
        extra={
            "importer_worker_enabled": state["worker_enabled"],
            "importer_batch_size": app.config.get("IMPORTER_BATCH_SIZE"),
            "importer_max_concurrent_batches": app.config.get("IMPORTER_MAX_CONCURRENT_BATCHES"),
        },
    )
