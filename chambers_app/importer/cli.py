"""
CLI commands for LEX imports, exports and importer housekeeping.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from chambers_app.importer.celery_app import DEFAULT_QUEUE_NAME, SWEEP_TASK_NAME, get_celery_app
from chambers_app.importer.pipeline.errors import ImportJobError
from chambers_app.importer.pipeline.export import export_enquiries
from chambers_app.importer.pipeline.job_service import ImportJobService
from chambers_app.importer.utils import cleanup_stale_uploads, is_importer_enabled, resolve_upload_directory
from chambers_app.models import ImportType, User, db


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    LEX importer management commands.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Uploads will run inline until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    celery_app = _resolve_celery(info.load_app())
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    try:
        payload = task.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    click.echo(json.dumps(payload, indent=2))


def _format_summary(snapshot) -> str:
    view = snapshot.as_view()
    progress = view["progress"]
    lines = [
        f"Import job {snapshot.job_id} {snapshot.status.value}",
        f"  rows: {progress['total']} total, {progress['processed']} processed, "
        f"{progress['succeeded']} succeeded, {progress['errors']} errors",
    ]
    if snapshot.error_summary:
        lines.append(f"  error: {snapshot.error_summary}")
    for item in view["errors"]["items"]:
        lines.append(f"  row {item['row']}: {item['message']}")
    if view["errors"]["has_more"]:
        lines.append(f"  ... {view['errors']['count'] - len(view['errors']['items'])} more error(s)")
    return "\n".join(lines)


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the LEX CSV extract.",
)
@click.option(
    "--type",
    "import_type",
    type=click.Choice([choice.value for choice in ImportType]),
    default=ImportType.ENQUIRIES.value,
    show_default=True,
)
@click.option("--owner-id", type=int, help="User id recorded as the job owner.")
@click.option(
    "--inline/--no-inline",
    default=True,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit the job summary as JSON (inline runs only).")
@click.pass_context
def importer_run(ctx, file_path: Path, import_type: str, owner_id: Optional[int], inline: bool, summary_json: bool):
    """Import a LEX CSV extract."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    owner = None
    if owner_id is not None:
        owner = db.session.get(User, owner_id)
        if owner is None:
            raise click.ClickException(f"User {owner_id} not found.")

    csv_path = file_path.resolve()
    service = ImportJobService()
    try:
        job = service.create_job(
            csv_path.name,
            import_type,
            owner,
            ingest_params={"file_path": str(csv_path), "keep_file": True},
        )
    except ImportJobError as exc:
        raise click.ClickException(str(exc)) from exc
    job_id = job.id

    if not inline:
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            "importer.lex.run_import",
            kwargs={"job_id": job_id, "file_path": str(csv_path), "keep_file": True},
            queue=DEFAULT_QUEUE_NAME,
        )
        app.logger.info(
            "LEX import queued via CLI",
            extra={"importer_job_id": job_id, "importer_task_id": async_result.id},
        )
        click.echo(json.dumps({"job_id": job_id, "task_id": async_result.id, "status": "queued"}))
        return

    snapshot = service.run_job(job_id, csv_path)
    click.echo(_format_summary(snapshot))
    if summary_json:
        click.echo(json.dumps(snapshot.as_view(), indent=2, sort_keys=True))
    if snapshot.status.value == "failed":
        ctx.exit(1)


@importer_cli.command("export")
@click.option("--output", type=click.Path(path_type=Path, dir_okay=False), help="Write to a file instead of stdout.")
@click.option("--include-unreferenced", is_flag=True, help="Include enquiries without a LEX reference.")
def importer_export(output: Optional[Path], include_unreferenced: bool):
    """Export enquiry status updates as a LEX-compatible CSV."""
    body = export_enquiries(db.session, include_unreferenced=include_unreferenced)
    if output is None:
        click.echo(body, nl=False)
        return
    output.write_text(body, encoding="utf-8", newline="")
    click.echo(f"Wrote {max(0, body.count(chr(10)) - 1)} enquiry row(s) to {output}.")


@importer_cli.command("sweep-progress")
@click.option("--max-age-hours", type=float, help="Defaults to IMPORTER_PROGRESS_RETENTION_HOURS.")
@click.pass_context
def importer_sweep_progress(ctx, max_age_hours: Optional[float]):
    """Queue a sweep of quiet progress trackers held by the import worker.

    The web process sweeps its own trackers as it serves requests.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    hours = max_age_hours if max_age_hours is not None else app.config.get("IMPORTER_PROGRESS_RETENTION_HOURS", 24)
    celery_app = _resolve_celery(app)
    async_result = celery_app.send_task(
        SWEEP_TASK_NAME,
        kwargs={"max_age_hours": float(hours)},
        queue=DEFAULT_QUEUE_NAME,
    )
    click.echo(json.dumps({"task_id": async_result.id, "status": "queued", "max_age_hours": float(hours)}))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=float,
    help="Remove importer uploads older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: float):
    """
    Delete stale importer upload files from the configured storage directory.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    removed = cleanup_stale_uploads(app, max_age_hours=max_age_hours)
    click.echo(
        f"Removed {len(removed)} upload file(s) older than {max_age_hours:g} hours from {resolve_upload_directory(app)}."
    )
