from __future__ import annotations

import json
import os
import time
from unittest.mock import Mock, patch

from chambers_app.importer.celery_app import SWEEP_TASK_NAME
from chambers_app.importer.utils import resolve_upload_directory
from chambers_app.models import Enquiry, ImportJob, ImportJobStatus, db


def test_run_inline_prints_summary(importer_app, runner, clerk, write_csv, sample_rows):
    path = write_csv(sample_rows)

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--owner-id", str(clerk.id)])

    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "3 processed, 2 succeeded, 1 errors" in result.output
    assert "row 4:" in result.output
    job = db.session.query(ImportJob).one()
    assert job.status is ImportJobStatus.COMPLETED
    assert job.owner_id == clerk.id
    assert path.exists()
    assert db.session.query(Enquiry).count() == 2


def test_run_inline_summary_json(importer_app, runner, write_csv, sample_rows):
    result = runner.invoke(args=["importer", "run", "--file", str(write_csv(sample_rows)), "--summary-json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["status"] == "completed"
    assert payload["progress"]["errors"] == 1


def test_run_failure_exits_non_zero(importer_app, runner, write_csv):
    path = write_csv(["Acme,Lease"], header="Client,Matter Description")
    result = runner.invoke(args=["importer", "run", "--file", str(path)])
    assert result.exit_code == 1
    assert "failed" in result.output
    assert "Missing required columns" in result.output


def test_run_rejects_unknown_owner(importer_app, runner, write_csv, sample_rows):
    result = runner.invoke(args=["importer", "run", "--file", str(write_csv(sample_rows)), "--owner-id", "999"])
    assert result.exit_code != 0
    assert "User 999 not found." in result.output


def test_run_queues_when_not_inline(importer_app, runner, write_csv, sample_rows):
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result
    path = write_csv(sample_rows)

    with patch("chambers_app.importer.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["importer", "run", "--file", str(path), "--no-inline"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload["status"] == "queued"
    assert payload["task_id"] == "celery-task-123"
    kwargs = celery_app.send_task.call_args.kwargs
    assert kwargs["kwargs"] == {"job_id": payload["job_id"], "file_path": str(path.resolve()), "keep_file": True}
    assert kwargs["queue"] == "imports"
    assert db.session.get(ImportJob, payload["job_id"]).status is ImportJobStatus.PENDING


def test_summary_json_requires_inline(importer_app, runner, write_csv, sample_rows):
    with patch("chambers_app.importer.cli._resolve_celery") as resolve:
        result = runner.invoke(
            args=["importer", "run", "--file", str(write_csv(sample_rows)), "--no-inline", "--summary-json"]
        )
    assert result.exit_code != 0
    assert "--summary-json is only available" in result.output
    resolve.assert_not_called()


def test_export_to_file(importer_app, runner, write_csv, sample_rows, tmp_path):
    runner.invoke(args=["importer", "run", "--file", str(write_csv(sample_rows))])
    output = tmp_path / "export.csv"

    result = runner.invoke(args=["importer", "export", "--output", str(output)])

    assert result.exit_code == 0, result.output
    assert "Wrote 2 enquiry row(s)" in result.output
    content = output.read_text(encoding="utf-8")
    assert content.startswith('"Reference","Status","Assigned To","Response Date","Notes"\r\n')


def test_sweep_progress_queues_the_worker_sweep(importer_app, runner):
    async_result = Mock()
    async_result.id = "celery-task-456"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("chambers_app.importer.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["importer", "sweep-progress", "--max-age-hours", "6"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output.strip()) == {"task_id": "celery-task-456", "status": "queued", "max_age_hours": 6.0}
    celery_app.send_task.assert_called_once_with(SWEEP_TASK_NAME, kwargs={"max_age_hours": 6.0}, queue="imports")


def test_cleanup_uploads_removes_old_files(importer_app, runner):
    upload_dir = resolve_upload_directory(importer_app)
    stale = upload_dir / "stale.csv"
    fresh = upload_dir / "fresh.csv"
    stale.write_text("old")
    fresh.write_text("new")
    old = time.time() - 100 * 3600
    os.utime(stale, (old, old))

    result = runner.invoke(args=["importer", "cleanup-uploads", "--max-age-hours", "72"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 upload file(s)" in result.output
    assert not stale.exists()
    assert fresh.exists()


def test_commands_unavailable_when_disabled(runner):
    result = runner.invoke(args=["importer", "export"])
    assert result.exit_code != 0
    assert "IMPORTER_ENABLED=false" in result.output
