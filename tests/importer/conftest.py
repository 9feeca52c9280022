from __future__ import annotations

from pathlib import Path

import pytest

from chambers_app.importer import init_importer
from chambers_app.importer.pipeline.job_service import ImportJobService
from chambers_app.models import ImportType, UserRole, db

LEX_HEADER = "Client,Matter Description,Fee Earner,Date Received,Value,Status,Reference,Client Type"


@pytest.fixture
def importer_app(app):
    app.config.update(
        {
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_BATCH_SIZE": 2,
            "IMPORTER_MAX_CONCURRENT_BATCHES": 2,
            "IMPORTER_RETRY_BASE_DELAY": 0.0,
            "IMPORTER_PROGRESS_PERSIST_SECONDS": 0.0,
        }
    )
    init_importer(app)
    yield app


@pytest.fixture
def write_csv(tmp_path):
    """Write a LEX extract under ``tmp_path``; rows are raw CSV lines without the header."""

    def _write(rows, *, name: str = "lex_export.csv", header: str = LEX_HEADER) -> Path:
        path = tmp_path / name
        path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def clerk(user_factory):
    return user_factory(role=UserRole.CLERK)


@pytest.fixture
def job_factory(importer_app, clerk):
    def _factory(*, owner=None, filename: str = "lex_export.csv", import_type=ImportType.ENQUIRIES):
        service = ImportJobService()
        job = service.create_job(filename, import_type, owner or clerk)
        job_id = job.id
        db.session.commit()
        return job_id

    return _factory


@pytest.fixture
def sample_rows():
    """Three LEX rows; the third carries an impossible date."""

    return [
        "Acme Holdings Ltd,Commercial lease dispute,John Smith QC,15/01/2025,\"£25,000.00\",New,LEX2025-001,Company",
        "Jane Doe,Employment tribunal claim,Sarah Jones,3/2/2025,£4500.00,Assigned,LEX2025-002,Individual",
        "Smith & Partners,Contract review,John Smith QC,31/02/2025,£1000.00,New,LEX2025-003,Solicitor",
    ]
