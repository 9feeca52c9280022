"""
SQLAlchemy models for LEX import jobs and their audit trail.

Job rows are created at upload and advanced by the progress tracker; the
audit log records uploads, terminal transitions, cancellations and security
alerts.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED)


class ImportType(str, enum.Enum):
    ENQUIRIES = "enquiries"
    CLIENTS = "clients"
    MATTERS = "matters"
    FEES = "fees"


class ImportJob(BaseModel):
    """Metadata and counters describing a single LEX CSV import."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    import_type: Mapped[ImportType] = mapped_column(
        Enum(ImportType, name="import_type_enum"),
        nullable=False,
        default=ImportType.ENQUIRIES,
    )
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    diagnostics_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Most-recent bounded errors/warnings plus the final report summary.",
    )
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for dispatch/retry (file_path, keep_file).",
    )

    owner = relationship("User", foreign_keys=[owner_id])
    audit_entries = relationship(
        "ImportAuditEntry",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_import_jobs_owner_status", "owner_id", "status"),)

    def __repr__(self) -> str:
        return f"<ImportJob {self.id} {self.status.value if self.status else 'n/a'}>"

    @property
    def succeeded_rows(self) -> int:
        return max(0, (self.processed_rows or 0) - (self.error_rows or 0))


class ImportAuditEntry(BaseModel):
    """Append-only audit record for importer actions."""

    __tablename__ = "import_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    job = relationship("ImportJob", back_populates="audit_entries")

    def __repr__(self) -> str:
        return f"<ImportAuditEntry {self.action} job={self.job_id}>"
