"""
Importer data models.
"""

from .schema import ImportAuditEntry, ImportJob, ImportJobStatus, ImportType

__all__ = [
    "ImportJob",
    "ImportJobStatus",
    "ImportType",
    "ImportAuditEntry",
]
