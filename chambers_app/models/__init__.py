# chambers_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .canonical import Client, ClientType, Enquiry, EnquirySource, EnquiryStatus, FeeEarner, Seniority
from .importer import ImportAuditEntry, ImportJob, ImportJobStatus, ImportType
from .user import User, UserRole

__all__ = [
    "db",
    "BaseModel",
    "User",
    "UserRole",
    # Canonical entities
    "Client",
    "ClientType",
    "FeeEarner",
    "Seniority",
    "Enquiry",
    "EnquirySource",
    "EnquiryStatus",
    # Importer
    "ImportJob",
    "ImportJobStatus",
    "ImportType",
    "ImportAuditEntry",
]
