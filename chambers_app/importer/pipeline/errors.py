"""Exceptions raised by the import job lifecycle."""

from __future__ import annotations

from typing import Sequence


class ImportJobError(Exception):
    """Base exception for import job failures surfaced to callers."""


class ImportJobNotFound(ImportJobError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Import job {job_id} not found.")
        self.job_id = job_id


class ImportAccessDenied(ImportJobError):
    """Raised when a caller is neither the job owner nor elevated."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Access to import job {job_id} denied.")
        self.job_id = job_id


class UnsafeFilenameError(ImportJobError):
    """Raised before parsing when an upload's filename fails screening."""

    def __init__(self, filename: str, concerns: Sequence = ()) -> None:
        super().__init__("Unsafe filename rejected; use letters, digits, '.', '_' or '-' and a .csv extension.")
        self.filename = filename
        self.concerns = tuple(concerns)


class InvalidTransitionError(ImportJobError):
    """Raised when a job would move backward or mutate after reaching a terminal state."""
