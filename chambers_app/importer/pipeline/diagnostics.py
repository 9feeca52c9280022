"""Row diagnostics and the bounded buffer that retains them."""

from __future__ import annotations

import enum
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

STORED_VALUE_LENGTH = 100

_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_CARD = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")
_PHONE = re.compile(r"\b\d{9,11}\b")


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def mask_personal_data(text: str) -> str:
    """Replace emails, card numbers and phone-like digit runs with placeholders."""

    masked = _EMAIL.sub("[email]", text)
    masked = _CARD.sub("[card]", masked)
    return _PHONE.sub("[phone]", masked)


def _stored_value(value: object | None) -> str | None:
    if value is None:
        return None
    text = mask_personal_data(str(value))
    if len(text) > STORED_VALUE_LENGTH:
        return text[:STORED_VALUE_LENGTH]
    return text


@dataclass(frozen=True)
class RowDiagnostic:
    """A single validation or processing finding attached to a job row."""

    row: int
    field: str | None
    value: str | None
    message: str
    severity: Severity = Severity.ERROR
    created_at: datetime = field(default_factory=_utc_now)

    @classmethod
    def error(cls, row: int, field_name: str | None, value: object | None, message: str) -> "RowDiagnostic":
        return cls(row=row, field=field_name, value=_stored_value(value), message=message)

    @classmethod
    def warning(cls, row: int, field_name: str | None, value: object | None, message: str) -> "RowDiagnostic":
        return cls(
            row=row,
            field=field_name,
            value=_stored_value(value),
            message=message,
            severity=Severity.WARNING,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "field": self.field,
            "value": self.value,
            "message": self.message,
            "severity": self.severity.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RowDiagnostic":
        created_raw = payload.get("created_at")
        created_at = datetime.fromisoformat(created_raw) if created_raw else _utc_now()
        return cls(
            row=int(payload.get("row") or 0),
            field=payload.get("field"),
            value=payload.get("value"),
            message=str(payload.get("message") or ""),
            severity=Severity(payload.get("severity") or Severity.ERROR.value),
            created_at=created_at,
        )


class DiagnosticBuffer:
    """Fixed-capacity ring buffer keeping the most recent diagnostics.

    ``total`` counts every diagnostic ever appended so callers can tell how
    many were dropped; ``has_more`` is true once the buffer has overflowed.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[RowDiagnostic] = deque(maxlen=capacity)
        self.total = 0

    def append(self, diagnostic: RowDiagnostic) -> None:
        self._items.append(diagnostic)
        self.total += 1

    def extend(self, diagnostics: Iterable[RowDiagnostic]) -> None:
        for diagnostic in diagnostics:
            self.append(diagnostic)

    def items(self) -> list[RowDiagnostic]:
        return list(self._items)

    @property
    def has_more(self) -> bool:
        return self.total > len(self._items)

    def __len__(self) -> int:
        return len(self._items)
