"""Error categorisation, redaction and security screening for LEX imports.

The reporter turns the diagnostics gathered during a job into a summary fit for
clerks (top errors with redacted samples, remediation hints) and separately
screens the upload for signs of abuse. High and critical concerns raise an
alert through a side channel that is distinct from the ordinary report.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from chambers_app.importer.metrics import record_security_alert

from .diagnostics import RowDiagnostic, Severity, mask_personal_data

logger = logging.getLogger(__name__)

TOP_ERROR_LIMIT = 10
SAMPLES_PER_GROUP = 3
VALUE_PREVIEW_LENGTH = 50
HIGH_ERROR_RATE_PERCENT = 50.0
LARGE_FILE_ROWS = 50_000
SPLIT_FILE_ROWS = 10_000

INJECTION_PATTERNS: tuple[str, ...] = ("<script", "javascript:", "data:", "vbscript:", "onload=")

_DIGITS = re.compile(r"\d+")
_QUOTED = re.compile(r"[\"'`]")
_SPACES = re.compile(r"\s+")


class ErrorCategory(str, enum.Enum):
    FORMAT = "format"
    VALIDATION = "validation"
    CONSTRAINT = "constraint"
    BUSINESS_LOGIC = "business_logic"
    SYSTEM = "system"


class ConcernSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def alerts(self) -> bool:
        return self in (ConcernSeverity.HIGH, ConcernSeverity.CRITICAL)


_CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.FORMAT, ("format", "parse")),
    (ErrorCategory.VALIDATION, ("constraint", "validation", "invalid", "must be one of")),
    (ErrorCategory.CONSTRAINT, ("required", "length", "at least", "at most")),
    (ErrorCategory.BUSINESS_LOGIC, ("business", "duplicate", "future", "high value", "normalized")),
)


def categorize(message: str) -> ErrorCategory:
    lowered = (message or "").lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.SYSTEM


def normalize_message(message: str) -> str:
    """Grouping key: digits become N, quotes vanish, whitespace collapses."""

    text = _DIGITS.sub("N", message or "")
    text = _QUOTED.sub("", text)
    return _SPACES.sub(" ", text).strip().lower()


def sanitize_value(value: object | None) -> str | None:
    """Mask emails, card numbers and phone-like digit runs, then cap the length."""

    if value is None:
        return None
    if not isinstance(value, str):
        return "[complex value]"
    masked = mask_personal_data(value)
    if len(masked) > VALUE_PREVIEW_LENGTH:
        return masked[: VALUE_PREVIEW_LENGTH - 3] + "..."
    return masked


@dataclass(frozen=True)
class SecurityConcern:
    concern: str
    severity: ConcernSeverity
    description: str
    recommendation: str

    def as_dict(self) -> dict[str, str]:
        return {
            "concern": self.concern,
            "severity": self.severity.value,
            "description": self.description,
            "recommendation": self.recommendation,
        }


@dataclass
class ErrorGroup:
    message: str
    category: ErrorCategory
    count: int = 0
    fields: list[str] = field(default_factory=list)
    samples: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "count": self.count,
            "fields": list(self.fields),
            "samples": list(self.samples),
        }


@dataclass
class ImportReport:
    filename: str
    total_rows: int
    error_rows: int
    error_count: int
    warning_count: int
    categories: dict[str, int]
    warning_categories: dict[str, int]
    top_errors: list[ErrorGroup]
    security_concerns: list[SecurityConcern]
    recommendations: list[str]
    job_id: int | None = None
    alert_raised: bool = False
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def error_rate(self) -> float:
        if self.total_rows <= 0:
            return 0.0
        return self.error_rows / self.total_rows * 100

    @property
    def alerting_concerns(self) -> list[SecurityConcern]:
        return [concern for concern in self.security_concerns if concern.severity.alerts]

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "filename": self.filename,
            "total_rows": self.total_rows,
            "error_rows": self.error_rows,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "error_rate": round(self.error_rate, 1),
            "categories": dict(self.categories),
            "warning_categories": dict(self.warning_categories),
            "top_errors": [group.as_dict() for group in self.top_errors],
            "security_concerns": [concern.as_dict() for concern in self.security_concerns],
            "recommendations": list(self.recommendations),
            "alert_raised": self.alert_raised,
            "generated_at": self.generated_at.isoformat(),
        }


def scan_filename(filename: str | None) -> list[SecurityConcern]:
    name = filename or ""
    if ".." in name or "/" in name or "\\" in name:
        return [
            SecurityConcern(
                concern="Suspicious filename",
                severity=ConcernSeverity.HIGH,
                description="Filename contains path traversal characters",
                recommendation="Rename file without path characters",
            )
        ]
    return []


def count_injection_attempts(values: Iterable[object | None]) -> int:
    hits = 0
    for value in values:
        if not isinstance(value, str):
            continue
        lowered = value.lower()
        hits += sum(1 for pattern in INJECTION_PATTERNS if pattern in lowered)
    return hits


def _category_counts(diagnostics: Iterable[RowDiagnostic]) -> dict[str, int]:
    tally = TallyCounter(categorize(diagnostic.message).value for diagnostic in diagnostics)
    return {category.value: tally.get(category.value, 0) for category in ErrorCategory}


def _top_errors(errors: Sequence[RowDiagnostic]) -> list[ErrorGroup]:
    groups: dict[str, ErrorGroup] = {}
    for diagnostic in errors:
        key = normalize_message(diagnostic.message)
        group = groups.get(key)
        if group is None:
            group = groups[key] = ErrorGroup(message=key, category=categorize(diagnostic.message))
        group.count += 1
        if diagnostic.field and diagnostic.field not in group.fields:
            group.fields.append(diagnostic.field)
        if len(group.samples) < SAMPLES_PER_GROUP:
            group.samples.append(
                {"row": diagnostic.row, "field": diagnostic.field, "value": sanitize_value(diagnostic.value)}
            )
    ranked = sorted(groups.values(), key=lambda group: group.count, reverse=True)
    return ranked[:TOP_ERROR_LIMIT]


def _recommendations(categories: dict[str, int], top_errors: Sequence[ErrorGroup], total_rows: int) -> list[str]:
    recommendations: list[str] = []
    if categories.get(ErrorCategory.FORMAT.value):
        recommendations.append("Check date formats - ensure DD/MM/YYYY format is used consistently")
        recommendations.append("Verify currency values use the £ symbol and comma separators (e.g. £1,234.56)")
    if categories.get(ErrorCategory.VALIDATION.value):
        recommendations.append("Review LEX references - they must follow the LEX2025-001 format")
        recommendations.append("Check Status and Client Type values against the allowed lists")
    if categories.get(ErrorCategory.CONSTRAINT.value):
        recommendations.append("Ensure all required fields are populated")
        recommendations.append("Check text lengths - some fields may exceed maximum limits")
    if categories.get(ErrorCategory.BUSINESS_LOGIC.value):
        recommendations.append("Resolve duplicate or conflicting references before re-importing")
    if categories.get(ErrorCategory.SYSTEM.value):
        recommendations.append("Retry the import; contact an administrator if system errors persist")

    for group in top_errors:
        fields = ", ".join(group.fields) or "unknown fields"
        if "date" in group.message:
            recommendations.append(f"Fix date issues in fields: {fields}")
        elif "currency" in group.message:
            recommendations.append(f"Correct currency format in fields: {fields}")
        elif "required" in group.message:
            recommendations.append(f"Complete missing data in fields: {fields}")

    if total_rows > SPLIT_FILE_ROWS:
        recommendations.append("Consider splitting large files into smaller batches for better performance")

    return list(dict.fromkeys(recommendations))


AlertHandler = Callable[["ImportReport", Sequence[SecurityConcern]], None]
AuditHandler = Callable[[str, dict[str, Any]], None]


def log_security_alert(report: "ImportReport", concerns: Sequence[SecurityConcern]) -> None:
    """Default alert channel: a CRITICAL log line plus a Prometheus counter per concern."""

    for concern in concerns:
        record_security_alert(concern.severity.value)
    logger.critical(
        "Security alert for import %s (%s): %s",
        report.job_id,
        report.filename,
        "; ".join(concern.concern for concern in concerns),
        extra={
            "importer_job_id": report.job_id,
            "importer_security_concerns": [concern.as_dict() for concern in concerns],
        },
    )


class ErrorReporter:
    """Builds :class:`ImportReport` objects and fires alert/audit side effects."""

    def __init__(
        self,
        *,
        alert_handler: AlertHandler | None = log_security_alert,
        audit_handler: AuditHandler | None = None,
    ) -> None:
        self.alert_handler = alert_handler
        self.audit_handler = audit_handler

    def security_concerns(
        self,
        *,
        filename: str,
        total_rows: int,
        error_rows: int,
        values: Iterable[object | None] = (),
    ) -> list[SecurityConcern]:
        concerns = scan_filename(filename)

        injections = count_injection_attempts(values)
        if injections:
            concerns.append(
                SecurityConcern(
                    concern="Potential injection attempts",
                    severity=ConcernSeverity.HIGH,
                    description=f"Found {injections} instances of potentially malicious content",
                    recommendation="Review file for malicious content and clean data",
                )
            )

        if total_rows > 0:
            error_rate = error_rows / total_rows * 100
            if error_rate > HIGH_ERROR_RATE_PERCENT:
                concerns.append(
                    SecurityConcern(
                        concern="High error rate",
                        severity=ConcernSeverity.MEDIUM,
                        description=f"{error_rate:.1f}% of rows contain errors",
                        recommendation="Verify file integrity and data source",
                    )
                )

        if total_rows > LARGE_FILE_ROWS:
            concerns.append(
                SecurityConcern(
                    concern="Large file upload",
                    severity=ConcernSeverity.LOW,
                    description="File contains unusually large number of rows",
                    recommendation="Monitor for performance impact and consider rate limiting",
                )
            )
        return concerns

    def generate(
        self,
        diagnostics: Sequence[RowDiagnostic],
        *,
        filename: str,
        total_rows: int,
        error_rows: int | None = None,
        job_id: int | None = None,
        cell_values: Iterable[object | None] = (),
    ) -> ImportReport:
        errors = [diagnostic for diagnostic in diagnostics if diagnostic.severity == Severity.ERROR]
        warnings = [diagnostic for diagnostic in diagnostics if diagnostic.severity == Severity.WARNING]
        if error_rows is None:
            error_rows = len({diagnostic.row for diagnostic in errors})

        categories = _category_counts(errors)
        top_errors = _top_errors(errors)
        scanned_values = [*cell_values, *(diagnostic.value for diagnostic in diagnostics)]
        concerns = self.security_concerns(
            filename=filename,
            total_rows=total_rows,
            error_rows=error_rows,
            values=scanned_values,
        )

        report = ImportReport(
            job_id=job_id,
            filename=filename,
            total_rows=total_rows,
            error_rows=error_rows,
            error_count=len(errors),
            warning_count=len(warnings),
            categories=categories,
            warning_categories=_category_counts(warnings),
            top_errors=top_errors,
            security_concerns=concerns,
            recommendations=_recommendations(categories, top_errors, total_rows),
        )
        self.raise_alerts(report)
        self.audit(
            "IMPORT_REPORT_GENERATED",
            {
                "job_id": job_id,
                "filename": filename,
                "total_rows": total_rows,
                "error_rows": error_rows,
                "categories": categories,
                "security_concerns": len(concerns),
            },
        )
        return report

    def raise_alerts(self, report: ImportReport) -> bool:
        concerns = report.alerting_concerns
        if not concerns:
            return False
        report.alert_raised = True
        if self.alert_handler is not None:
            self.alert_handler(report, concerns)
        self.audit(
            "SECURITY_ALERT",
            {
                "job_id": report.job_id,
                "filename": report.filename,
                "concerns": [concern.as_dict() for concern in concerns],
            },
        )
        return True

    def audit(self, action: str, details: dict[str, Any]) -> None:
        if self.audit_handler is not None:
            self.audit_handler(action, details)

    def screen_upload(self, filename: str) -> ImportReport:
        """Screen an upload's filename before parsing; alerts fire for high severity concerns."""

        concerns = scan_filename(filename)
        report = ImportReport(
            filename=filename,
            total_rows=0,
            error_rows=0,
            error_count=0,
            warning_count=0,
            categories={},
            warning_categories={},
            top_errors=[],
            security_concerns=concerns,
            recommendations=[concern.recommendation for concern in concerns]
            or ["Use letters, digits, '.', '_' or '-' and a .csv extension"],
        )
        self.raise_alerts(report)
        self.audit(
            "UPLOAD_REJECTED",
            {
                "filename": sanitize_value(filename),
                "security_concerns": [concern.as_dict() for concern in concerns],
            },
        )
        return report
