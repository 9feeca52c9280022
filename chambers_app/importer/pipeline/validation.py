"""Row-level validation of LEX records.

Schema checks run first (required fields, bounded lengths, allowed values and
field formats), followed by business rules that only ever add warnings. A row
is valid when it has no errors, regardless of warnings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Union

from chambers_app.importer.contracts import LEX_CLIENT_TYPES, LEX_STATUSES
from chambers_app.importer.contracts import lex as columns
from chambers_app.models.canonical import ClientType, EnquiryStatus

from .diagnostics import RowDiagnostic
from .formats import Invalid, parse_currency, parse_date, parse_lex_reference

HIGH_VALUE_THRESHOLD = Decimal("10000000")

CLIENT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-'&.,()]+$")
FEE_EARNER_PATTERN = re.compile(r"^[a-zA-Z\s\-'.()]+$")

_TITLE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bQ\.?C\.?(?!\w)", re.IGNORECASE), "QC"),
    (re.compile(r"\bK\.?C\.?(?!\w)", re.IGNORECASE), "KC"),
    (re.compile(r"\bMr\.?\s+", re.IGNORECASE), ""),
    (re.compile(r"\bMrs\.?\s+", re.IGNORECASE), ""),
    (re.compile(r"\bMs\.?\s+", re.IGNORECASE), ""),
    (re.compile(r"\bDr\.?\s+", re.IGNORECASE), "Dr "),
)
_WHITESPACE = re.compile(r"\s+")


def normalize_fee_earner_name(name: str | None) -> str:
    """Collapse post-nominals and strip courtesy titles ("Mr J. Smith Q.C." -> "J. Smith QC")."""

    if not name:
        return ""
    result = name.strip()
    for pattern, replacement in _TITLE_RULES:
        result = pattern.sub(replacement, result)
    return _WHITESPACE.sub(" ", result).strip()


@dataclass(frozen=True)
class ParsedLexRow:
    """Typed values extracted from a valid LEX row."""

    client_name: str
    client_type: ClientType
    description: str
    fee_earner: str
    date_received: date
    value: Decimal
    status: EnquiryStatus
    reference: str


@dataclass(frozen=True)
class ValidRow:
    row_number: int
    parsed: ParsedLexRow
    warnings: tuple[RowDiagnostic, ...] = ()

    valid = True


@dataclass(frozen=True)
class InvalidRow:
    row_number: int
    errors: tuple[RowDiagnostic, ...]
    warnings: tuple[RowDiagnostic, ...] = ()

    valid = False


RowValidation = Union[ValidRow, InvalidRow]


@dataclass(frozen=True)
class ValidationSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    errors: int = 0
    warnings: int = 0


@dataclass
class BatchValidation:
    valid: list[ValidRow] = field(default_factory=list)
    invalid: list[InvalidRow] = field(default_factory=list)
    summary: ValidationSummary = field(default_factory=ValidationSummary)


def _text(record: Mapping[str, object | None], name: str) -> str:
    value = record.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _check_text(
    record: Mapping[str, object | None],
    name: str,
    row_number: int,
    errors: list[RowDiagnostic],
    *,
    max_length: int,
    pattern: re.Pattern[str] | None = None,
) -> str | None:
    value = _text(record, name)
    if not value:
        errors.append(RowDiagnostic.error(row_number, name, record.get(name), f"{name} is required"))
        return None
    if len(value) > max_length:
        errors.append(
            RowDiagnostic.error(row_number, name, value, f"{name} must be at most {max_length} characters")
        )
        return None
    if pattern is not None and not pattern.match(value):
        errors.append(RowDiagnostic.error(row_number, name, value, f"{name} contains invalid characters"))
        return None
    return value


def validate_row(
    record: Mapping[str, object | None],
    row_number: int,
    *,
    today: date | None = None,
) -> RowValidation:
    """Validate one LEX record; ``row_number`` is the 1-based spreadsheet row."""

    today = today or date.today()
    errors: list[RowDiagnostic] = []
    warnings: list[RowDiagnostic] = []

    client_name = _check_text(
        record, columns.CLIENT, row_number, errors, max_length=255, pattern=CLIENT_NAME_PATTERN
    )
    description = _check_text(record, columns.MATTER_DESCRIPTION, row_number, errors, max_length=1000)
    fee_earner_raw = _check_text(
        record, columns.FEE_EARNER, row_number, errors, max_length=255, pattern=FEE_EARNER_PATTERN
    )

    date_result = parse_date(record.get(columns.DATE_RECEIVED))
    if isinstance(date_result, Invalid):
        errors.append(
            RowDiagnostic.error(row_number, columns.DATE_RECEIVED, record.get(columns.DATE_RECEIVED), date_result.message)
        )

    value_result = parse_currency(record.get(columns.VALUE))
    if isinstance(value_result, Invalid):
        errors.append(RowDiagnostic.error(row_number, columns.VALUE, record.get(columns.VALUE), value_result.message))

    status_text = _text(record, columns.STATUS)
    if status_text not in LEX_STATUSES:
        errors.append(
            RowDiagnostic.error(
                row_number,
                columns.STATUS,
                status_text,
                f"Status must be one of: {', '.join(LEX_STATUSES)}",
            )
        )

    reference_result = parse_lex_reference(record.get(columns.REFERENCE))
    if isinstance(reference_result, Invalid):
        errors.append(
            RowDiagnostic.error(row_number, columns.REFERENCE, record.get(columns.REFERENCE), reference_result.message)
        )

    client_type_text = _text(record, columns.CLIENT_TYPE)
    client_type = ClientType.COMPANY
    if client_type_text:
        if client_type_text in LEX_CLIENT_TYPES:
            client_type = ClientType(client_type_text)
        else:
            errors.append(
                RowDiagnostic.error(
                    row_number,
                    columns.CLIENT_TYPE,
                    client_type_text,
                    f"Client Type must be one of: {', '.join(LEX_CLIENT_TYPES)}",
                )
            )

    # Business rules: warnings only.
    if not isinstance(date_result, Invalid) and date_result.value > today:
        warnings.append(
            RowDiagnostic.warning(
                row_number,
                columns.DATE_RECEIVED,
                record.get(columns.DATE_RECEIVED),
                "Date Received is in the future - please verify",
            )
        )
    if not isinstance(value_result, Invalid) and value_result.value > HIGH_VALUE_THRESHOLD:
        warnings.append(
            RowDiagnostic.warning(
                row_number,
                columns.VALUE,
                record.get(columns.VALUE),
                "Unusually high value detected - please verify",
            )
        )
    fee_earner = None
    if fee_earner_raw is not None:
        fee_earner = normalize_fee_earner_name(fee_earner_raw)
        if fee_earner != fee_earner_raw:
            warnings.append(
                RowDiagnostic.warning(
                    row_number,
                    columns.FEE_EARNER,
                    fee_earner_raw,
                    f"Name will be normalized to: {fee_earner}",
                )
            )

    if errors:
        return InvalidRow(row_number=row_number, errors=tuple(errors), warnings=tuple(warnings))

    return ValidRow(
        row_number=row_number,
        parsed=ParsedLexRow(
            client_name=client_name,
            client_type=client_type,
            description=description,
            fee_earner=fee_earner,
            date_received=date_result.value,
            value=value_result.value,
            status=EnquiryStatus(status_text),
            reference=reference_result.value,
        ),
        warnings=tuple(warnings),
    )


def validate_batch(
    rows: Iterable[tuple[int, Mapping[str, object | None]]],
    *,
    today: date | None = None,
) -> BatchValidation:
    """Validate ``(row_number, record)`` pairs and partition them into valid/invalid."""

    result = BatchValidation()
    error_count = 0
    warning_count = 0
    for row_number, record in rows:
        outcome = validate_row(record, row_number, today=today)
        warning_count += len(outcome.warnings)
        if isinstance(outcome, ValidRow):
            result.valid.append(outcome)
        else:
            error_count += len(outcome.errors)
            result.invalid.append(outcome)

    result.summary = ValidationSummary(
        total=len(result.valid) + len(result.invalid),
        valid=len(result.valid),
        invalid=len(result.invalid),
        errors=error_count,
        warnings=warning_count,
    )
    return result
