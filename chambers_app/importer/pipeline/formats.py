"""Field-level format validators for LEX values.

Each parser returns ``Parsed(value)`` on success or ``Invalid(code, message)``
when the input does not match; expected-invalid input never raises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Generic, TypeVar, Union

T = TypeVar("T")

LEX_REFERENCE_PATTERN = re.compile(r"^LEX[0-9]{4}-[0-9]{3,6}$")
DATE_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
CURRENCY_PATTERN = re.compile(r"^£?([0-9]{1,3}(,[0-9]{3})*|[0-9]+)(\.[0-9]{2})?$")
UK_PHONE_PATTERN = re.compile(r"^(\+44|0)[1-9][0-9]{8,9}$")
COMPANY_NUMBER_PATTERN = re.compile(r"^([0-9]{8}|[A-Z]{2}[0-9]{6})$")
SAFE_FILENAME_PATTERN = re.compile(r"[a-zA-Z0-9._-]+\.csv", re.IGNORECASE)

MAX_CURRENCY_VALUE = Decimal("999999999.99")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    code: str
    message: str

    @property
    def ok(self) -> bool:
        return False


FormatResult = Union[Parsed[T], Invalid]


def _clean(value: object | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _calendar_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(value: object | None) -> FormatResult[date]:
    """Parse DD/MM/YYYY, falling back to MM/DD/YYYY when the UK reading is impossible."""

    text = _clean(value)
    match = DATE_PATTERN.match(text)
    if not match:
        return Invalid("date_format", "Invalid date format (expected DD/MM/YYYY)")

    first, second, year = (int(part) for part in match.groups())
    parsed = _calendar_date(year, second, first)
    if parsed is None:
        parsed = _calendar_date(year, first, second)
    if parsed is None:
        return Invalid("date_calendar", f"Invalid date format: {text} is not a calendar date")
    return Parsed(parsed)


def format_uk_date(value: date | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y")


def parse_currency(value: object | None) -> FormatResult[Decimal]:
    """Parse an optional-£, comma-grouped, two-decimal, non-negative amount."""

    text = _clean(value)
    if not CURRENCY_PATTERN.match(text):
        return Invalid("currency_format", "Invalid currency format (e.g. £1,234.56)")
    try:
        amount = Decimal(text.replace("£", "").replace(",", ""))
    except InvalidOperation:
        return Invalid("currency_format", "Invalid currency format (e.g. £1,234.56)")
    if amount > MAX_CURRENCY_VALUE:
        return Invalid("currency_range", "Value must be at most £999,999,999.99")
    return Parsed(amount.quantize(Decimal("0.01")))


def parse_uk_phone(value: object | None) -> FormatResult[str]:
    text = _PHONE_SEPARATORS.sub("", _clean(value))
    if not UK_PHONE_PATTERN.match(text):
        return Invalid("phone_format", "Invalid UK phone number format")
    return Parsed(text)


def parse_company_number(value: object | None) -> FormatResult[str]:
    text = _clean(value).upper()
    if not COMPANY_NUMBER_PATTERN.match(text):
        return Invalid("company_number_format", "Invalid company number format")
    return Parsed(text)


def parse_lex_reference(value: object | None) -> FormatResult[str]:
    text = _clean(value)
    if not LEX_REFERENCE_PATTERN.match(text):
        return Invalid("reference_format", "Invalid LEX reference format (expected LEXYYYY-NNN)")
    return Parsed(text)


def is_safe_filename(filename: str | None) -> bool:
    return bool(filename) and bool(SAFE_FILENAME_PATTERN.fullmatch(filename))
