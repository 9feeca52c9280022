"""LEX practice-management CSV contract.

Single source of truth for the column layout of LEX matter extracts: which
headers are required, the aliases LEX versions have used for them, the closed
value sets, and the column order of reconciled exports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Tuple

from chambers_app.models.canonical import ClientType, EnquiryStatus

Normalizer = Callable[[object | None], object | None]


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        return value.strip()
    return value


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a LEX column."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    max_length: int | None = None
    normalizer: Normalizer | None = _strip_string

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases for validation."""

        return (self.name, *self.aliases)


CLIENT = "Client"
MATTER_DESCRIPTION = "Matter Description"
FEE_EARNER = "Fee Earner"
DATE_RECEIVED = "Date Received"
VALUE = "Value"
STATUS = "Status"
REFERENCE = "Reference"
CLIENT_TYPE = "Client Type"

LEX_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name=CLIENT,
        description="Instructing client name as recorded in LEX.",
        required=True,
        aliases=("Client Name",),
        max_length=255,
    ),
    FieldSpec(
        name=MATTER_DESCRIPTION,
        description="Free-text description of the matter.",
        required=True,
        aliases=("Description", "Matter"),
        max_length=1000,
    ),
    FieldSpec(
        name=FEE_EARNER,
        description="Barrister or clerk assigned in LEX.",
        required=True,
        aliases=("Assigned To", "Barrister"),
        max_length=255,
    ),
    FieldSpec(
        name=DATE_RECEIVED,
        description="Date the enquiry was received (DD/MM/YYYY).",
        required=True,
        aliases=("Received", "Received Date"),
    ),
    FieldSpec(
        name=VALUE,
        description="Estimated matter value in GBP.",
        required=True,
        aliases=("Estimated Value", "Fee"),
    ),
    FieldSpec(
        name=STATUS,
        description="LEX workflow status.",
        required=True,
    ),
    FieldSpec(
        name=REFERENCE,
        description="LEX external reference (LEXYYYY-NNN), unique per matter.",
        required=True,
        aliases=("LEX Reference", "Ref"),
    ),
    FieldSpec(
        name=CLIENT_TYPE,
        description="Individual, Company or Solicitor. Defaults to Company.",
        required=False,
    ),
)

LEX_STATUSES: Tuple[str, ...] = tuple(status.value for status in EnquiryStatus)
LEX_CLIENT_TYPES: Tuple[str, ...] = tuple(client_type.value for client_type in ClientType)

EXPORT_COLUMNS: Tuple[str, ...] = ("Reference", "Status", "Assigned To", "Response Date", "Notes")


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = header.strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def get_lex_field_specs() -> Tuple[FieldSpec, ...]:
    return LEX_FIELDS


def get_lex_required_headers() -> Tuple[str, ...]:
    return tuple(spec.name for spec in LEX_FIELDS if spec.required)


def get_lex_alias_map() -> Mapping[str, str]:
    """Map every normalized header or alias to its canonical column name."""

    alias_map: dict[str, str] = {}
    for spec in LEX_FIELDS:
        for header in spec.headers():
            alias_map[normalize_header(header)] = spec.name
    return alias_map
