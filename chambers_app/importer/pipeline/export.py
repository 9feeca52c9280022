"""CSV export of enquiry status updates for re-import into LEX."""

from __future__ import annotations

import csv
import io
from typing import Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from chambers_app.importer.contracts import EXPORT_COLUMNS
from chambers_app.models.canonical import Enquiry

from .formats import format_uk_date

NOTES_LIMIT = 500
UNASSIGNED = "Unassigned"


def _enquiry_row(enquiry: Enquiry) -> list[str]:
    status = enquiry.status.value if enquiry.status is not None else ""
    assigned_to = enquiry.fee_earner.name if enquiry.fee_earner is not None else UNASSIGNED
    responded = format_uk_date(enquiry.responded_at.date()) if enquiry.responded_at else ""
    notes = (enquiry.description or "")[:NOTES_LIMIT]
    return [enquiry.lex_reference or "", status, assigned_to, responded, notes]


def iter_export_rows(session: Session, *, include_unreferenced: bool = False) -> Iterator[list[str]]:
    """Yield the header followed by one row per enquiry, most recently updated first."""

    statement = (
        select(Enquiry)
        .options(joinedload(Enquiry.fee_earner))
        .order_by(Enquiry.updated_at.desc(), Enquiry.id.desc())
    )
    if not include_unreferenced:
        statement = statement.where(Enquiry.lex_reference.is_not(None))

    yield list(EXPORT_COLUMNS)
    for enquiry in session.execute(statement).scalars():
        yield _enquiry_row(enquiry)


def export_enquiries(session: Session, *, include_unreferenced: bool = False) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
    writer.writerows(iter_export_rows(session, include_unreferenced=include_unreferenced))
    return buffer.getvalue()


def count_exportable(session: Session, *, include_unreferenced: bool = False) -> int:
    statement = select(func.count(Enquiry.id))
    if not include_unreferenced:
        statement = statement.where(Enquiry.lex_reference.is_not(None))
    return int(session.execute(statement).scalar_one())
