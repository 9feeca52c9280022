from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from chambers_app.importer.pipeline.export import count_exportable, export_enquiries, iter_export_rows
from chambers_app.models import Client, Enquiry, EnquiryStatus, FeeEarner, db


def _seed():
    now = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
    client = Client(name="Acme Holdings Ltd", normalized_name="acme holdings ltd")
    barrister = FeeEarner(name="John Smith QC", normalized_name="john smith qc")
    db.session.add_all([client, barrister])
    db.session.flush()
    db.session.add_all(
        [
            Enquiry(
                lex_reference="LEX2025-001",
                client_id=client.id,
                fee_earner_id=barrister.id,
                description="Commercial lease dispute, \"urgent\"",
                estimated_value=Decimal("25000.00"),
                status=EnquiryStatus.CONVERTED,
                responded_at=datetime(2025, 2, 14, 16, 30, tzinfo=timezone.utc),
                updated_at=now - timedelta(days=2),
            ),
            Enquiry(
                lex_reference="LEX2025-002",
                client_id=client.id,
                description="n" * 600,
                status=EnquiryStatus.NEW,
                updated_at=now,
            ),
            Enquiry(
                lex_reference=None,
                client_id=client.id,
                description="Direct enquiry",
                status=EnquiryStatus.ASSIGNED,
                updated_at=now - timedelta(days=1),
            ),
        ]
    )
    db.session.commit()


def test_export_rows_are_ordered_by_most_recent_update():
    _seed()
    rows = list(iter_export_rows(db.session))

    assert rows[0] == ["Reference", "Status", "Assigned To", "Response Date", "Notes"]
    assert [row[0] for row in rows[1:]] == ["LEX2025-002", "LEX2025-001"]

    newest, oldest = rows[1], rows[2]
    assert newest[2] == "Unassigned"
    assert newest[3] == ""
    assert len(newest[4]) == 500
    assert oldest[1] == "Converted"
    assert oldest[2] == "John Smith QC"
    assert oldest[3] == "14/02/2025"


def test_export_csv_quotes_every_field_and_uses_crlf():
    _seed()
    body = export_enquiries(db.session)

    lines = body.split("\r\n")
    assert lines[0] == '"Reference","Status","Assigned To","Response Date","Notes"'
    assert lines[-1] == ""
    parsed = list(csv.reader(io.StringIO(body)))
    assert parsed[2][4] == 'Commercial lease dispute, "urgent"'


def test_unreferenced_enquiries_are_opt_in():
    _seed()
    assert count_exportable(db.session) == 2
    assert count_exportable(db.session, include_unreferenced=True) == 3
    rows = list(iter_export_rows(db.session, include_unreferenced=True))
    assert [row[0] for row in rows[1:]] == ["LEX2025-002", "", "LEX2025-001"]


def test_export_with_no_enquiries_has_only_the_header():
    assert export_enquiries(db.session) == '"Reference","Status","Assigned To","Response Date","Notes"\r\n'
