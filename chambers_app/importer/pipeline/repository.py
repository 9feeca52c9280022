"""Narrow persistence interface used by the reconciler and batch writer.

Creation paths use store-level ``INSERT ... ON CONFLICT`` so concurrent batches
that create the same entity converge on one row without application locks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from chambers_app.models.base import utc_now
from chambers_app.models.canonical import (
    Client,
    ClientType,
    Enquiry,
    EnquirySource,
    EnquiryStatus,
    FeeEarner,
    Seniority,
)

_SILK_PATTERN = re.compile(r"\b(QC|KC)\b")


@dataclass(frozen=True)
class EntityRef:
    id: int
    name: str


@dataclass(frozen=True)
class EnquiryWrite:
    reference: str
    client_id: int
    fee_earner_id: int
    description: str
    value: Decimal
    status: EnquiryStatus
    received_on: date


def infer_seniority(name: str) -> Seniority:
    return Seniority.KC if _SILK_PATTERN.search(name or "") else Seniority.JUNIOR


def _received_at(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class LexRepository:
    """SQLAlchemy-backed reads and upserts for canonical chambers entities."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _insert(self, table):
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(table)
        if dialect == "postgresql":
            return postgresql.insert(table)
        raise ValueError(f"Conflict-safe upserts are not supported for the '{dialect}' dialect.")

    # Clients -----------------------------------------------------------------

    def find_client_exact(self, normalized_name: str, client_type: ClientType) -> EntityRef | None:
        row = self.session.execute(
            select(Client.id, Client.name).where(
                Client.normalized_name == normalized_name,
                Client.client_type == client_type,
            )
        ).first()
        return EntityRef(id=row.id, name=row.name) if row else None

    def client_candidates(self, client_type: ClientType) -> list[EntityRef]:
        rows = self.session.execute(
            select(Client.id, Client.name).where(Client.client_type == client_type).order_by(Client.id)
        ).all()
        return [EntityRef(id=row.id, name=row.name) for row in rows]

    def upsert_client(self, name: str, normalized_name: str, client_type: ClientType) -> EntityRef:
        statement = (
            self._insert(Client.__table__)
            .values(
                name=name,
                normalized_name=normalized_name,
                client_type=client_type,
                matter_count=0,
                total_value=Decimal("0.00"),
            )
            .on_conflict_do_nothing(index_elements=["normalized_name", "client_type"])
        )
        self.session.execute(statement)
        existing = self.find_client_exact(normalized_name, client_type)
        if existing is None:  # pragma: no cover - the insert above guarantees a row
            raise LookupError(f"Client '{name}' missing after upsert.")
        return existing

    # Fee earners -------------------------------------------------------------

    def find_fee_earner_exact(self, normalized_name: str) -> EntityRef | None:
        row = self.session.execute(
            select(FeeEarner.id, FeeEarner.name).where(FeeEarner.normalized_name == normalized_name)
        ).first()
        return EntityRef(id=row.id, name=row.name) if row else None

    def fee_earner_candidates(self) -> list[EntityRef]:
        rows = self.session.execute(select(FeeEarner.id, FeeEarner.name).order_by(FeeEarner.id)).all()
        return [EntityRef(id=row.id, name=row.name) for row in rows]

    def upsert_fee_earner(self, name: str, normalized_name: str) -> EntityRef:
        statement = (
            self._insert(FeeEarner.__table__)
            .values(name=name, normalized_name=normalized_name, seniority=infer_seniority(name))
            .on_conflict_do_nothing(index_elements=["normalized_name"])
        )
        self.session.execute(statement)
        existing = self.find_fee_earner_exact(normalized_name)
        if existing is None:  # pragma: no cover
            raise LookupError(f"Fee earner '{name}' missing after upsert.")
        return existing

    # Enquiries ---------------------------------------------------------------

    def upsert_enquiry(self, payload: EnquiryWrite) -> tuple[int, bool]:
        """Insert or update the enquiry keyed by LEX reference; returns ``(id, created)``."""

        existing_id = self.session.execute(
            select(Enquiry.id).where(Enquiry.lex_reference == payload.reference)
        ).scalar_one_or_none()

        now = utc_now()
        values = {
            "client_id": payload.client_id,
            "fee_earner_id": payload.fee_earner_id,
            "description": payload.description,
            "matter_type": payload.description[:255],
            "estimated_value": payload.value,
            "status": payload.status,
            "received_at": _received_at(payload.received_on),
        }
        statement = self._insert(Enquiry.__table__).values(
            lex_reference=payload.reference,
            source=EnquirySource.LEX_IMPORT,
            urgency="Flexible",
            created_at=now,
            updated_at=now,
            **values,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["lex_reference"],
            set_={**values, "updated_at": now},
        )
        self.session.execute(statement)

        enquiry_id = self.session.execute(
            select(Enquiry.id).where(Enquiry.lex_reference == payload.reference)
        ).scalar_one()
        return enquiry_id, existing_id is None

    # Aggregates --------------------------------------------------------------

    def refresh_client_totals(self, client_ids: Iterable[int] | None = None) -> int:
        """Recompute matter_count/total_value from enquiries; returns rows touched."""

        count_subquery = (
            select(func.count(Enquiry.id)).where(Enquiry.client_id == Client.id).scalar_subquery()
        )
        total_subquery = (
            select(func.coalesce(func.sum(Enquiry.estimated_value), 0))
            .where(Enquiry.client_id == Client.id)
            .scalar_subquery()
        )
        statement = update(Client).values(matter_count=count_subquery, total_value=total_subquery)
        if client_ids is not None:
            ids: Sequence[int] = sorted(set(client_ids))
            if not ids:
                return 0
            statement = statement.where(Client.id.in_(ids))
        result = self.session.execute(statement.execution_options(synchronize_session=False))
        return result.rowcount or 0
