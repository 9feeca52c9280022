# chambers_app/models/canonical.py

"""Canonical chambers entities populated by the LEX importer."""

import enum
from decimal import Decimal

from sqlalchemy import Enum, Index, UniqueConstraint

from .base import BaseModel, db


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ClientType(str, enum.Enum):
    INDIVIDUAL = "Individual"
    COMPANY = "Company"
    SOLICITOR = "Solicitor"


class Seniority(str, enum.Enum):
    JUNIOR = "Junior"
    MIDDLE = "Middle"
    SENIOR = "Senior"
    KC = "KC"


class EnquiryStatus(str, enum.Enum):
    NEW = "New"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    CONVERTED = "Converted"
    LOST = "Lost"


class EnquirySource(str, enum.Enum):
    LEX_IMPORT = "LEX_Import"
    DIRECT = "Direct"


class Client(BaseModel):
    """Deduplicated client record; one row per normalized name and type."""

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    normalized_name = db.Column(db.String(255), nullable=False, index=True)
    client_type = db.Column(
        Enum(ClientType, name="client_type_enum", values_callable=_enum_values),
        default=ClientType.COMPANY,
        nullable=False,
    )
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    company_number = db.Column(db.String(8), nullable=True)
    matter_count = db.Column(db.Integer, default=0, nullable=False)
    total_value = db.Column(db.Numeric(14, 2), default=Decimal("0.00"), nullable=False)

    enquiries = db.relationship("Enquiry", back_populates="client")

    __table_args__ = (UniqueConstraint("normalized_name", "client_type", name="uq_client_name_type"),)

    def __repr__(self):
        return f"<Client {self.name} ({self.client_type.value if self.client_type else 'n/a'})>"


class FeeEarner(BaseModel):
    """Barrister or clerk to whom LEX matters are assigned."""

    __tablename__ = "fee_earners"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    normalized_name = db.Column(db.String(255), nullable=False, unique=True, index=True)
    seniority = db.Column(
        Enum(Seniority, name="seniority_enum", values_callable=_enum_values),
        default=Seniority.JUNIOR,
        nullable=False,
    )

    enquiries = db.relationship("Enquiry", back_populates="fee_earner")

    def __repr__(self):
        return f"<FeeEarner {self.name}>"


class Enquiry(BaseModel):
    """Matter or enquiry keyed by its LEX reference."""

    __tablename__ = "enquiries"

    id = db.Column(db.Integer, primary_key=True)
    lex_reference = db.Column(db.String(20), unique=True, nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    fee_earner_id = db.Column(db.Integer, db.ForeignKey("fee_earners.id"), nullable=True, index=True)
    source = db.Column(
        Enum(EnquirySource, name="enquiry_source_enum", values_callable=_enum_values),
        default=EnquirySource.DIRECT,
        nullable=False,
    )
    matter_type = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)
    estimated_value = db.Column(db.Numeric(14, 2), nullable=True)
    urgency = db.Column(db.String(20), default="Flexible", nullable=False)
    status = db.Column(
        Enum(EnquiryStatus, name="enquiry_status_enum", values_callable=_enum_values),
        default=EnquiryStatus.NEW,
        nullable=False,
        index=True,
    )
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    client = db.relationship("Client", back_populates="enquiries")
    fee_earner = db.relationship("FeeEarner", back_populates="enquiries")

    __table_args__ = (Index("idx_enquiry_updated", "updated_at"),)

    def __repr__(self):
        return f"<Enquiry {self.lex_reference or self.id}>"
