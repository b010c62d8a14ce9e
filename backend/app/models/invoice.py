"""Invoices issued to clients and their line items."""

from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    and_,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class InvoiceStatus(str, enum.Enum):
    """Lifecycle of an invoice."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    OVERDUE = "OVERDUE"


OPEN_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


INVOICE_STATUS_ENUM = SAEnum(
    InvoiceStatus,
    name="invoice_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class Invoice(Base):
    """An invoice billed by a trainer to one client.

    ``amount`` is what the client owes: ``subtotal`` (the sum of the line
    items) minus ``credit_applied`` from a retained prepaid balance.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),
        CheckConstraint("credit_applied >= 0", name="ck_invoices_credit_non_negative"),
        CheckConstraint("credit_applied <= subtotal", name="ck_invoices_credit_within_subtotal"),
    )

    id = Column(GUID(), primary_key=True, default=new_id)
    workspace_id = Column(String(64), nullable=False)
    client_id = Column(GUID(), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    trainer_id = Column(GUID(), ForeignKey("trainers.id", ondelete="CASCADE"), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    credit_applied = Column(Numeric(12, 2), nullable=False, default=0)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(INVOICE_STATUS_ENUM, nullable=False, default=InvoiceStatus.DRAFT)
    due_date = Column(DateTime(timezone=True), nullable=False)
    is_prepaid_top_up = Column(Boolean, nullable=False, default=False)
    billing_period = Column(String(7), nullable=True)
    notes = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    client = relationship("Client", back_populates="invoices")
    trainer = relationship("Trainer")
    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position",
    )
    delivery_logs = relationship(
        "InvoiceDeliveryLog",
        back_populates="invoice",
        cascade="all, delete-orphan",
    )
    reminder_logs = relationship(
        "InvoiceReminderLog",
        back_populates="invoice",
        cascade="all, delete-orphan",
    )


class InvoiceLineItem(Base):
    """A single billed line; owned by exactly one invoice."""

    __tablename__ = "invoice_line_items"

    id = Column(GUID(), primary_key=True, default=new_id)
    invoice_id = Column(GUID(), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    appointment_id = Column(
        GUID(),
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    )

    invoice = relationship("Invoice", back_populates="line_items")


_OPEN_TOP_UP = and_(
    Invoice.is_prepaid_top_up.is_(True),
    Invoice.status.in_([status.value for status in OPEN_INVOICE_STATUSES]),
)

# At most one open top-up invoice per client.
Index(
    "invoices_open_top_up_key",
    Invoice.client_id,
    unique=True,
    sqlite_where=_OPEN_TOP_UP,
    postgresql_where=_OPEN_TOP_UP,
)
Index("invoices_client_trainer_idx", Invoice.client_id, Invoice.trainer_id)
Index("invoices_workspace_status_idx", Invoice.workspace_id, Invoice.status)
Index("invoice_line_items_invoice_idx", InvoiceLineItem.invoice_id)
Index("invoice_line_items_appointment_idx", InvoiceLineItem.appointment_id)
