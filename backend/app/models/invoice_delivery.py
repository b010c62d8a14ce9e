"""Models and enumerations to track invoice emails and payment reminders."""

from __future__ import annotations

import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class DeliveryStatus(str, enum.Enum):
    """Delivery status reported by the outbound messaging provider."""

    SENT = "sent"
    FAILED = "failed"


DELIVERY_STATUS_ENUM = SAEnum(
    DeliveryStatus,
    name="invoice_delivery_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class InvoiceDeliveryLog(Base):
    """Outcome of each attempt to email an invoice."""

    __tablename__ = "invoice_delivery_logs"

    id = Column(GUID(), primary_key=True, default=new_id)
    invoice_id = Column(GUID(), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    delivery_status = Column(DELIVERY_STATUS_ENUM, nullable=False)
    destination = Column(String(255), nullable=True)
    channel = Column(String(50), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    response_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    subject = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    invoice = relationship("Invoice", back_populates="delivery_logs")


Index("invoice_delivery_logs_invoice_idx", InvoiceDeliveryLog.invoice_id)
Index("invoice_delivery_logs_created_at_idx", InvoiceDeliveryLog.created_at)


class ReminderType(str, enum.Enum):
    """Kinds of payment reminders sent for an open invoice."""

    DUE_SOON = "due_soon"
    DUE_TODAY = "due_today"
    OVERDUE = "overdue"


REMINDER_TYPE_ENUM = SAEnum(
    ReminderType,
    name="invoice_reminder_type_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class InvoiceReminderLog(Base):
    """Outcome of each payment reminder sent for an invoice."""

    __tablename__ = "invoice_reminder_logs"

    id = Column(GUID(), primary_key=True, default=new_id)
    invoice_id = Column(GUID(), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    reminder_type = Column(REMINDER_TYPE_ENUM, nullable=False)
    delivery_status = Column(DELIVERY_STATUS_ENUM, nullable=False)
    destination = Column(String(255), nullable=True)
    channel = Column(String(50), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    response_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    invoice = relationship("Invoice", back_populates="reminder_logs")


Index(
    "invoice_reminder_logs_invoice_type_idx",
    InvoiceReminderLog.invoice_id,
    InvoiceReminderLog.reminder_type,
)
