"""Expose SQLAlchemy models for convenient imports."""

from .appointment import Appointment, AppointmentStatus
from .client import Client
from .client_profile import BillingFrequency, ClientProfile
from .invoice import (
    OPEN_INVOICE_STATUSES,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
)
from .invoice_delivery import (
    DeliveryStatus,
    InvoiceDeliveryLog,
    InvoiceReminderLog,
    ReminderType,
)
from .prepaid_transaction import PrepaidTransaction, PrepaidTransactionType
from .trainer import GroupSessionMatching, Trainer, TrainerSettings

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BillingFrequency",
    "Client",
    "ClientProfile",
    "DeliveryStatus",
    "GroupSessionMatching",
    "Invoice",
    "InvoiceDeliveryLog",
    "InvoiceLineItem",
    "InvoiceReminderLog",
    "InvoiceStatus",
    "OPEN_INVOICE_STATUSES",
    "PrepaidTransaction",
    "PrepaidTransactionType",
    "ReminderType",
    "Trainer",
    "TrainerSettings",
]
