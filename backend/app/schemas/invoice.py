"""Schemas for invoices, their line items and delivery attempts."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.client_profile import BillingFrequency
from ..models.invoice import InvoiceStatus
from ..models.invoice_delivery import DeliveryStatus
from .prepaid import DeductionResponse


class InvoiceLineItemRead(BaseModel):
    id: str
    position: int
    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    appointment_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceDeliveryLogRead(BaseModel):
    id: str
    delivery_status: DeliveryStatus
    destination: Optional[str] = None
    channel: str
    response_code: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceRead(BaseModel):
    """Invoice with its line items; ``amount`` is the subtotal less credit."""

    id: str
    client_id: str
    trainer_id: str
    subtotal: Decimal
    credit_applied: Decimal
    amount: Decimal
    status: InvoiceStatus
    due_date: datetime
    is_prepaid_top_up: bool
    billing_period: Optional[str] = None
    notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    line_items: list[InvoiceLineItemRead] = Field(default_factory=list)
    delivery_logs: list[InvoiceDeliveryLogRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus = Field(..., description="New status for the invoice")


class InvoiceGenerationResponse(BaseModel):
    """Id of the generated invoice, or null when nothing was billed."""

    invoice_id: Optional[str] = None


class InvoiceDeliveryResponse(BaseModel):
    invoice_id: str
    delivered: bool
    status: InvoiceStatus
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MonthlyRunRequest(BaseModel):
    reference_date: Optional[date] = Field(
        default=None, description="Run as if today were this date"
    )


class MonthlyRunSummaryRead(BaseModel):
    trainers: int
    attempted: int
    generated: int
    skipped: int
    failed: int
    invoice_ids: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class SessionBillingRead(BaseModel):
    """What happened when a completed appointment was billed."""

    appointment_id: str
    billing_frequency: Optional[BillingFrequency] = None
    deduction: Optional[DeductionResponse] = None
    invoice_id: Optional[str] = None
    top_up_invoice_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MonthlyPreviewLineRead(BaseModel):
    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    appointment_id: Optional[str] = None
    is_group: bool = False

    model_config = ConfigDict(from_attributes=True)


class MonthlyInvoicePreviewRead(BaseModel):
    """The monthly invoice a client would receive; nothing is issued."""

    client_id: str
    trainer_id: str
    billing_period: str
    period_label: str
    issue_date: date
    auto_invoice_enabled: bool
    already_invoiced: bool
    lines: list[MonthlyPreviewLineRead] = Field(default_factory=list)
    subtotal: Decimal
    credit_applied: Decimal
    amount: Decimal
    scheduled_sessions: int
    projected_subtotal: Decimal

    model_config = ConfigDict(from_attributes=True)


class ReminderRunRequest(BaseModel):
    today: Optional[date] = Field(default=None, description="Run as if today were this date")


class ReminderRunSummaryRead(BaseModel):
    trainers: int
    marked_overdue: int
    due_soon: int
    due_today: int
    overdue: int
    skipped: int
    failed: int
    sent: int

    model_config = ConfigDict(from_attributes=True)
