"""Schemas for prepaid balances and their ledger."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Generic, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..models.client_profile import BillingFrequency
from ..models.prepaid_transaction import PrepaidTransactionType
from ..services.ledger import BalanceStatus

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: Sequence[T]
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    skip: int = Field(..., ge=0)


class PrepaidTransactionRead(BaseModel):
    """One immutable ledger entry."""

    id: str
    client_profile_id: str
    sequence: int
    transaction_type: PrepaidTransactionType
    amount: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    appointment_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PrepaidTransactionListResponse(PaginatedResponse[PrepaidTransactionRead]):
    """Paginated ledger listing, newest first."""

    pass


class CreditCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Amount credited to the balance")
    notes: Optional[str] = Field(default=None, description="Description stored on the credit")


class CreditResponse(BaseModel):
    new_balance: Decimal
    transaction: PrepaidTransactionRead

    model_config = ConfigDict(from_attributes=True)


class DeductionResponse(BaseModel):
    success: bool
    new_balance: Decimal
    amount_deducted: Decimal
    should_generate_invoice: bool
    should_switch_to_per_session: bool = False

    model_config = ConfigDict(from_attributes=True)


class TopUpInvoiceResponse(BaseModel):
    invoice_id: Optional[str] = None


class BalanceCheckResponse(BaseModel):
    invoice_generated: bool
    invoice_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class VoidInvoiceRequest(BaseModel):
    new_billing_frequency: BillingFrequency = Field(
        ..., description="Billing model the client moves to (PER_SESSION or MONTHLY)"
    )


class VoidInvoiceResponse(BaseModel):
    success: bool
    credit_amount: Decimal = Decimal("0.00")
    new_billing_frequency: Optional[BillingFrequency] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PrepaidClientSummaryRead(BaseModel):
    client_id: str
    client_name: str
    client_email: Optional[str] = None
    profile_id: str
    current_balance: Decimal
    target_balance: Decimal
    session_rate: Decimal
    balance_status: BalanceStatus
    sessions_consumed_since_last_credit: int
    last_transaction_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PrepaidSummaryTotalsRead(BaseModel):
    total_balance: Decimal
    total_target: Decimal
    client_count: int
    clients_needing_attention: int

    model_config = ConfigDict(from_attributes=True)


class PrepaidSummaryResponse(BaseModel):
    """Dashboard payload: one row per prepaid client plus aggregates."""

    clients: list[PrepaidClientSummaryRead]
    totals: PrepaidSummaryTotalsRead


class UpcomingSessionRead(BaseModel):
    appointment_id: str
    start_time: datetime
    estimated_cost: Decimal
    is_group: bool

    model_config = ConfigDict(from_attributes=True)


class ClientPrepaidDetailRead(BaseModel):
    client_id: str
    client_name: str
    profile_id: str
    billing_frequency: BillingFrequency
    current_balance: Decimal
    target_balance: Decimal
    session_rate: Decimal
    group_session_rate: Optional[Decimal] = None
    balance_status: BalanceStatus
    next_session: Optional[UpcomingSessionRead] = None
    recent_transactions: list[PrepaidTransactionRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
