"""Expose Pydantic schemas for convenient imports."""

from .invoice import (
    InvoiceDeliveryLogRead,
    InvoiceDeliveryResponse,
    InvoiceGenerationResponse,
    InvoiceLineItemRead,
    InvoiceRead,
    InvoiceStatusUpdate,
    MonthlyInvoicePreviewRead,
    MonthlyPreviewLineRead,
    MonthlyRunRequest,
    MonthlyRunSummaryRead,
    ReminderRunRequest,
    ReminderRunSummaryRead,
    SessionBillingRead,
)
from .prepaid import (
    BalanceCheckResponse,
    ClientPrepaidDetailRead,
    CreditCreate,
    CreditResponse,
    DeductionResponse,
    PaginatedResponse,
    PrepaidClientSummaryRead,
    PrepaidSummaryResponse,
    PrepaidSummaryTotalsRead,
    PrepaidTransactionListResponse,
    PrepaidTransactionRead,
    TopUpInvoiceResponse,
    UpcomingSessionRead,
    VoidInvoiceRequest,
    VoidInvoiceResponse,
)

__all__ = [
    "PaginatedResponse",
    "InvoiceDeliveryLogRead",
    "InvoiceDeliveryResponse",
    "InvoiceGenerationResponse",
    "InvoiceLineItemRead",
    "InvoiceRead",
    "InvoiceStatusUpdate",
    "MonthlyInvoicePreviewRead",
    "MonthlyPreviewLineRead",
    "MonthlyRunRequest",
    "MonthlyRunSummaryRead",
    "ReminderRunRequest",
    "ReminderRunSummaryRead",
    "SessionBillingRead",
    "BalanceCheckResponse",
    "ClientPrepaidDetailRead",
    "CreditCreate",
    "CreditResponse",
    "DeductionResponse",
    "PrepaidClientSummaryRead",
    "PrepaidSummaryResponse",
    "PrepaidSummaryTotalsRead",
    "PrepaidTransactionListResponse",
    "PrepaidTransactionRead",
    "TopUpInvoiceResponse",
    "UpcomingSessionRead",
    "VoidInvoiceRequest",
    "VoidInvoiceResponse",
]
