"""Service layer encapsulating business logic for API routers."""

from .billing_periods import BillingPeriod
from .invoice_delivery import (
    ConsoleNotificationClient,
    DeliveryOutcome,
    InvoiceDeliveryService,
    NotificationClient,
    NotificationError,
    build_notification_client_from_env,
)
from .invoice_reminders import (
    InvoiceReminderService,
    InvoiceReminderSummary,
    start_invoice_reminder_scheduler,
    stop_invoice_reminder_scheduler,
)
from .invoices import (
    InvoiceService,
    InvoiceServiceError,
    MonthlyInvoicePreview,
    MonthlyInvoiceRunSummary,
    process_monthly_invoices,
    start_monthly_invoice_scheduler,
    stop_monthly_invoice_scheduler,
)
from .ledger import (
    BalanceStatus,
    ClientProfileNotFoundError,
    LedgerConflictError,
    LedgerStore,
    PrepaidServiceError,
    retry_on_conflict,
)
from .prepaid import (
    BalanceCheckResult,
    CreditResult,
    DeductionResult,
    PrepaidService,
    VoidResult,
)
from .rates import RateResolver, SessionPrice
from .session_billing import SessionBillingOutcome, SessionBillingService

__all__ = [
    "BillingPeriod",
    "ConsoleNotificationClient",
    "DeliveryOutcome",
    "InvoiceDeliveryService",
    "NotificationClient",
    "NotificationError",
    "build_notification_client_from_env",
    "InvoiceReminderService",
    "InvoiceReminderSummary",
    "start_invoice_reminder_scheduler",
    "stop_invoice_reminder_scheduler",
    "InvoiceService",
    "InvoiceServiceError",
    "MonthlyInvoicePreview",
    "MonthlyInvoiceRunSummary",
    "process_monthly_invoices",
    "start_monthly_invoice_scheduler",
    "stop_monthly_invoice_scheduler",
    "BalanceStatus",
    "ClientProfileNotFoundError",
    "LedgerConflictError",
    "LedgerStore",
    "PrepaidServiceError",
    "retry_on_conflict",
    "BalanceCheckResult",
    "CreditResult",
    "DeductionResult",
    "PrepaidService",
    "VoidResult",
    "RateResolver",
    "SessionPrice",
    "SessionBillingOutcome",
    "SessionBillingService",
]
