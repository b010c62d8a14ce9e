"""Router exposing invoice generation, status changes and delivery."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..dependencies import (
    get_delivery_service,
    get_invoice_service,
    get_repository,
    get_workspace_id,
)
from ..repository import WorkspaceRepository
from ..services import (
    InvoiceDeliveryService,
    InvoiceReminderService,
    InvoiceService,
    InvoiceServiceError,
    LedgerConflictError,
    PrepaidServiceError,
    process_monthly_invoices,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _failure(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, LedgerConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    LOGGER.exception("Failed to %s", action, exc_info=exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/{invoice_id}", response_model=schemas.InvoiceRead)
def get_invoice(
    invoice_id: str,
    repository: WorkspaceRepository = Depends(get_repository),
) -> schemas.InvoiceRead:
    invoice = repository.get_invoice(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return schemas.InvoiceRead.model_validate(invoice)


@router.patch("/{invoice_id}", response_model=schemas.InvoiceRead)
def update_invoice_status(
    invoice_id: str,
    payload: schemas.InvoiceStatusUpdate,
    service: InvoiceService = Depends(get_invoice_service),
) -> schemas.InvoiceRead:
    """Change the status of an invoice; paying a top-up credits the balance."""

    try:
        invoice = service.update_status(invoice_id, payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (InvoiceServiceError, PrepaidServiceError) as exc:
        raise _failure(exc, "update the invoice status") from exc
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return schemas.InvoiceRead.model_validate(invoice)


@router.post("/{invoice_id}/send", response_model=schemas.InvoiceDeliveryResponse)
def send_invoice(
    invoice_id: str,
    service: InvoiceService = Depends(get_invoice_service),
) -> schemas.InvoiceDeliveryResponse:
    try:
        outcome = service.send_invoice(invoice_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return schemas.InvoiceDeliveryResponse.model_validate(outcome)


@router.post(
    "/appointments/{appointment_id}/per-session",
    response_model=schemas.InvoiceGenerationResponse,
)
def generate_per_session_invoice(
    appointment_id: str,
    service: InvoiceService = Depends(get_invoice_service),
) -> schemas.InvoiceGenerationResponse:
    try:
        invoice_id = service.generate_per_session_invoice(appointment_id)
    except (InvoiceServiceError, PrepaidServiceError) as exc:
        raise _failure(exc, "generate the per-session invoice") from exc
    return schemas.InvoiceGenerationResponse(invoice_id=invoice_id)


@router.post(
    "/clients/{client_id}/monthly",
    response_model=schemas.InvoiceGenerationResponse,
)
def generate_monthly_invoice(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer issuing the invoice"),
    payload: Optional[schemas.MonthlyRunRequest] = None,
    service: InvoiceService = Depends(get_invoice_service),
) -> schemas.InvoiceGenerationResponse:
    reference_date = payload.reference_date if payload is not None else None
    try:
        invoice_id = service.generate_monthly_invoice(client_id, trainer_id, reference_date)
    except (InvoiceServiceError, PrepaidServiceError) as exc:
        raise _failure(exc, "generate the monthly invoice") from exc
    return schemas.InvoiceGenerationResponse(invoice_id=invoice_id)


@router.post("/monthly-run", response_model=schemas.MonthlyRunSummaryRead)
def run_monthly_invoicing(
    payload: Optional[schemas.MonthlyRunRequest] = None,
    db: Session = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
    delivery: InvoiceDeliveryService = Depends(get_delivery_service),
) -> schemas.MonthlyRunSummaryRead:
    """Run the monthly invoicing cycle of one workspace on demand."""

    reference_date = payload.reference_date if payload is not None else None
    summary = process_monthly_invoices(
        db, delivery, reference_date, workspace_id=workspace_id
    )
    LOGGER.info("Manual monthly invoicing run: %s", summary.to_dict())
    return schemas.MonthlyRunSummaryRead.model_validate(summary)


@router.get(
    "/clients/{client_id}/monthly-preview",
    response_model=schemas.MonthlyInvoicePreviewRead,
)
def preview_monthly_invoice(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer issuing the invoice"),
    reference_date: Optional[date] = Query(
        default=None, description="Issue date to preview (default: next invoicing day)"
    ),
    service: InvoiceService = Depends(get_invoice_service),
) -> schemas.MonthlyInvoicePreviewRead:
    """Preview the next monthly invoice of a client without issuing it."""

    try:
        preview = service.preview_monthly_invoice(client_id, trainer_id, reference_date)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if preview is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return schemas.MonthlyInvoicePreviewRead.model_validate(preview)


@router.post("/reminder-run", response_model=schemas.ReminderRunSummaryRead)
def run_invoice_reminders(
    payload: Optional[schemas.ReminderRunRequest] = None,
    db: Session = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
    delivery: InvoiceDeliveryService = Depends(get_delivery_service),
) -> schemas.ReminderRunSummaryRead:
    """Mark past-due invoices overdue and send due reminders for one workspace."""

    today = payload.today if payload is not None else None
    summary = InvoiceReminderService(db, delivery).run(today, workspace_id=workspace_id)
    LOGGER.info("Manual invoice reminder run: %s", summary.to_dict())
    return schemas.ReminderRunSummaryRead.model_validate(summary)
