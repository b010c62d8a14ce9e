"""Router exposing prepaid balances, credits and top-ups."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from .. import schemas
from ..dependencies import get_invoice_service, get_prepaid_service, get_workspace_id
from ..services import (
    ClientProfileNotFoundError,
    InvoiceService,
    InvoiceServiceError,
    LedgerConflictError,
    PrepaidService,
    PrepaidServiceError,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _service_failure(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, LedgerConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ClientProfileNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    LOGGER.exception("Failed to %s", action, exc_info=exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )


@router.get("/summary", response_model=schemas.PrepaidSummaryResponse)
def prepaid_summary(
    trainer_id: str = Query(..., description="Trainer whose prepaid clients are listed"),
    workspace_id: str = Depends(get_workspace_id),
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.PrepaidSummaryResponse:
    """Return every prepaid client of a trainer with their balance status."""

    try:
        summaries = service.get_prepaid_clients_summary(trainer_id, workspace_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    totals = PrepaidService.summarize_totals(summaries)
    return schemas.PrepaidSummaryResponse(
        clients=[schemas.PrepaidClientSummaryRead.model_validate(item) for item in summaries],
        totals=schemas.PrepaidSummaryTotalsRead.model_validate(totals),
    )


@router.get("/clients/{client_id}", response_model=schemas.ClientPrepaidDetailRead)
def client_prepaid_detail(
    client_id: str,
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.ClientPrepaidDetailRead:
    detail = service.get_client_prepaid_detail(client_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client profile not found")
    return schemas.ClientPrepaidDetailRead.model_validate(detail)


@router.post(
    "/clients/{client_id}/credits",
    response_model=schemas.CreditResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_prepaid_credit(
    client_id: str,
    payload: schemas.CreditCreate,
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.CreditResponse:
    try:
        result = service.add_credit(client_id, payload.amount, payload.notes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PrepaidServiceError as exc:
        raise _service_failure(exc, "add prepaid credit") from exc
    return schemas.CreditResponse.model_validate(result)


@router.post("/clients/{client_id}/top-up", response_model=schemas.TopUpInvoiceResponse)
def generate_top_up_invoice(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer issuing the invoice"),
    invoices: InvoiceService = Depends(get_invoice_service),
) -> schemas.TopUpInvoiceResponse:
    try:
        invoice_id = invoices.generate_top_up_invoice(client_id, trainer_id)
    except InvoiceServiceError as exc:
        raise _service_failure(exc, "generate a top-up invoice") from exc
    return schemas.TopUpInvoiceResponse(invoice_id=invoice_id)


@router.post("/clients/{client_id}/balance-check", response_model=schemas.BalanceCheckResponse)
def check_balance(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer issuing the invoice"),
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.BalanceCheckResponse:
    try:
        result = service.check_balance_and_generate_invoice_if_needed(client_id, trainer_id)
    except InvoiceServiceError as exc:
        raise _service_failure(exc, "check the prepaid balance") from exc
    return schemas.BalanceCheckResponse.model_validate(result)


@router.get(
    "/profiles/{profile_id}/transactions",
    response_model=schemas.PrepaidTransactionListResponse,
)
def list_transactions(
    profile_id: str,
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of records to return"),
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.PrepaidTransactionListResponse:
    page = service.get_transactions(profile_id, limit=limit, offset=skip)
    return schemas.PrepaidTransactionListResponse(
        items=[schemas.PrepaidTransactionRead.model_validate(item) for item in page.transactions],
        total=page.total,
        limit=limit,
        skip=skip,
    )


@router.post(
    "/profiles/{profile_id}/switch-to-per-session",
    status_code=status.HTTP_204_NO_CONTENT,
)
def switch_to_per_session(
    profile_id: str,
    service: PrepaidService = Depends(get_prepaid_service),
) -> Response:
    try:
        service.switch_to_per_session(profile_id)
    except PrepaidServiceError as exc:
        raise _service_failure(exc, "switch to per-session billing") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invoices/{invoice_id}/void", response_model=schemas.VoidInvoiceResponse)
def void_top_up_invoice(
    invoice_id: str,
    payload: schemas.VoidInvoiceRequest,
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.VoidInvoiceResponse:
    """Cancel an open top-up and keep the remaining balance as credit."""

    try:
        result = service.void_invoice_and_switch_billing(
            invoice_id, payload.new_billing_frequency
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PrepaidServiceError as exc:
        raise _service_failure(exc, "void the top-up invoice") from exc
    if not result.success:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.error in {"Invoice not found", "Client profile not found"}
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=result.error)
    return schemas.VoidInvoiceResponse.model_validate(result)


@router.post(
    "/appointments/{appointment_id}/deduction",
    response_model=schemas.DeductionResponse,
)
def deduct_session(
    appointment_id: str,
    service: PrepaidService = Depends(get_prepaid_service),
) -> schemas.DeductionResponse:
    try:
        result = service.deduct_session(appointment_id)
    except PrepaidServiceError as exc:
        raise _service_failure(exc, "deduct the session") from exc
    return schemas.DeductionResponse.model_validate(result)
