"""Router exposing the billing hook for completed appointments."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..dependencies import get_session_billing_service
from ..services import (
    InvoiceServiceError,
    LedgerConflictError,
    PrepaidServiceError,
    SessionBillingService,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{appointment_id}/billing", response_model=schemas.SessionBillingRead)
def bill_completed_appointment(
    appointment_id: str,
    service: SessionBillingService = Depends(get_session_billing_service),
) -> schemas.SessionBillingRead:
    """Bill a completed appointment according to its client's billing model."""

    try:
        outcome = service.handle_completed_appointment(appointment_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LedgerConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (InvoiceServiceError, PrepaidServiceError) as exc:
        LOGGER.exception("Failed to bill appointment %s", appointment_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return schemas.SessionBillingRead.model_validate(outcome)
