"""FastAPI dependencies wiring the workspace-scoped services."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .database import get_db
from .repository import WorkspaceRepository
from .services import (
    InvoiceDeliveryService,
    InvoiceService,
    NotificationClient,
    PrepaidService,
    SessionBillingService,
    build_notification_client_from_env,
)


def get_workspace_id(x_workspace_id: str = Header(..., alias="X-Workspace-Id")) -> str:
    workspace_id = x_workspace_id.strip()
    if not workspace_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Workspace-Id header cannot be empty",
        )
    return workspace_id


@lru_cache(maxsize=1)
def _cached_notification_client() -> NotificationClient:
    return build_notification_client_from_env()


def get_notification_client() -> NotificationClient:
    """Return the process-wide invoice email transport."""

    return _cached_notification_client()


def get_repository(
    db: Session = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
) -> WorkspaceRepository:
    return WorkspaceRepository(db, workspace_id)


def get_delivery_service(
    db: Session = Depends(get_db),
    client: NotificationClient = Depends(get_notification_client),
) -> InvoiceDeliveryService:
    return InvoiceDeliveryService(db, client)


def get_invoice_service(
    repository: WorkspaceRepository = Depends(get_repository),
    delivery: InvoiceDeliveryService = Depends(get_delivery_service),
) -> InvoiceService:
    return InvoiceService(repository, delivery)


def get_prepaid_service(
    repository: WorkspaceRepository = Depends(get_repository),
    invoices: InvoiceService = Depends(get_invoice_service),
) -> PrepaidService:
    return PrepaidService(repository, invoices)


def get_session_billing_service(
    repository: WorkspaceRepository = Depends(get_repository),
    prepaid: PrepaidService = Depends(get_prepaid_service),
    invoices: InvoiceService = Depends(get_invoice_service),
) -> SessionBillingService:
    return SessionBillingService(repository, prepaid, invoices)
