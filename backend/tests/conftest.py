from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure the project root (which exposes the ``backend`` package) is on ``sys.path``
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "0"
os.environ["MONTHLY_INVOICE_SCHEDULER_ENABLED"] = "0"
os.environ["INVOICE_REMINDER_SCHEDULER_ENABLED"] = "0"
os.environ["INVOICE_EMAIL_TRANSPORT"] = "console"

from backend.app import models
from backend.app.database import Base, get_db
from backend.app.dependencies import get_notification_client
from backend.app.main import app
from backend.app.repository import WorkspaceRepository
from backend.app.services.invoice_delivery import (
    ConsoleNotificationClient,
    InvoiceDeliveryService,
)
from backend.app.services.invoices import InvoiceService
from backend.app.services.prepaid import PrepaidService

WORKSPACE_ID = "studio-north"

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def notification_client() -> ConsoleNotificationClient:
    return ConsoleNotificationClient()


@pytest.fixture
def client(
    db_session: Session, notification_client: ConsoleNotificationClient
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            db_session.expire_all()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_client] = lambda: notification_client
    with TestClient(app) as test_client:
        test_client.headers.update({"X-Workspace-Id": WORKSPACE_ID})
        yield test_client
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_notification_client, None)


@pytest.fixture
def repository(db_session: Session) -> WorkspaceRepository:
    return WorkspaceRepository(db_session, WORKSPACE_ID)


@pytest.fixture
def invoice_service(
    repository: WorkspaceRepository, notification_client: ConsoleNotificationClient
) -> InvoiceService:
    return InvoiceService(
        repository, InvoiceDeliveryService(repository.db, notification_client)
    )


@pytest.fixture
def prepaid_service(
    repository: WorkspaceRepository, invoice_service: InvoiceService
) -> PrepaidService:
    return PrepaidService(repository, invoice_service)


class BillingFactory:
    """Builds trainers, clients and appointments inside the test workspace."""

    def __init__(self, db: Session, workspace_id: str = WORKSPACE_ID) -> None:
        self.db = db
        self.workspace_id = workspace_id

    def for_workspace(self, workspace_id: str) -> "BillingFactory":
        return BillingFactory(self.db, workspace_id)

    def trainer(
        self,
        full_name: str = "Dana Coach",
        *,
        email: Optional[str] = "dana@studio.test",
        default_group_session_rate: Optional[str] = None,
        default_invoice_due_days: Optional[int] = None,
        group_session_matching: models.GroupSessionMatching = models.GroupSessionMatching.EXACT_MATCH,
        monthly_invoice_day: int = 1,
    ) -> models.Trainer:
        trainer = models.Trainer(
            workspace_id=self.workspace_id, full_name=full_name, email=email
        )
        trainer.settings = models.TrainerSettings(
            default_group_session_rate=(
                Decimal(default_group_session_rate)
                if default_group_session_rate is not None
                else None
            ),
            default_invoice_due_days=default_invoice_due_days,
            group_session_matching=group_session_matching,
            auto_invoicing_enabled=True,
            monthly_invoice_day=monthly_invoice_day,
        )
        self.db.add(trainer)
        self.db.commit()
        return trainer

    def client(
        self,
        trainer: models.Trainer,
        full_name: str = "Riley Client",
        *,
        email: Optional[str] = "riley@client.test",
        billing_frequency: models.BillingFrequency = models.BillingFrequency.PREPAID,
        balance: Optional[str] = "0",
        target: Optional[str] = "500",
        session_rate: str = "100",
        group_session_rate: Optional[str] = None,
        auto_invoice_enabled: bool = True,
    ) -> models.Client:
        client = models.Client(
            workspace_id=self.workspace_id,
            trainer_id=trainer.id,
            full_name=full_name,
            email=email,
        )
        client.profile = models.ClientProfile(
            workspace_id=self.workspace_id,
            billing_frequency=billing_frequency,
            prepaid_balance=Decimal(balance) if balance is not None else None,
            prepaid_target_balance=Decimal(target) if target is not None else None,
            session_rate=Decimal(session_rate),
            group_session_rate=(
                Decimal(group_session_rate) if group_session_rate is not None else None
            ),
            auto_invoice_enabled=auto_invoice_enabled,
        )
        self.db.add(client)
        self.db.commit()
        return client

    def appointment(
        self,
        trainer: models.Trainer,
        client: models.Client,
        *,
        start_time: Optional[datetime] = None,
        minutes: int = 60,
        status: models.AppointmentStatus = models.AppointmentStatus.COMPLETED,
    ) -> models.Appointment:
        start = start_time or datetime.now(timezone.utc) - timedelta(hours=2)
        appointment = models.Appointment(
            workspace_id=self.workspace_id,
            trainer_id=trainer.id,
            client_id=client.id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            status=status,
        )
        self.db.add(appointment)
        self.db.commit()
        return appointment

    def invoice(
        self,
        trainer: models.Trainer,
        client: models.Client,
        *,
        due_date: datetime,
        amount: str = "100",
        status: models.InvoiceStatus = models.InvoiceStatus.SENT,
    ) -> models.Invoice:
        value = Decimal(amount)
        invoice = models.Invoice(
            workspace_id=self.workspace_id,
            client_id=client.id,
            trainer_id=trainer.id,
            subtotal=value,
            credit_applied=Decimal("0"),
            amount=value,
            status=status,
            due_date=due_date,
        )
        self.db.add(invoice)
        self.db.commit()
        return invoice


@pytest.fixture
def factory(db_session: Session) -> BillingFactory:
    return BillingFactory(db_session)
