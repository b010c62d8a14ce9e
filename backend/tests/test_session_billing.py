from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app import models
from backend.app.services.session_billing import SessionBillingService


@pytest.fixture
def session_billing(repository, prepaid_service, invoice_service) -> SessionBillingService:
    return SessionBillingService(repository, prepaid_service, invoice_service)


def test_prepaid_session_deducts_and_requests_top_up(db_session, factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="150", target="500", session_rate="100")
    appointment = factory.appointment(trainer, client)

    outcome = session_billing.handle_completed_appointment(appointment.id)

    assert outcome.billing_frequency is models.BillingFrequency.PREPAID
    assert outcome.amount_deducted == Decimal("100.00")
    assert outcome.deduction.new_balance == Decimal("50.00")
    assert outcome.deduction.should_generate_invoice is True
    assert outcome.invoice_id is None
    top_up = db_session.get(models.Invoice, outcome.top_up_invoice_id)
    assert top_up.is_prepaid_top_up is True
    assert top_up.amount == Decimal("450.00")


def test_healthy_prepaid_balance_skips_top_up(factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="400", target="300", session_rate="100")

    outcome = session_billing.handle_completed_appointment(
        factory.appointment(trainer, client).id
    )

    assert outcome.deduction.new_balance == Decimal("300.00")
    assert outcome.top_up_invoice_id is None


def test_per_session_client_gets_an_invoice(db_session, factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(
        trainer,
        billing_frequency=models.BillingFrequency.PER_SESSION,
        balance=None,
        session_rate="85",
    )
    appointment = factory.appointment(trainer, client)

    outcome = session_billing.handle_completed_appointment(appointment.id)

    assert outcome.deduction is None
    assert outcome.amount_deducted == Decimal("0.00")
    invoice = db_session.get(models.Invoice, outcome.invoice_id)
    assert invoice.amount == Decimal("85.00")
    assert invoice.line_items[0].appointment_id == appointment.id


def test_monthly_client_waits_for_the_monthly_run(db_session, factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(
        trainer, billing_frequency=models.BillingFrequency.MONTHLY, balance=None
    )

    outcome = session_billing.handle_completed_appointment(
        factory.appointment(trainer, client).id
    )

    assert outcome.billing_frequency is models.BillingFrequency.MONTHLY
    assert outcome.deduction is None
    assert outcome.invoice_id is None
    assert outcome.top_up_invoice_id is None
    assert db_session.query(models.Invoice).count() == 0


def test_only_completed_appointments_are_billed(factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="200")
    scheduled = factory.appointment(
        trainer,
        client,
        start_time=datetime.now(timezone.utc) + timedelta(days=2),
        status=models.AppointmentStatus.SCHEDULED,
    )

    with pytest.raises(ValueError):
        session_billing.handle_completed_appointment(scheduled.id)


def test_unknown_appointment_returns_none(session_billing):
    assert session_billing.handle_completed_appointment("missing") is None


def test_billing_twice_does_not_charge_twice(db_session, factory, session_billing):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="400", target="300", session_rate="100")
    appointment = factory.appointment(trainer, client)

    session_billing.handle_completed_appointment(appointment.id)
    again = session_billing.handle_completed_appointment(appointment.id)

    assert again.deduction.new_balance == Decimal("300.00")
    db_session.refresh(client.profile)
    assert client.profile.prepaid_balance == Decimal("300.00")
