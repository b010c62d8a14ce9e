from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app import models
from backend.app.services.invoices import CREDIT_APPLIED_DESCRIPTION


def _balance(db_session, client) -> Decimal:
    db_session.refresh(client.profile)
    return client.profile.prepaid_balance


def _prepaid_with_open_top_up(factory, prepaid_service, invoice_service, *, credit="150"):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", target="500", session_rate="100")
    prepaid_service.add_credit(client.id, Decimal(credit))
    invoice_id = invoice_service.generate_top_up_invoice(client.id, trainer.id)
    return trainer, client, invoice_id


def test_void_moves_balance_to_retained_credit(
    db_session, factory, prepaid_service, invoice_service
):
    trainer, client, invoice_id = _prepaid_with_open_top_up(
        factory, prepaid_service, invoice_service
    )

    result = prepaid_service.void_invoice_and_switch_billing(invoice_id, "PER_SESSION")

    assert result.success is True
    assert result.credit_amount == Decimal("150.00")
    assert result.new_billing_frequency is models.BillingFrequency.PER_SESSION
    assert db_session.get(models.Invoice, invoice_id).status is models.InvoiceStatus.CANCELLED
    assert _balance(db_session, client) == Decimal("150.00")
    assert client.profile.billing_frequency is models.BillingFrequency.PER_SESSION
    retention = (
        db_session.query(models.PrepaidTransaction)
        .filter(models.PrepaidTransaction.client_profile_id == client.profile.id)
        .order_by(models.PrepaidTransaction.sequence.desc())
        .first()
    )
    assert retention.transaction_type is models.PrepaidTransactionType.CREDIT
    assert retention.amount == Decimal("0.00")
    assert retention.description == "Credit retained ($150.00) - switching to PER_SESSION billing"


def test_retained_credit_is_spent_dollar_for_dollar(
    db_session, factory, prepaid_service, invoice_service
):
    trainer, client, invoice_id = _prepaid_with_open_top_up(
        factory, prepaid_service, invoice_service
    )
    prepaid_service.void_invoice_and_switch_billing(invoice_id, models.BillingFrequency.PER_SESSION)

    invoices = []
    for hours in (30, 20, 10):
        appointment = factory.appointment(
            trainer, client, start_time=datetime.now(timezone.utc) - timedelta(hours=hours)
        )
        invoices.append(
            db_session.get(
                models.Invoice, invoice_service.generate_per_session_invoice(appointment.id)
            )
        )

    assert [inv.subtotal for inv in invoices] == [Decimal("100.00")] * 3
    assert [inv.credit_applied for inv in invoices] == [
        Decimal("100.00"),
        Decimal("50.00"),
        Decimal("0.00"),
    ]
    assert [inv.amount for inv in invoices] == [
        Decimal("0.00"),
        Decimal("50.00"),
        Decimal("100.00"),
    ]
    for invoice in invoices:
        assert invoice.amount == sum(i.total for i in invoice.line_items) - invoice.credit_applied
    assert _balance(db_session, client) == Decimal("0.00")

    applied = (
        db_session.query(models.PrepaidTransaction)
        .filter(models.PrepaidTransaction.client_profile_id == client.profile.id)
        .filter(models.PrepaidTransaction.description == CREDIT_APPLIED_DESCRIPTION)
        .all()
    )
    assert sorted(t.amount for t in applied) == [Decimal("50.00"), Decimal("100.00")]


def test_per_session_invoice_is_generated_once(db_session, factory, invoice_service):
    trainer = factory.trainer()
    client = factory.client(
        trainer, billing_frequency=models.BillingFrequency.PER_SESSION, balance=None
    )
    appointment = factory.appointment(trainer, client)
    scheduled = factory.appointment(
        trainer,
        client,
        start_time=datetime.now(timezone.utc) + timedelta(days=1),
        status=models.AppointmentStatus.SCHEDULED,
    )

    first = invoice_service.generate_per_session_invoice(appointment.id)
    assert first is not None
    assert invoice_service.generate_per_session_invoice(appointment.id) is None
    assert invoice_service.generate_per_session_invoice(scheduled.id) is None

    invoice = db_session.get(models.Invoice, first)
    assert invoice.amount == Decimal("100.00")
    assert invoice.credit_applied == Decimal("0.00")
    assert invoice.line_items[0].appointment_id == appointment.id
    assert invoice.is_prepaid_top_up is False


def test_per_session_respects_auto_invoice_flag(factory, invoice_service):
    trainer = factory.trainer()
    client = factory.client(
        trainer,
        billing_frequency=models.BillingFrequency.PER_SESSION,
        auto_invoice_enabled=False,
    )

    assert invoice_service.generate_per_session_invoice(
        factory.appointment(trainer, client).id
    ) is None


def test_monthly_invoice_consumes_retained_credit(
    db_session, factory, prepaid_service, invoice_service
):
    trainer, client, invoice_id = _prepaid_with_open_top_up(
        factory, prepaid_service, invoice_service
    )
    prepaid_service.void_invoice_and_switch_billing(invoice_id, "MONTHLY")
    for day in (5, 19):
        factory.appointment(
            trainer, client, start_time=datetime(2026, 10, day, 9, 0, tzinfo=timezone.utc)
        )
    factory.appointment(
        trainer, client, start_time=datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)
    )

    monthly_id = invoice_service.generate_monthly_invoice(
        client.id, trainer.id, date(2026, 11, 1)
    )

    invoice = db_session.get(models.Invoice, monthly_id)
    assert invoice.billing_period == "2026-10"
    assert invoice.notes == "Monthly invoice for October 2026"
    assert len(invoice.line_items) == 2
    assert invoice.subtotal == Decimal("200.00")
    assert invoice.credit_applied == Decimal("150.00")
    assert invoice.amount == Decimal("50.00")
    assert _balance(db_session, client) == Decimal("0.00")

    assert invoice_service.generate_monthly_invoice(client.id, trainer.id, date(2026, 11, 1)) is None


def test_void_with_empty_balance_just_switches(db_session, factory, invoice_service, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", target="300")
    invoice_id = invoice_service.generate_top_up_invoice(client.id, trainer.id)

    result = prepaid_service.void_invoice_and_switch_billing(invoice_id, "MONTHLY")

    assert result.success is True
    assert result.credit_amount == Decimal("0.00")
    db_session.refresh(client.profile)
    assert client.profile.billing_frequency is models.BillingFrequency.MONTHLY
    assert (
        db_session.query(models.PrepaidTransaction)
        .filter(models.PrepaidTransaction.client_profile_id == client.profile.id)
        .count()
        == 0
    )


def test_void_rejections(db_session, factory, prepaid_service, invoice_service):
    trainer = factory.trainer()
    prepaid_client = factory.client(trainer, balance="0", target="300")
    top_up_id = invoice_service.generate_top_up_invoice(prepaid_client.id, trainer.id)

    per_session_client = factory.client(
        trainer,
        "Casey Per Session",
        billing_frequency=models.BillingFrequency.PER_SESSION,
        balance=None,
    )
    session_invoice_id = invoice_service.generate_per_session_invoice(
        factory.appointment(trainer, per_session_client).id
    )

    missing = prepaid_service.void_invoice_and_switch_billing("missing", "PER_SESSION")
    assert missing.success is False and missing.error == "Invoice not found"

    wrong_kind = prepaid_service.void_invoice_and_switch_billing(session_invoice_id, "PER_SESSION")
    assert wrong_kind.error == "Invoice is not a prepaid top-up invoice"

    with pytest.raises(ValueError):
        prepaid_service.void_invoice_and_switch_billing(top_up_id, "PREPAID")

    invoice_service.update_status(top_up_id, models.InvoiceStatus.PAID)
    paid = prepaid_service.void_invoice_and_switch_billing(top_up_id, "PER_SESSION")
    assert paid.error == "Cannot void a paid invoice"


def test_void_twice_reports_already_cancelled(factory, prepaid_service, invoice_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", target="300")
    invoice_id = invoice_service.generate_top_up_invoice(client.id, trainer.id)

    assert prepaid_service.void_invoice_and_switch_billing(invoice_id, "MONTHLY").success
    again = prepaid_service.void_invoice_and_switch_billing(invoice_id, "MONTHLY")

    assert again.success is False
    assert again.error == "Invoice is already cancelled"


def test_switch_to_per_session_keeps_balance(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="80")

    prepaid_service.switch_to_per_session(client.profile.id)

    db_session.refresh(client.profile)
    assert client.profile.billing_frequency is models.BillingFrequency.PER_SESSION
    assert client.profile.prepaid_balance == Decimal("80.00")
