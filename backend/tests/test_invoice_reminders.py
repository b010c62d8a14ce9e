from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from backend.app import models
from backend.app.services.invoice_delivery import (
    InvoiceDeliveryService,
    compose_reminder_email,
)
from backend.app.services.invoice_reminders import InvoiceReminderService

TODAY = date(2026, 10, 19)


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2026, 10, day, hour, 0, tzinfo=timezone.utc)


@pytest.fixture
def reminders(db_session, notification_client) -> InvoiceReminderService:
    return InvoiceReminderService(
        db_session, InvoiceDeliveryService(db_session, notification_client)
    )


def _reminder_types(db_session, invoice) -> list[models.ReminderType]:
    db_session.refresh(invoice)
    return [log.reminder_type for log in invoice.reminder_logs]


def test_sent_invoices_become_overdue_only_after_due_date(db_session, factory, reminders):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    past_due = factory.invoice(trainer, riley, due_date=_at(18, 23))
    due_today = factory.invoice(trainer, riley, due_date=_at(19, 0))
    due_later = factory.invoice(trainer, riley, due_date=_at(25))

    summary = reminders.run(TODAY)

    assert summary.marked_overdue == 1
    db_session.refresh(past_due)
    db_session.refresh(due_today)
    db_session.refresh(due_later)
    assert past_due.status is models.InvoiceStatus.OVERDUE
    assert due_today.status is models.InvoiceStatus.SENT
    assert due_later.status is models.InvoiceStatus.SENT


def test_paid_and_cancelled_invoices_are_left_alone(
    db_session, factory, reminders, notification_client
):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    paid = factory.invoice(trainer, riley, due_date=_at(16), status=models.InvoiceStatus.PAID)
    cancelled = factory.invoice(
        trainer, riley, due_date=_at(12), status=models.InvoiceStatus.CANCELLED
    )
    draft = factory.invoice(trainer, riley, due_date=_at(16), status=models.InvoiceStatus.DRAFT)

    summary = reminders.run(TODAY)

    assert summary.marked_overdue == 0
    assert summary.sent == 0
    for invoice, expected in (
        (paid, models.InvoiceStatus.PAID),
        (cancelled, models.InvoiceStatus.CANCELLED),
        (draft, models.InvoiceStatus.DRAFT),
    ):
        db_session.refresh(invoice)
        assert invoice.status is expected
        assert invoice.reminder_logs == []
    assert notification_client.records == []


def test_reminders_follow_trainer_schedule(db_session, factory, reminders, notification_client):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    due_soon = factory.invoice(trainer, riley, due_date=_at(22, 9))
    due_today = factory.invoice(trainer, riley, due_date=_at(19, 17))
    three_days_late = factory.invoice(trainer, riley, due_date=_at(16))
    five_days_late = factory.invoice(trainer, riley, due_date=_at(14))

    summary = reminders.run(TODAY)

    assert summary.to_dict() == {
        "trainers": 1,
        "marked_overdue": 2,
        "due_soon": 1,
        "due_today": 1,
        "overdue": 1,
        "skipped": 0,
        "failed": 0,
        "sent": 3,
    }
    assert _reminder_types(db_session, due_soon) == [models.ReminderType.DUE_SOON]
    assert _reminder_types(db_session, due_today) == [models.ReminderType.DUE_TODAY]
    assert _reminder_types(db_session, three_days_late) == [models.ReminderType.OVERDUE]
    assert _reminder_types(db_session, five_days_late) == []
    assert five_days_late.status is models.InvoiceStatus.OVERDUE
    subjects = sorted(record["subject"] for record in notification_client.records)
    assert any(subject.endswith("is past due") for subject in subjects)
    assert all(record["destination"] == "riley@client.test" for record in notification_client.records)


def test_custom_overdue_days_and_disabled_kinds(db_session, factory, reminders):
    trainer = factory.trainer()
    trainer.settings.invoice_reminder_on_due = False
    trainer.settings.invoice_reminder_before_due = False
    trainer.settings.invoice_reminder_overdue_days = [5, "soon", 0]
    db_session.commit()
    riley = factory.client(trainer)
    factory.invoice(trainer, riley, due_date=_at(19))
    factory.invoice(trainer, riley, due_date=_at(22))
    five_days_late = factory.invoice(trainer, riley, due_date=_at(14))

    summary = reminders.run(TODAY)

    assert summary.due_today == 0
    assert summary.due_soon == 0
    assert summary.overdue == 1
    assert _reminder_types(db_session, five_days_late) == [models.ReminderType.OVERDUE]


def test_reminders_are_not_repeated_within_a_day(factory, reminders, notification_client):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    factory.invoice(trainer, riley, due_date=_at(19))

    first = reminders.run(TODAY)
    second = reminders.run(TODAY)

    assert first.due_today == 1
    assert second.due_today == 0
    assert second.skipped == 1
    assert len(notification_client.records) == 1


def test_clients_with_alerts_disabled_are_skipped_but_still_overdue(
    db_session, factory, reminders, notification_client
):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    riley.profile.invoice_alerts_enabled = False
    db_session.commit()
    invoice = factory.invoice(trainer, riley, due_date=_at(16))

    summary = reminders.run(TODAY)

    assert summary.marked_overdue == 1
    assert summary.skipped == 1
    assert notification_client.records == []
    db_session.refresh(invoice)
    assert invoice.status is models.InvoiceStatus.OVERDUE


def test_client_without_email_is_logged_as_failed(db_session, factory, reminders):
    trainer = factory.trainer()
    riley = factory.client(trainer, email=None)
    invoice = factory.invoice(trainer, riley, due_date=_at(19))

    summary = reminders.run(TODAY)

    assert summary.failed == 1
    db_session.refresh(invoice)
    log = invoice.reminder_logs[0]
    assert log.delivery_status is models.DeliveryStatus.FAILED
    assert log.error_message == "Client has no email address"


def test_overdue_top_up_still_blocks_a_second_top_up(
    db_session, factory, reminders, invoice_service
):
    trainer = factory.trainer()
    riley = factory.client(trainer, balance="0", target="300")
    top_up_id = invoice_service.generate_top_up_invoice(riley.id, trainer.id)
    top_up = db_session.get(models.Invoice, top_up_id)
    top_up.due_date = _at(10)
    db_session.commit()

    reminders.run(TODAY)

    db_session.refresh(top_up)
    assert top_up.status is models.InvoiceStatus.OVERDUE
    assert invoice_service.generate_top_up_invoice(riley.id, trainer.id) == top_up_id


def test_reminder_email_wording(db_session, factory):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    invoice = factory.invoice(trainer, riley, due_date=_at(22), amount="85.5")

    subject, body = compose_reminder_email(invoice, models.ReminderType.DUE_SOON)
    assert subject == f"Reminder: invoice #{str(invoice.id)[:8]} from Dana Coach is due soon"
    assert "Hi Riley Client," in body
    assert "for $85.50 is due on October 22, 2026." in body

    subject, body = compose_reminder_email(invoice, models.ReminderType.OVERDUE)
    assert subject.endswith("is past due")
    assert "is still unpaid" in body


def test_reminder_run_endpoint_is_scoped_to_workspace(client, factory, db_session):
    trainer = factory.trainer()
    riley = factory.client(trainer)
    local = factory.invoice(trainer, riley, due_date=_at(10))
    elsewhere = factory.for_workspace("studio-south")
    south_trainer = elsewhere.trainer("Avery South")
    remote = elsewhere.invoice(
        south_trainer, elsewhere.client(south_trainer, "Skyler South"), due_date=_at(10)
    )

    response = client.post("/invoices/reminder-run", json={"today": "2026-10-19"})

    assert response.status_code == 200, response.text
    assert response.json()["marked_overdue"] == 1
    assert response.json()["trainers"] == 1
    db_session.refresh(local)
    db_session.refresh(remote)
    assert local.status is models.InvoiceStatus.OVERDUE
    assert remote.status is models.InvoiceStatus.SENT
