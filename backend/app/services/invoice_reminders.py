"""Daily payment reminders for open invoices and overdue tracking."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .. import models
from ..database import session_scope
from ..repository import WorkspaceRepository
from .invoice_delivery import (
    ConfigurationError,
    InvoiceDeliveryService,
    build_notification_client_from_env,
)
from .invoices import _read_bool, _read_int, _seconds_until_next_run

LOGGER = logging.getLogger(__name__)

DEFAULT_OVERDUE_REMINDER_DAYS = (3, 7)
REMINDER_COOLDOWN = timedelta(hours=24)
ONE_DAY = timedelta(days=1)


@dataclass
class InvoiceReminderSummary:
    """Aggregate statistics after a reminder run."""

    trainers: int = 0
    marked_overdue: int = 0
    due_soon: int = 0
    due_today: int = 0
    overdue: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def sent(self) -> int:
        return self.due_soon + self.due_today + self.overdue

    def to_dict(self) -> dict[str, int]:
        return {
            "trainers": self.trainers,
            "marked_overdue": self.marked_overdue,
            "due_soon": self.due_soon,
            "due_today": self.due_today,
            "overdue": self.overdue,
            "skipped": self.skipped,
            "failed": self.failed,
            "sent": self.sent,
        }


def overdue_reminder_days(settings: models.TrainerSettings) -> tuple[int, ...]:
    raw = settings.invoice_reminder_overdue_days
    if raw is None:
        return DEFAULT_OVERDUE_REMINDER_DAYS
    days = set()
    for value in raw:
        try:
            day = int(value)
        except (TypeError, ValueError):
            LOGGER.warning("Ignoring invalid overdue reminder day %r", value)
            continue
        if day > 0:
            days.add(day)
    return tuple(sorted(days))


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class InvoiceReminderService:
    """Moves past-due invoices to OVERDUE and emails payment reminders.

    A SENT invoice becomes OVERDUE once its due date is before the start of
    the run day (UTC). Reminders follow each trainer's settings: a "due
    soon" email N days ahead, one on the due date, and overdue emails on the
    configured days after it. A reminder of the same kind is not repeated
    within 24 hours, and clients with invoice alerts off are skipped.
    """

    def __init__(self, db: Session, delivery: InvoiceDeliveryService) -> None:
        self.db = db
        self.delivery = delivery

    def run(
        self, today: Optional[date] = None, *, workspace_id: Optional[str] = None
    ) -> InvoiceReminderSummary:
        today = today or datetime.now(timezone.utc).date()
        summary = InvoiceReminderSummary()

        query = self.db.query(models.TrainerSettings).join(
            models.Trainer, models.Trainer.id == models.TrainerSettings.trainer_id
        )
        if workspace_id is not None:
            query = query.filter(models.Trainer.workspace_id == workspace_id)

        for settings in query.order_by(models.Trainer.full_name).all():
            summary.trainers += 1
            repository = WorkspaceRepository(self.db, settings.trainer.workspace_id)
            self._process_trainer(repository, settings, today, summary)

        self.db.commit()
        return summary

    def _process_trainer(
        self,
        repository: WorkspaceRepository,
        settings: models.TrainerSettings,
        today: date,
        summary: InvoiceReminderSummary,
    ) -> None:
        trainer_id = str(settings.trainer_id)
        day_start = _day_start(today)

        for invoice in repository.sent_invoices_due_before(trainer_id, day_start):
            invoice.status = models.InvoiceStatus.OVERDUE
            summary.marked_overdue += 1
            LOGGER.info("Invoice %s is past due; marked OVERDUE", invoice.id)
        self.db.flush()

        days_ahead = settings.invoice_reminder_before_due_days or 0
        if settings.invoice_reminder_before_due and days_ahead > 0:
            start = day_start + timedelta(days=days_ahead)
            self._remind_all(
                repository,
                repository.invoices_due_between(
                    trainer_id, [models.InvoiceStatus.SENT], start=start, end=start + ONE_DAY
                ),
                models.ReminderType.DUE_SOON,
                summary,
            )

        if settings.invoice_reminder_on_due:
            self._remind_all(
                repository,
                repository.invoices_due_between(
                    trainer_id,
                    [models.InvoiceStatus.SENT],
                    start=day_start,
                    end=day_start + ONE_DAY,
                ),
                models.ReminderType.DUE_TODAY,
                summary,
            )

        if settings.invoice_reminder_overdue:
            for days in overdue_reminder_days(settings):
                start = day_start - timedelta(days=days)
                self._remind_all(
                    repository,
                    repository.invoices_due_between(
                        trainer_id,
                        [models.InvoiceStatus.OVERDUE],
                        start=start,
                        end=start + ONE_DAY,
                    ),
                    models.ReminderType.OVERDUE,
                    summary,
                )

    def _remind_all(
        self,
        repository: WorkspaceRepository,
        invoices: Iterable[models.Invoice],
        reminder_type: models.ReminderType,
        summary: InvoiceReminderSummary,
    ) -> None:
        cutoff = datetime.now(timezone.utc) - REMINDER_COOLDOWN
        for invoice in invoices:
            profile = invoice.client.profile if invoice.client is not None else None
            if profile is not None and not profile.invoice_alerts_enabled:
                LOGGER.debug("Invoice alerts disabled for client %s", invoice.client_id)
                summary.skipped += 1
                continue
            if repository.reminder_sent_since(invoice.id, reminder_type, cutoff):
                LOGGER.debug("Skipping repeated %s reminder for %s", reminder_type.value, invoice.id)
                summary.skipped += 1
                continue

            result = self.delivery.send_reminder(invoice, reminder_type)
            if not result.success:
                summary.failed += 1
            elif reminder_type is models.ReminderType.DUE_SOON:
                summary.due_soon += 1
            elif reminder_type is models.ReminderType.DUE_TODAY:
                summary.due_today += 1
            else:
                summary.overdue += 1


_reminder_thread: Optional[threading.Thread] = None
_reminder_stop = threading.Event()


def _execute_reminder_cycle() -> None:
    try:
        client = build_notification_client_from_env()
    except ConfigurationError as exc:  # pragma: no cover
        LOGGER.error("Unable to configure the invoice email transport: %s", exc)
        return

    try:
        with session_scope() as session:
            service = InvoiceReminderService(session, InvoiceDeliveryService(session, client))
            summary = service.run()
            LOGGER.info("Invoice reminder run: %s", summary.to_dict())
    except Exception as exc:  # pragma: no cover
        LOGGER.exception("Invoice reminder cycle failed: %s", exc)


def _reminder_worker() -> None:
    run_hour = min(max(_read_int("INVOICE_REMINDER_RUN_HOUR", 9), 0), 23)
    run_minute = min(max(_read_int("INVOICE_REMINDER_RUN_MINUTE", 0), 0), 59)

    if _read_bool("INVOICE_REMINDER_RUN_ON_START", False):
        _execute_reminder_cycle()

    while not _reminder_stop.is_set():
        wait_seconds = _seconds_until_next_run(datetime.now(timezone.utc), run_hour, run_minute)
        if _reminder_stop.wait(wait_seconds):
            break
        _execute_reminder_cycle()


def start_invoice_reminder_scheduler() -> None:
    """Start the background worker that sends invoice reminders daily."""

    global _reminder_thread
    if _reminder_thread and _reminder_thread.is_alive():
        return

    _reminder_stop.clear()
    _reminder_thread = threading.Thread(target=_reminder_worker, daemon=True)
    _reminder_thread.start()
    LOGGER.info("Invoice reminder scheduler started.")


def stop_invoice_reminder_scheduler() -> None:
    """Stop the invoice reminder background worker."""

    _reminder_stop.set()
    if _reminder_thread and _reminder_thread.is_alive():
        _reminder_thread.join(timeout=5)
        LOGGER.info("Invoice reminder scheduler stopped.")
