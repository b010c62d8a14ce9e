"""Invoice generation: prepaid top-ups, per-session and monthly invoices."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import session_scope
from ..db_types import to_money
from ..repository import WorkspaceRepository
from . import billing_state
from .billing_periods import BillingPeriod
from .invoice_delivery import (
    ConfigurationError,
    DeliveryOutcome,
    InvoiceDeliveryService,
    build_notification_client_from_env,
)
from .ledger import (
    ClientProfileNotFoundError,
    LedgerConflictError,
    LedgerStore,
    PrepaidServiceError,
    current_balance,
    format_money,
    retry_on_conflict,
    target_balance,
)
from .rates import RateResolver

LOGGER = logging.getLogger(__name__)

DEFAULT_DUE_DAYS_ENV = "DEFAULT_INVOICE_DUE_DAYS"
DEFAULT_INVOICE_DUE_DAYS = 30

TOP_UP_LINE_DESCRIPTION = "Prepaid balance top-up"
TOP_UP_ADJUSTMENT_DESCRIPTION = "Prepaid balance adjustment"
TOP_UP_NOTE_MARKER = "Prepaid balance replenishment"
TOP_UP_PAID_DESCRIPTION = "Prepaid balance replenishment - invoice paid"
CREDIT_APPLIED_DESCRIPTION = "Credit applied to invoice"


class InvoiceServiceError(RuntimeError):
    """Raised when invoices cannot be created or updated."""


@dataclass
class LineDraft:
    """Line item waiting to be attached to a new invoice."""

    description: str
    unit_price: Decimal
    quantity: int = 1
    appointment_id: Optional[str] = None
    is_group: bool = False

    @property
    def total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class MonthlyInvoicePreview:
    """Read-only projection of a client's next monthly invoice."""

    client_id: str
    trainer_id: str
    billing_period: str
    period_label: str
    issue_date: date
    auto_invoice_enabled: bool
    already_invoiced: bool
    lines: list[LineDraft]
    subtotal: Decimal
    credit_applied: Decimal
    amount: Decimal
    scheduled_sessions: int = 0
    projected_subtotal: Decimal = Decimal("0.00")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid value for %s=%s; using %s", name, raw, default)
        return default


def _read_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def is_top_up_invoice(invoice: models.Invoice) -> bool:
    return bool(invoice.is_prepaid_top_up) or TOP_UP_NOTE_MARKER in (invoice.notes or "")


class InvoiceService:
    """Builds invoices for one workspace and hands them to delivery."""

    def __init__(
        self, repository: WorkspaceRepository, delivery: InvoiceDeliveryService
    ) -> None:
        self.repository = repository
        self.db = repository.db
        self.delivery = delivery
        self.rates = RateResolver(repository)
        self.ledger = LedgerStore(repository)

    def due_date_for(self, trainer_id: str, issued_at: datetime) -> datetime:
        settings = self.repository.get_trainer_settings(trainer_id)
        due_days = None if settings is None else settings.default_invoice_due_days
        if due_days is None:
            due_days = max(_read_int(DEFAULT_DUE_DAYS_ENV, DEFAULT_INVOICE_DUE_DAYS), 0)
        return issued_at + timedelta(days=due_days)

    def generate_top_up_invoice(self, client_id: str, trainer_id: str) -> Optional[str]:
        """Bill a prepaid client back up to their target balance.

        Returns ``None`` when no top-up applies, the id of an already open
        top-up invoice when one exists, or the id of the new invoice.
        """

        profile = self.repository.get_profile_for_client(client_id)
        if profile is None or profile.billing_frequency is not models.BillingFrequency.PREPAID:
            return None
        if self.repository.get_trainer(trainer_id) is None:
            LOGGER.info("Skipping top-up for client %s: trainer %s not found", client_id, trainer_id)
            return None

        balance = current_balance(profile)
        target = target_balance(profile)
        if target <= 0 or balance >= target:
            return None

        existing = self.repository.open_top_up_invoice(client_id)
        if existing is not None:
            LOGGER.debug("Client %s already has open top-up invoice %s", client_id, existing.id)
            return str(existing.id)

        amount = target - balance
        lines = [
            LineDraft(
                description=deduction.description or "Training session",
                unit_price=to_money(deduction.amount),
                appointment_id=deduction.appointment_id,
            )
            for deduction in self.repository.deductions_since_last_credit(profile.id)
        ]
        deducted = sum((line.total for line in lines), Decimal("0.00"))
        if not lines or deducted > amount:
            # Sessions worth more than the top-up (target lowered since) are not itemised.
            lines = [LineDraft(description=TOP_UP_LINE_DESCRIPTION, unit_price=amount)]
        elif deducted < amount:
            lines.append(
                LineDraft(description=TOP_UP_ADJUSTMENT_DESCRIPTION, unit_price=amount - deducted)
            )

        notes = (
            f"{TOP_UP_NOTE_MARKER} to {format_money(target)}. "
            f"Current balance: {format_money(balance)}"
        )
        try:
            invoice = self._persist_invoice(
                client_id,
                trainer_id,
                lines,
                is_top_up=True,
                notes=notes,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.repository.open_top_up_invoice(client_id)
            if existing is None:
                raise InvoiceServiceError("Unable to create the top-up invoice at this time.")
            return str(existing.id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise InvoiceServiceError("Unable to create the top-up invoice at this time.") from exc

        LOGGER.info(
            "Created top-up invoice %s for client %s (%s)", invoice.id, client_id, amount
        )
        self.delivery.deliver(invoice)
        return str(invoice.id)

    def generate_per_session_invoice(self, appointment_id: str) -> Optional[str]:
        appointment = self.repository.get_appointment(appointment_id)
        if appointment is None or appointment.status is not models.AppointmentStatus.COMPLETED:
            return None

        profile = self.repository.get_profile_for_client(appointment.client_id)
        if profile is None:
            return None
        if profile.billing_frequency is not models.BillingFrequency.PER_SESSION:
            return None
        if not profile.auto_invoice_enabled:
            LOGGER.debug("Auto-invoicing disabled for client %s", appointment.client_id)
            return None
        if self.repository.appointment_is_invoiced(appointment.id):
            LOGGER.debug("Appointment %s already invoiced", appointment.id)
            return None

        price = self.rates.price_appointment(appointment, profile)
        line = LineDraft(
            description=price.description,
            unit_price=price.amount,
            appointment_id=appointment.id,
            is_group=price.is_group,
        )
        profile = self._lock_profile(appointment.client_id, models.BillingFrequency.PER_SESSION)
        if profile is None:
            return None
        invoice = self._commit_new_invoice(
            appointment.client_id,
            appointment.trainer_id,
            [line],
            profile=profile,
            failure_message="Unable to create the session invoice at this time.",
        )
        self.delivery.deliver(invoice)
        return str(invoice.id)

    def generate_monthly_invoice(
        self,
        client_id: str,
        trainer_id: str,
        reference_date: Optional[date] = None,
    ) -> Optional[str]:
        """Invoice the completed sessions of the month before ``reference_date``."""

        profile = self.repository.get_profile_for_client(client_id)
        if profile is None or profile.billing_frequency is not models.BillingFrequency.MONTHLY:
            return None
        if not profile.auto_invoice_enabled:
            return None

        period_key = BillingPeriod.previous_key(reference_date or date.today())
        if self.repository.period_invoice_exists(client_id, trainer_id, period_key):
            LOGGER.debug("Client %s already invoiced for %s", client_id, period_key)
            return None

        lines = self._monthly_lines(profile, client_id, trainer_id, period_key)
        if not lines:
            return None

        profile = self._lock_profile(client_id, models.BillingFrequency.MONTHLY)
        if profile is None:
            return None
        invoice = self._commit_new_invoice(
            client_id,
            trainer_id,
            lines,
            profile=profile,
            billing_period=period_key,
            notes=f"Monthly invoice for {BillingPeriod.label(period_key)}",
            failure_message="Unable to create the monthly invoice at this time.",
        )
        self.delivery.deliver(invoice)
        return str(invoice.id)

    def preview_monthly_invoice(
        self,
        client_id: str,
        trainer_id: str,
        reference_date: Optional[date] = None,
    ) -> Optional[MonthlyInvoicePreview]:
        """Show what the monthly invoice issued on ``reference_date`` would hold.

        ``reference_date`` defaults to the trainer's next invoicing day. The
        lines and the credit are computed exactly as ``generate_monthly_invoice``
        computes them, but nothing is written.
        """

        profile = self.repository.get_profile_for_client(client_id)
        if profile is None or self.repository.get_trainer(trainer_id) is None:
            return None
        if profile.billing_frequency is not models.BillingFrequency.MONTHLY:
            raise ValueError("Client is not billed monthly")

        if reference_date is None:
            settings = self.repository.get_trainer_settings(trainer_id)
            invoice_day = settings.monthly_invoice_day if settings is not None else 1
            reference_date = BillingPeriod.next_issue_date(date.today(), invoice_day)
        period_key = BillingPeriod.previous_key(reference_date)

        lines = self._monthly_lines(profile, client_id, trainer_id, period_key)
        subtotal = sum((line.total for line in lines), Decimal("0.00"))
        _, effects = billing_state.apply_invoice_credit(
            billing_state.BillingState.from_profile(profile), subtotal
        )
        credit = billing_state.effect_amount(effects, billing_state.BillingEffect.APPLY_CREDIT)

        start, end = BillingPeriod.bounds(period_key)
        upcoming = self.repository.scheduled_appointments_between(
            client_id,
            trainer_id,
            start=max(start, datetime.now(timezone.utc)),
            end=end,
        )
        projected = subtotal + sum(
            (self.rates.price_appointment(appointment, profile).amount for appointment in upcoming),
            Decimal("0.00"),
        )

        return MonthlyInvoicePreview(
            client_id=client_id,
            trainer_id=trainer_id,
            billing_period=period_key,
            period_label=BillingPeriod.label(period_key),
            issue_date=reference_date,
            auto_invoice_enabled=bool(profile.auto_invoice_enabled),
            already_invoiced=self.repository.period_invoice_exists(
                client_id, trainer_id, period_key
            ),
            lines=lines,
            subtotal=subtotal,
            credit_applied=credit,
            amount=subtotal - credit,
            scheduled_sessions=len(upcoming),
            projected_subtotal=to_money(projected),
        )

    def update_status(
        self, invoice_id: str, status: models.InvoiceStatus | str
    ) -> Optional[models.Invoice]:
        """Move an invoice to ``status``; paying a top-up credits the balance."""

        new_status = models.InvoiceStatus(status)
        invoice = self.repository.get_invoice(invoice_id, for_update=True)
        if invoice is None:
            return None

        previous = models.InvoiceStatus(invoice.status)
        if previous is new_status:
            return invoice
        if previous is models.InvoiceStatus.CANCELLED:
            raise ValueError("Cancelled invoices cannot change status")
        if previous is models.InvoiceStatus.PAID:
            raise ValueError("Paid invoices cannot change status")

        try:
            if new_status is models.InvoiceStatus.PAID:
                invoice.paid_at = datetime.now(timezone.utc)
                if is_top_up_invoice(invoice):
                    self._credit_paid_top_up(invoice)
            invoice.status = new_status
            self.db.add(invoice)
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except IntegrityError as exc:
            self.db.rollback()
            raise ValueError("Client already has an open top-up invoice") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise InvoiceServiceError("Unable to update the invoice at this time.") from exc

        LOGGER.info("Invoice %s moved from %s to %s", invoice_id, previous.value, new_status.value)
        return invoice

    def send_invoice(self, invoice_id: str) -> Optional[DeliveryOutcome]:
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None:
            return None
        if invoice.status is models.InvoiceStatus.CANCELLED:
            raise ValueError("Cancelled invoices cannot be sent")
        return self.delivery.deliver(invoice)

    def _credit_paid_top_up(self, invoice: models.Invoice) -> None:
        profile = self.repository.get_profile_for_client(invoice.client_id, for_update=True)
        if profile is None:
            raise ClientProfileNotFoundError(f"Client profile not found for client {invoice.client_id}")
        amount = to_money(invoice.amount)
        if amount <= 0:
            return
        state = billing_state.BillingState.from_profile(profile)
        new_state, _ = billing_state.add_credit(state, amount)
        self.ledger.record_credit(
            profile,
            amount,
            TOP_UP_PAID_DESCRIPTION,
            billing_frequency=new_state.frequency if new_state.frequency != state.frequency else None,
        )

    def _monthly_lines(
        self,
        profile: models.ClientProfile,
        client_id: str,
        trainer_id: str,
        period_key: str,
    ) -> list[LineDraft]:
        start, end = BillingPeriod.bounds(period_key)
        lines = []
        for appointment in self.repository.completed_appointments_between(
            client_id, trainer_id, start=start, end=end
        ):
            if self.repository.appointment_is_invoiced(appointment.id):
                continue
            price = self.rates.price_appointment(appointment, profile)
            lines.append(
                LineDraft(
                    description=price.description,
                    unit_price=price.amount,
                    appointment_id=appointment.id,
                    is_group=price.is_group,
                )
            )
        return lines

    def _lock_profile(
        self, client_id: str, frequency: models.BillingFrequency
    ) -> Optional[models.ClientProfile]:
        """Row-lock the profile just before an invoice is written."""

        profile = self.repository.get_profile_for_client(client_id, for_update=True)
        if profile is None or profile.billing_frequency is not frequency:
            self.db.rollback()
            return None
        return profile

    def _commit_new_invoice(
        self,
        client_id: str,
        trainer_id: str,
        lines: Sequence[LineDraft],
        *,
        profile: models.ClientProfile,
        failure_message: str,
        billing_period: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Invoice:
        try:
            invoice = self._persist_invoice(
                client_id,
                trainer_id,
                lines,
                credit_profile=profile,
                billing_period=billing_period,
                notes=notes,
            )
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise InvoiceServiceError(failure_message) from exc

        LOGGER.info(
            "Created invoice %s for client %s: subtotal %s, credit %s",
            invoice.id,
            client_id,
            invoice.subtotal,
            invoice.credit_applied,
        )
        return invoice

    def _persist_invoice(
        self,
        client_id: str,
        trainer_id: str,
        lines: Sequence[LineDraft],
        *,
        credit_profile: Optional[models.ClientProfile] = None,
        is_top_up: bool = False,
        billing_period: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Invoice:
        subtotal = sum((line.total for line in lines), Decimal("0.00"))
        credit = Decimal("0.00")
        if credit_profile is not None:
            state = billing_state.BillingState.from_profile(credit_profile)
            _, effects = billing_state.apply_invoice_credit(state, subtotal)
            credit = billing_state.effect_amount(effects, billing_state.BillingEffect.APPLY_CREDIT)
            if credit > 0:
                self.ledger.record_deduction(credit_profile, credit, CREDIT_APPLIED_DESCRIPTION)

        issued_at = datetime.now(timezone.utc)
        invoice = models.Invoice(
            workspace_id=self.repository.workspace_id,
            client_id=client_id,
            trainer_id=trainer_id,
            subtotal=subtotal,
            credit_applied=credit,
            amount=subtotal - credit,
            status=models.InvoiceStatus.SENT,
            due_date=self.due_date_for(trainer_id, issued_at),
            is_prepaid_top_up=is_top_up,
            billing_period=billing_period,
            notes=notes,
            sent_at=issued_at,
        )
        for position, line in enumerate(lines):
            invoice.line_items.append(
                models.InvoiceLineItem(
                    position=position,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=to_money(line.unit_price),
                    total=line.total,
                    appointment_id=line.appointment_id,
                )
            )
        self.db.add(invoice)
        self.db.flush()
        return invoice


@dataclass
class MonthlyInvoiceRunSummary:
    """Aggregate statistics after a monthly invoicing run."""

    trainers: int = 0
    attempted: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    invoice_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "trainers": self.trainers,
            "attempted": self.attempted,
            "generated": self.generated,
            "skipped": self.skipped,
            "failed": self.failed,
            "invoice_ids": list(self.invoice_ids),
        }


def process_monthly_invoices(
    db: Session,
    delivery: InvoiceDeliveryService,
    reference_date: Optional[date] = None,
    *,
    workspace_id: Optional[str] = None,
) -> MonthlyInvoiceRunSummary:
    """Generate monthly invoices for trainers whose invoicing day is today.

    Every workspace is processed unless ``workspace_id`` narrows the run.
    """

    today = reference_date or date.today()
    summary = MonthlyInvoiceRunSummary()
    query = (
        db.query(models.Trainer)
        .join(models.TrainerSettings, models.TrainerSettings.trainer_id == models.Trainer.id)
        .filter(models.TrainerSettings.auto_invoicing_enabled.is_(True))
        .filter(models.TrainerSettings.monthly_invoice_day == today.day)
    )
    if workspace_id is not None:
        query = query.filter(models.Trainer.workspace_id == workspace_id)
    trainers = query.order_by(models.Trainer.full_name).all()
    work = [(str(trainer.id), trainer.workspace_id) for trainer in trainers]

    for trainer_id, trainer_workspace in work:
        summary.trainers += 1
        service = InvoiceService(WorkspaceRepository(db, trainer_workspace), delivery)
        client_ids = [
            str(client.id)
            for client in service.repository.monthly_clients_for_trainer(trainer_id)
        ]
        for client_id in client_ids:
            summary.attempted += 1
            try:
                invoice_id = retry_on_conflict(
                    lambda: service.generate_monthly_invoice(client_id, trainer_id, today)
                )
            except (InvoiceServiceError, PrepaidServiceError) as exc:
                LOGGER.exception(
                    "Monthly invoice failed for client %s of trainer %s: %s",
                    client_id,
                    trainer_id,
                    exc,
                )
                summary.failed += 1
                continue
            if invoice_id is None:
                summary.skipped += 1
            else:
                summary.generated += 1
                summary.invoice_ids.append(invoice_id)

    return summary


_monthly_thread: Optional[threading.Thread] = None
_monthly_stop = threading.Event()


def _seconds_until_next_run(now: datetime, run_hour: int, run_minute: int) -> float:
    scheduled_time = time(hour=run_hour, minute=run_minute, tzinfo=timezone.utc)
    next_run = datetime.combine(now.date(), scheduled_time)
    if next_run <= now:
        next_run += timedelta(days=1)
    return max((next_run - now).total_seconds(), 60.0)


def _execute_monthly_cycle() -> None:
    try:
        client = build_notification_client_from_env()
    except ConfigurationError as exc:  # pragma: no cover
        LOGGER.error("Unable to configure the invoice email transport: %s", exc)
        return

    try:
        with session_scope() as session:
            summary = process_monthly_invoices(session, InvoiceDeliveryService(session, client))
            LOGGER.info("Monthly invoicing run: %s", summary.to_dict())
    except Exception as exc:  # pragma: no cover
        LOGGER.exception("Monthly invoicing cycle failed: %s", exc)


def _monthly_worker() -> None:
    run_hour = min(max(_read_int("MONTHLY_INVOICE_RUN_HOUR", 6), 0), 23)
    run_minute = min(max(_read_int("MONTHLY_INVOICE_RUN_MINUTE", 0), 0), 59)

    if _read_bool("MONTHLY_INVOICE_RUN_ON_START", False):
        _execute_monthly_cycle()

    while not _monthly_stop.is_set():
        wait_seconds = _seconds_until_next_run(datetime.now(timezone.utc), run_hour, run_minute)
        if _monthly_stop.wait(wait_seconds):
            break
        _execute_monthly_cycle()


def start_monthly_invoice_scheduler() -> None:
    """Start the background worker that issues monthly invoices daily."""

    global _monthly_thread
    if _monthly_thread and _monthly_thread.is_alive():
        return

    _monthly_stop.clear()
    _monthly_thread = threading.Thread(target=_monthly_worker, daemon=True)
    _monthly_thread.start()
    LOGGER.info("Monthly invoice scheduler started.")


def stop_monthly_invoice_scheduler() -> None:
    """Stop the monthly invoice background worker."""

    _monthly_stop.set()
    if _monthly_thread and _monthly_thread.is_alive():
        _monthly_thread.join(timeout=5)
        LOGGER.info("Monthly invoice scheduler stopped.")
