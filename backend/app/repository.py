"""Workspace-scoped data access used by the billing services."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, TypeVar

from sqlalchemy import and_
from sqlalchemy.orm import Query, Session

from . import models

ModelT = TypeVar("ModelT")

_ACTIVE_APPOINTMENT_STATUSES = (
    models.AppointmentStatus.SCHEDULED,
    models.AppointmentStatus.COMPLETED,
)


class WorkspaceRepository:
    """Read and lock rows belonging to a single workspace.

    Every query issued through the repository is filtered by ``workspace_id``;
    callers never add the tenant predicate themselves.
    """

    def __init__(self, db: Session, workspace_id: str) -> None:
        if not workspace_id or not str(workspace_id).strip():
            raise ValueError("workspace_id is required")
        self.db = db
        self.workspace_id = str(workspace_id).strip()

    def query(self, model: type[ModelT]) -> Query:
        return self.db.query(model).filter(model.workspace_id == self.workspace_id)

    def _locking(self, query: Query, for_update: bool) -> Query:
        if not for_update:
            return query
        bind = self.db.get_bind()
        if bind.dialect.name != "sqlite":
            query = query.with_for_update().populate_existing()
        return query

    def get_appointment(self, appointment_id: str) -> Optional[models.Appointment]:
        return (
            self.query(models.Appointment)
            .filter(models.Appointment.id == appointment_id)
            .first()
        )

    def get_client(self, client_id: str) -> Optional[models.Client]:
        return self.query(models.Client).filter(models.Client.id == client_id).first()

    def get_trainer(self, trainer_id: str) -> Optional[models.Trainer]:
        return self.query(models.Trainer).filter(models.Trainer.id == trainer_id).first()

    def get_trainer_settings(self, trainer_id: str) -> Optional[models.TrainerSettings]:
        return (
            self.db.query(models.TrainerSettings)
            .join(models.Trainer, models.Trainer.id == models.TrainerSettings.trainer_id)
            .filter(models.Trainer.workspace_id == self.workspace_id)
            .filter(models.TrainerSettings.trainer_id == trainer_id)
            .first()
        )

    def get_profile(
        self, profile_id: str, *, for_update: bool = False
    ) -> Optional[models.ClientProfile]:
        query = self.query(models.ClientProfile).filter(models.ClientProfile.id == profile_id)
        return self._locking(query, for_update).first()

    def get_profile_for_client(
        self, client_id: str, *, for_update: bool = False
    ) -> Optional[models.ClientProfile]:
        query = self.query(models.ClientProfile).filter(
            models.ClientProfile.client_id == client_id
        )
        return self._locking(query, for_update).first()

    def get_invoice(
        self, invoice_id: str, *, for_update: bool = False
    ) -> Optional[models.Invoice]:
        query = self.query(models.Invoice).filter(models.Invoice.id == invoice_id)
        return self._locking(query, for_update).first()

    def find_session_peers(
        self,
        appointment: models.Appointment,
        matching: models.GroupSessionMatching,
    ) -> list[models.Appointment]:
        """Return the trainer's other live bookings sharing the appointment window."""

        Appointment = models.Appointment
        if matching is models.GroupSessionMatching.START_MATCH:
            window = Appointment.start_time == appointment.start_time
        elif matching is models.GroupSessionMatching.END_MATCH:
            window = Appointment.end_time == appointment.end_time
        elif matching is models.GroupSessionMatching.ANY_OVERLAP:
            window = and_(
                Appointment.start_time < appointment.end_time,
                Appointment.end_time > appointment.start_time,
            )
        else:
            window = and_(
                Appointment.start_time == appointment.start_time,
                Appointment.end_time == appointment.end_time,
            )

        return (
            self.query(Appointment)
            .filter(Appointment.trainer_id == appointment.trainer_id)
            .filter(Appointment.id != appointment.id)
            .filter(Appointment.status.in_(_ACTIVE_APPOINTMENT_STATUSES))
            .filter(window)
            .all()
        )

    def next_scheduled_appointment(
        self, client_id: str, trainer_id: str, *, after: datetime
    ) -> Optional[models.Appointment]:
        return (
            self.query(models.Appointment)
            .filter(models.Appointment.client_id == client_id)
            .filter(models.Appointment.trainer_id == trainer_id)
            .filter(models.Appointment.status == models.AppointmentStatus.SCHEDULED)
            .filter(models.Appointment.start_time > after)
            .order_by(models.Appointment.start_time)
            .first()
        )

    def completed_appointments_between(
        self, client_id: str, trainer_id: str, *, start: datetime, end: datetime
    ) -> list[models.Appointment]:
        return (
            self.query(models.Appointment)
            .filter(models.Appointment.client_id == client_id)
            .filter(models.Appointment.trainer_id == trainer_id)
            .filter(models.Appointment.status == models.AppointmentStatus.COMPLETED)
            .filter(models.Appointment.start_time >= start)
            .filter(models.Appointment.start_time < end)
            .order_by(models.Appointment.start_time)
            .all()
        )

    def scheduled_appointments_between(
        self, client_id: str, trainer_id: str, *, start: datetime, end: datetime
    ) -> list[models.Appointment]:
        return (
            self.query(models.Appointment)
            .filter(models.Appointment.client_id == client_id)
            .filter(models.Appointment.trainer_id == trainer_id)
            .filter(models.Appointment.status == models.AppointmentStatus.SCHEDULED)
            .filter(models.Appointment.start_time >= start)
            .filter(models.Appointment.start_time < end)
            .order_by(models.Appointment.start_time)
            .all()
        )

    def invoices_due_between(
        self,
        trainer_id: str,
        statuses: Iterable[models.InvoiceStatus],
        *,
        start: datetime,
        end: datetime,
    ) -> list[models.Invoice]:
        return (
            self.query(models.Invoice)
            .filter(models.Invoice.trainer_id == trainer_id)
            .filter(models.Invoice.status.in_(list(statuses)))
            .filter(models.Invoice.due_date >= start)
            .filter(models.Invoice.due_date < end)
            .order_by(models.Invoice.due_date)
            .all()
        )

    def sent_invoices_due_before(self, trainer_id: str, cutoff: datetime) -> list[models.Invoice]:
        return (
            self.query(models.Invoice)
            .filter(models.Invoice.trainer_id == trainer_id)
            .filter(models.Invoice.status == models.InvoiceStatus.SENT)
            .filter(models.Invoice.due_date < cutoff)
            .order_by(models.Invoice.due_date)
            .all()
        )

    def reminder_sent_since(
        self, invoice_id: str, reminder_type: models.ReminderType, since: datetime
    ) -> bool:
        return (
            self.db.query(models.InvoiceReminderLog.id)
            .filter(models.InvoiceReminderLog.invoice_id == invoice_id)
            .filter(models.InvoiceReminderLog.reminder_type == reminder_type)
            .filter(models.InvoiceReminderLog.delivery_status == models.DeliveryStatus.SENT)
            .filter(models.InvoiceReminderLog.created_at >= since)
            .first()
            is not None
        )

    def open_top_up_invoice(self, client_id: str) -> Optional[models.Invoice]:
        return (
            self.query(models.Invoice)
            .filter(models.Invoice.client_id == client_id)
            .filter(models.Invoice.is_prepaid_top_up.is_(True))
            .filter(models.Invoice.status.in_(models.OPEN_INVOICE_STATUSES))
            .order_by(models.Invoice.created_at.desc())
            .first()
        )

    def appointment_is_invoiced(self, appointment_id: str) -> bool:
        return (
            self.db.query(models.InvoiceLineItem.id)
            .join(models.Invoice, models.Invoice.id == models.InvoiceLineItem.invoice_id)
            .filter(models.Invoice.workspace_id == self.workspace_id)
            .filter(models.Invoice.status != models.InvoiceStatus.CANCELLED)
            .filter(models.InvoiceLineItem.appointment_id == appointment_id)
            .first()
            is not None
        )

    def period_invoice_exists(self, client_id: str, trainer_id: str, period_key: str) -> bool:
        return (
            self.query(models.Invoice)
            .filter(models.Invoice.client_id == client_id)
            .filter(models.Invoice.trainer_id == trainer_id)
            .filter(models.Invoice.billing_period == period_key)
            .filter(models.Invoice.status != models.InvoiceStatus.CANCELLED)
            .first()
            is not None
        )

    def deduction_for_appointment(
        self, appointment_id: str
    ) -> Optional[models.PrepaidTransaction]:
        return (
            self.query(models.PrepaidTransaction)
            .filter(models.PrepaidTransaction.appointment_id == appointment_id)
            .filter(
                models.PrepaidTransaction.transaction_type
                == models.PrepaidTransactionType.DEDUCTION
            )
            .first()
        )

    def latest_transaction(
        self,
        profile_id: str,
        transaction_type: Optional[models.PrepaidTransactionType] = None,
    ) -> Optional[models.PrepaidTransaction]:
        query = self.query(models.PrepaidTransaction).filter(
            models.PrepaidTransaction.client_profile_id == profile_id
        )
        if transaction_type is not None:
            query = query.filter(models.PrepaidTransaction.transaction_type == transaction_type)
        return query.order_by(models.PrepaidTransaction.sequence.desc()).first()

    def deductions_since_last_credit(self, profile_id: str) -> list[models.PrepaidTransaction]:
        """Deductions recorded after the newest credit, oldest first."""

        last_credit = self.latest_transaction(profile_id, models.PrepaidTransactionType.CREDIT)
        query = (
            self.query(models.PrepaidTransaction)
            .filter(models.PrepaidTransaction.client_profile_id == profile_id)
            .filter(
                models.PrepaidTransaction.transaction_type
                == models.PrepaidTransactionType.DEDUCTION
            )
        )
        if last_credit is not None:
            query = query.filter(models.PrepaidTransaction.sequence > last_credit.sequence)
        return query.order_by(models.PrepaidTransaction.sequence).all()

    def prepaid_profiles_for_trainer(
        self, trainer_id: str
    ) -> Iterable[tuple[models.ClientProfile, models.Client]]:
        return (
            self.db.query(models.ClientProfile, models.Client)
            .join(models.Client, models.Client.id == models.ClientProfile.client_id)
            .filter(models.ClientProfile.workspace_id == self.workspace_id)
            .filter(models.Client.workspace_id == self.workspace_id)
            .filter(models.Client.trainer_id == trainer_id)
            .filter(models.ClientProfile.billing_frequency == models.BillingFrequency.PREPAID)
            .order_by(models.Client.full_name)
            .all()
        )

    def monthly_clients_for_trainer(self, trainer_id: str) -> list[models.Client]:
        return (
            self.query(models.Client)
            .join(models.ClientProfile, models.ClientProfile.client_id == models.Client.id)
            .filter(models.Client.trainer_id == trainer_id)
            .filter(models.ClientProfile.billing_frequency == models.BillingFrequency.MONTHLY)
            .filter(models.ClientProfile.auto_invoice_enabled.is_(True))
            .order_by(models.Client.full_name)
            .all()
        )
