"""Billing dispatch for completed appointments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .. import models
from ..repository import WorkspaceRepository
from .invoices import InvoiceService
from .ledger import retry_on_conflict
from .prepaid import DeductionResult, PrepaidService

LOGGER = logging.getLogger(__name__)


@dataclass
class SessionBillingOutcome:
    appointment_id: str
    billing_frequency: Optional[models.BillingFrequency]
    deduction: Optional[DeductionResult] = None
    invoice_id: Optional[str] = None
    top_up_invoice_id: Optional[str] = None

    @property
    def amount_deducted(self) -> Decimal:
        if self.deduction is None:
            return Decimal("0.00")
        return self.deduction.amount_deducted


class SessionBillingService:
    """Routes a completed appointment to the billing path of its client."""

    def __init__(
        self,
        repository: WorkspaceRepository,
        prepaid: PrepaidService,
        invoices: InvoiceService,
    ) -> None:
        self.repository = repository
        self.prepaid = prepaid
        self.invoices = invoices

    def handle_completed_appointment(self, appointment_id: str) -> Optional[SessionBillingOutcome]:
        appointment = self.repository.get_appointment(appointment_id)
        if appointment is None:
            return None
        if appointment.status is not models.AppointmentStatus.COMPLETED:
            raise ValueError("Only completed appointments can be billed")

        profile = self.repository.get_profile_for_client(appointment.client_id)
        if profile is None:
            LOGGER.info("Client %s has no billing profile; nothing to bill", appointment.client_id)
            return SessionBillingOutcome(appointment_id=str(appointment.id), billing_frequency=None)

        frequency = models.BillingFrequency(profile.billing_frequency)
        client_id = str(appointment.client_id)
        trainer_id = str(appointment.trainer_id)
        outcome = SessionBillingOutcome(
            appointment_id=str(appointment.id), billing_frequency=frequency
        )

        if frequency is models.BillingFrequency.PREPAID:
            outcome.deduction = retry_on_conflict(
                lambda: self.prepaid.deduct_session(appointment_id)
            )
            if outcome.deduction.should_generate_invoice:
                outcome.top_up_invoice_id = self.invoices.generate_top_up_invoice(
                    client_id, trainer_id
                )
        elif frequency is models.BillingFrequency.PER_SESSION:
            outcome.invoice_id = retry_on_conflict(
                lambda: self.invoices.generate_per_session_invoice(appointment_id)
            )
        else:
            LOGGER.debug("Appointment %s will be billed on the monthly run", appointment_id)

        return outcome
