"""Prepaid balance operations: deductions, credits, billing switches and reporting."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from .. import models
from ..db_types import to_money
from ..repository import WorkspaceRepository
from . import billing_state
from .billing_state import BillingEffect, BillingState
from .invoices import InvoiceService, is_top_up_invoice
from .ledger import (
    BalanceStatus,
    ClientProfileNotFoundError,
    LedgerConflictError,
    LedgerStore,
    PrepaidServiceError,
    balance_status,
    current_balance,
    format_money,
    target_balance,
)
from .rates import RateResolver, SessionPrice

LOGGER = logging.getLogger(__name__)

ZERO = Decimal("0.00")
DEFAULT_CREDIT_DESCRIPTION = "Prepaid credit added"


@dataclass
class DeductionResult:
    success: bool
    new_balance: Decimal
    amount_deducted: Decimal
    should_generate_invoice: bool
    should_switch_to_per_session: bool = False

    @classmethod
    def not_applied(cls) -> "DeductionResult":
        return cls(
            success=False,
            new_balance=ZERO,
            amount_deducted=ZERO,
            should_generate_invoice=False,
        )


@dataclass
class CreditResult:
    new_balance: Decimal
    transaction: models.PrepaidTransaction


@dataclass
class BalanceCheckResult:
    invoice_generated: bool
    invoice_id: Optional[str] = None


@dataclass
class VoidResult:
    success: bool
    credit_amount: Decimal = ZERO
    new_billing_frequency: Optional[models.BillingFrequency] = None
    error: Optional[str] = None


@dataclass
class TransactionPage:
    transactions: Sequence[models.PrepaidTransaction]
    total: int


@dataclass
class PrepaidClientSummary:
    """Dashboard row for one prepaid client."""

    client_id: str
    client_name: str
    client_email: Optional[str]
    profile_id: str
    current_balance: Decimal
    target_balance: Decimal
    session_rate: Decimal
    balance_status: BalanceStatus
    sessions_consumed_since_last_credit: int
    last_transaction_date: Optional[datetime]


@dataclass
class PrepaidSummaryTotals:
    total_balance: Decimal = ZERO
    total_target: Decimal = ZERO
    client_count: int = 0
    clients_needing_attention: int = 0


@dataclass
class UpcomingSession:
    appointment_id: str
    start_time: datetime
    estimated_cost: Decimal
    is_group: bool


@dataclass
class ClientPrepaidDetail:
    client_id: str
    client_name: str
    profile_id: str
    billing_frequency: models.BillingFrequency
    current_balance: Decimal
    target_balance: Decimal
    session_rate: Decimal
    group_session_rate: Optional[Decimal]
    balance_status: BalanceStatus
    next_session: Optional[UpcomingSession] = None
    recent_transactions: Sequence[models.PrepaidTransaction] = field(default_factory=list)


class PrepaidService:
    """Prepaid ledger operations for one workspace.

    All business outcomes (missing rows, empty balances, nothing to invoice)
    come back as result values. Only storage failures raise, as
    :class:`PrepaidServiceError` or the retryable :class:`LedgerConflictError`.
    """

    def __init__(self, repository: WorkspaceRepository, invoices: InvoiceService) -> None:
        self.repository = repository
        self.db = repository.db
        self.invoices = invoices
        self.rates = RateResolver(repository)
        self.ledger = LedgerStore(repository)

    def deduct_session(self, appointment_id: str) -> DeductionResult:
        """Charge a completed appointment against the client's prepaid balance."""

        try:
            existing = self.repository.deduction_for_appointment(appointment_id)
            if existing is not None:
                LOGGER.info("Appointment %s already deducted; returning prior result", appointment_id)
                return self._replayed(existing)

            appointment = self.repository.get_appointment(appointment_id)
            if appointment is None:
                return DeductionResult.not_applied()
            profile = self.repository.get_profile_for_client(appointment.client_id)
            if profile is None:
                return DeductionResult.not_applied()
            if profile.billing_frequency is not models.BillingFrequency.PREPAID:
                LOGGER.debug("Client %s is not on prepaid billing", appointment.client_id)
                return DeductionResult.not_applied()

            if BillingState.from_profile(profile).balance <= 0:
                return DeductionResult(
                    success=False,
                    new_balance=ZERO,
                    amount_deducted=ZERO,
                    should_generate_invoice=True,
                )

            profile = self.repository.get_profile_for_client(
                appointment.client_id, for_update=True
            )
            state = BillingState.from_profile(profile)
            if state.frequency is not models.BillingFrequency.PREPAID or state.balance <= 0:
                self.db.rollback()
                return DeductionResult.not_applied()
            price = self.rates.price_appointment(appointment, profile)
            new_state, effects = billing_state.deduct_session(state, price.amount)
            deducted = billing_state.effect_amount(effects, BillingEffect.DEDUCT_SESSION)
            self.ledger.record_deduction(
                profile, deducted, price.description, appointment_id=appointment.id
            )
            should_invoice = self._needs_top_up(profile, appointment, new_state.balance)
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except IntegrityError as exc:
            self.db.rollback()
            existing = self.repository.deduction_for_appointment(appointment_id)
            if existing is None:
                raise PrepaidServiceError("Unable to deduct the session at this time.") from exc
            return self._replayed(existing)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PrepaidServiceError("Unable to deduct the session at this time.") from exc

        return DeductionResult(
            success=True,
            new_balance=new_state.balance,
            amount_deducted=deducted,
            should_generate_invoice=should_invoice,
        )

    def add_credit(
        self, client_id: str, amount: Decimal | str | float, notes: Optional[str] = None
    ) -> CreditResult:
        """Credit a client's balance, moving them onto prepaid billing."""

        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be greater than zero")

        try:
            profile = self.repository.get_profile_for_client(client_id, for_update=True)
            if profile is None:
                raise ClientProfileNotFoundError(f"Client profile not found for client {client_id}")
            state = BillingState.from_profile(profile)
            new_state, _ = billing_state.add_credit(state, amount)
            transaction = self.ledger.record_credit(
                profile,
                amount,
                notes or DEFAULT_CREDIT_DESCRIPTION,
                billing_frequency=(
                    new_state.frequency if new_state.frequency is not state.frequency else None
                ),
            )
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PrepaidServiceError("Unable to add prepaid credit at this time.") from exc

        return CreditResult(new_balance=new_state.balance, transaction=transaction)

    def check_balance_and_generate_invoice_if_needed(
        self, client_id: str, trainer_id: str
    ) -> BalanceCheckResult:
        """Issue a top-up invoice when the balance no longer covers a session."""

        profile = self.repository.get_profile_for_client(client_id)
        if profile is None or profile.billing_frequency is not models.BillingFrequency.PREPAID:
            return BalanceCheckResult(invoice_generated=False)

        balance = current_balance(profile)
        if balance > 0 and balance >= to_money(profile.session_rate):
            return BalanceCheckResult(invoice_generated=False)

        existing = self.repository.open_top_up_invoice(client_id)
        if existing is not None:
            return BalanceCheckResult(invoice_generated=False, invoice_id=str(existing.id))

        invoice_id = self.invoices.generate_top_up_invoice(client_id, trainer_id)
        return BalanceCheckResult(invoice_generated=invoice_id is not None, invoice_id=invoice_id)

    def switch_to_per_session(self, profile_id: str) -> None:
        """Move a client to per-session billing; the balance stays as credit."""

        try:
            profile = self.repository.get_profile(profile_id, for_update=True)
            if profile is None:
                raise ClientProfileNotFoundError(f"Client profile {profile_id} not found")
            state = BillingState.from_profile(profile)
            new_state, _ = billing_state.switch_to_per_session(state)
            if new_state.frequency is not state.frequency:
                self.ledger.change_frequency(profile, new_state.frequency)
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PrepaidServiceError("Unable to change the billing frequency at this time.") from exc

    def void_invoice_and_switch_billing(
        self, invoice_id: str, new_frequency: models.BillingFrequency | str
    ) -> VoidResult:
        """Cancel an open top-up invoice and keep the balance as retained credit."""

        new_frequency = models.BillingFrequency(new_frequency)
        if new_frequency not in billing_state.RETENTION_TARGETS:
            raise ValueError("New billing frequency must be PER_SESSION or MONTHLY")

        try:
            invoice = self.repository.get_invoice(invoice_id, for_update=True)
            if invoice is None:
                return VoidResult(success=False, error="Invoice not found")
            if not is_top_up_invoice(invoice):
                return VoidResult(success=False, error="Invoice is not a prepaid top-up invoice")
            if invoice.status is models.InvoiceStatus.PAID:
                return VoidResult(success=False, error="Cannot void a paid invoice")
            if invoice.status is models.InvoiceStatus.CANCELLED:
                return VoidResult(success=False, error="Invoice is already cancelled")

            profile = self.repository.get_profile_for_client(invoice.client_id, for_update=True)
            if profile is None:
                return VoidResult(success=False, error="Client profile not found")

            state = BillingState.from_profile(profile)
            new_state, effects = billing_state.void_top_up(state, new_frequency)
            retained = ZERO
            for effect in effects:
                if effect.kind is BillingEffect.CANCEL_TOP_UP:
                    invoice.status = models.InvoiceStatus.CANCELLED
                    self.db.add(invoice)
                elif effect.kind is BillingEffect.RETAIN_CREDIT:
                    retained = effect.amount
                    self.ledger.record_retention(
                        profile,
                        new_state.frequency,
                        f"Credit retained ({format_money(retained)}) - switching to "
                        f"{new_state.frequency.value} billing",
                    )
            if retained <= 0 and new_state.frequency is not state.frequency:
                self.ledger.change_frequency(profile, new_state.frequency)
            self.db.commit()
        except LedgerConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PrepaidServiceError("Unable to void the invoice at this time.") from exc

        LOGGER.info(
            "Voided top-up invoice %s; client moved to %s with %s retained",
            invoice_id,
            new_state.frequency.value,
            retained,
        )
        return VoidResult(
            success=True,
            credit_amount=retained,
            new_billing_frequency=new_state.frequency,
        )

    def get_transactions(
        self, profile_id: str, limit: int = 50, offset: int = 0
    ) -> TransactionPage:
        query = self.repository.query(models.PrepaidTransaction).filter(
            models.PrepaidTransaction.client_profile_id == profile_id
        )
        total = query.count()
        transactions = (
            query.options(selectinload(models.PrepaidTransaction.appointment))
            .order_by(models.PrepaidTransaction.sequence.desc())
            .offset(max(offset, 0))
            .limit(max(limit, 1))
            .all()
        )
        return TransactionPage(transactions=transactions, total=total)

    def get_prepaid_clients_summary(
        self, trainer_id: str, workspace_id: str
    ) -> list[PrepaidClientSummary]:
        if str(workspace_id) != self.repository.workspace_id:
            raise ValueError("Workspace does not match the active scope")

        summaries = []
        for profile, client in self.repository.prepaid_profiles_for_trainer(trainer_id):
            balance = current_balance(profile)
            target = target_balance(profile)
            last_transaction = self.repository.latest_transaction(profile.id)
            summaries.append(
                PrepaidClientSummary(
                    client_id=str(client.id),
                    client_name=client.full_name,
                    client_email=client.email,
                    profile_id=str(profile.id),
                    current_balance=balance,
                    target_balance=target,
                    session_rate=to_money(profile.session_rate),
                    balance_status=balance_status(balance, target),
                    sessions_consumed_since_last_credit=len(
                        self.repository.deductions_since_last_credit(profile.id)
                    ),
                    last_transaction_date=(
                        last_transaction.created_at if last_transaction is not None else None
                    ),
                )
            )
        return summaries

    @staticmethod
    def summarize_totals(summaries: Sequence[PrepaidClientSummary]) -> PrepaidSummaryTotals:
        totals = PrepaidSummaryTotals(client_count=len(summaries))
        for summary in summaries:
            totals.total_balance += summary.current_balance
            totals.total_target += summary.target_balance
            if summary.balance_status is not BalanceStatus.HEALTHY:
                totals.clients_needing_attention += 1
        return totals

    def get_client_prepaid_detail(self, client_id: str) -> Optional[ClientPrepaidDetail]:
        client = self.repository.get_client(client_id)
        if client is None or client.profile is None:
            return None
        profile = client.profile
        balance = current_balance(profile)
        target = target_balance(profile)

        next_session = None
        if client.trainer_id is not None:
            upcoming = self.repository.next_scheduled_appointment(
                client.id, client.trainer_id, after=datetime.now(timezone.utc)
            )
            if upcoming is not None:
                price = self.rates.price_appointment(upcoming, profile)
                next_session = UpcomingSession(
                    appointment_id=str(upcoming.id),
                    start_time=upcoming.start_time,
                    estimated_cost=price.amount,
                    is_group=price.is_group,
                )

        return ClientPrepaidDetail(
            client_id=str(client.id),
            client_name=client.full_name,
            profile_id=str(profile.id),
            billing_frequency=models.BillingFrequency(profile.billing_frequency),
            current_balance=balance,
            target_balance=target,
            session_rate=to_money(profile.session_rate),
            group_session_rate=(
                to_money(profile.group_session_rate)
                if profile.group_session_rate is not None
                else None
            ),
            balance_status=balance_status(balance, target),
            next_session=next_session,
            recent_transactions=self.get_transactions(profile.id, limit=10).transactions,
        )

    def _needs_top_up(
        self,
        profile: models.ClientProfile,
        appointment: models.Appointment,
        new_balance: Decimal,
    ) -> bool:
        """Lookahead: can the remaining balance pay for the next booked session?"""

        if new_balance <= 0:
            return True
        upcoming = self.repository.next_scheduled_appointment(
            appointment.client_id,
            appointment.trainer_id,
            after=datetime.now(timezone.utc),
        )
        if upcoming is not None:
            next_price: SessionPrice = self.rates.price_appointment(upcoming, profile)
            return new_balance < next_price.amount
        return new_balance < target_balance(profile)

    @staticmethod
    def _replayed(transaction: models.PrepaidTransaction) -> DeductionResult:
        return DeductionResult(
            success=True,
            new_balance=to_money(transaction.balance_after),
            amount_deducted=to_money(transaction.amount),
            should_generate_invoice=False,
        )
