"""Prepaid ledger store: balance writes and the append-only transaction log."""

from __future__ import annotations

import enum
import logging
import os
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .. import models
from ..db_types import to_money
from ..repository import WorkspaceRepository

LOGGER = logging.getLogger(__name__)

LOW_BALANCE_RATIO = Decimal("0.25")
CONFLICT_RETRIES_ENV = "LEDGER_CONFLICT_RETRIES"
DEFAULT_CONFLICT_RETRIES = 3

ResultT = TypeVar("ResultT")


class PrepaidServiceError(RuntimeError):
    """Raised when prepaid ledger operations cannot be completed."""


class ClientProfileNotFoundError(PrepaidServiceError):
    """Raised when a ledger write targets a missing client profile."""


class LedgerConflictError(PrepaidServiceError):
    """Raised when a concurrent write changed the balance first.

    The operation can be retried from scratch against fresh state.
    """

    retryable = True

    def __init__(self, profile_id: str) -> None:
        super().__init__(
            f"Prepaid balance for profile {profile_id} changed concurrently; retry the operation."
        )
        self.profile_id = profile_id


class BalanceStatus(str, enum.Enum):
    """Reporting classification of a prepaid balance."""

    HEALTHY = "healthy"
    LOW = "low"
    EMPTY = "empty"


def current_balance(profile: models.ClientProfile) -> Decimal:
    return to_money(profile.prepaid_balance)


def target_balance(profile: models.ClientProfile) -> Decimal:
    return to_money(profile.prepaid_target_balance)


def balance_status(balance: Decimal, target: Decimal) -> BalanceStatus:
    """Classify a balance for dashboards using the 25%-of-target rule."""

    if balance <= 0:
        return BalanceStatus.EMPTY
    if target > 0 and balance < target * LOW_BALANCE_RATIO:
        return BalanceStatus.LOW
    return BalanceStatus.HEALTHY


def format_money(value: Decimal) -> str:
    return f"${to_money(value):,.2f}"


class LedgerStore:
    """Writes balance changes together with their transaction record.

    Each write is a conditional ``UPDATE`` keyed on the profile ``version``
    that was read; when no row matches, another writer got there first and
    :class:`LedgerConflictError` is raised. Callers own the commit.
    """

    def __init__(self, repository: WorkspaceRepository) -> None:
        self.repository = repository

    @property
    def db(self) -> Session:
        return self.repository.db

    def record_credit(
        self,
        profile: models.ClientProfile,
        amount: Decimal,
        description: str,
        *,
        billing_frequency: Optional[models.BillingFrequency] = None,
    ) -> models.PrepaidTransaction:
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be greater than zero")
        new_balance = current_balance(profile) + amount
        values: dict[str, object] = {"prepaid_balance": new_balance}
        if billing_frequency is not None:
            values["billing_frequency"] = billing_frequency
        self._swap(profile, values)
        return self._append(
            profile,
            models.PrepaidTransactionType.CREDIT,
            amount=amount,
            balance_after=new_balance,
            description=description,
        )

    def record_deduction(
        self,
        profile: models.ClientProfile,
        amount: Decimal,
        description: str,
        *,
        appointment_id: Optional[str] = None,
    ) -> models.PrepaidTransaction:
        amount = to_money(amount)
        balance = current_balance(profile)
        if amount < 0:
            raise ValueError("Deduction amount cannot be negative")
        if amount > balance:
            raise ValueError("Deduction exceeds the available prepaid balance")
        new_balance = balance - amount
        self._swap(profile, {"prepaid_balance": new_balance}, minimum_balance=amount)
        return self._append(
            profile,
            models.PrepaidTransactionType.DEDUCTION,
            amount=amount,
            balance_after=new_balance,
            description=description,
            appointment_id=appointment_id,
        )

    def record_retention(
        self,
        profile: models.ClientProfile,
        billing_frequency: models.BillingFrequency,
        description: str,
    ) -> models.PrepaidTransaction:
        """Log a zero-amount credit marking the balance as retained credit."""

        balance = current_balance(profile)
        self._swap(profile, {"billing_frequency": billing_frequency})
        return self._append(
            profile,
            models.PrepaidTransactionType.CREDIT,
            amount=Decimal("0.00"),
            balance_after=balance,
            description=description,
        )

    def change_frequency(
        self, profile: models.ClientProfile, billing_frequency: models.BillingFrequency
    ) -> None:
        self._swap(profile, {"billing_frequency": billing_frequency})

    def _swap(
        self,
        profile: models.ClientProfile,
        values: dict[str, object],
        *,
        minimum_balance: Optional[Decimal] = None,
    ) -> None:
        seen_version = profile.version
        statement = (
            update(models.ClientProfile)
            .where(models.ClientProfile.id == profile.id)
            .where(models.ClientProfile.workspace_id == self.repository.workspace_id)
            .where(models.ClientProfile.version == seen_version)
            .values(version=seen_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if minimum_balance is not None:
            statement = statement.where(
                func.coalesce(models.ClientProfile.prepaid_balance, 0) >= minimum_balance
            )

        result = self.db.execute(statement)
        if result.rowcount != 1:
            LOGGER.warning(
                "Ledger write lost a race on profile %s (version %s)", profile.id, seen_version
            )
            raise LedgerConflictError(str(profile.id))

        # Mirror the written values on the loaded instance without dirtying it.
        for key, value in values.items():
            set_committed_value(profile, key, value)
        set_committed_value(profile, "version", seen_version + 1)

    def _append(
        self,
        profile: models.ClientProfile,
        transaction_type: models.PrepaidTransactionType,
        *,
        amount: Decimal,
        balance_after: Decimal,
        description: str,
        appointment_id: Optional[str] = None,
    ) -> models.PrepaidTransaction:
        last_sequence = (
            self.db.query(func.max(models.PrepaidTransaction.sequence))
            .filter(models.PrepaidTransaction.client_profile_id == profile.id)
            .scalar()
        )
        transaction = models.PrepaidTransaction(
            workspace_id=self.repository.workspace_id,
            client_profile_id=profile.id,
            sequence=(last_sequence or 0) + 1,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            appointment_id=appointment_id,
        )
        self.db.add(transaction)
        self.db.flush()
        LOGGER.info(
            "Ledger %s of %s on profile %s; balance now %s",
            transaction_type.value.lower(),
            amount,
            profile.id,
            balance_after,
        )
        return transaction


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid value for %s=%s; using %s", name, raw, default)
        return default


def retry_on_conflict(
    operation: Callable[[], ResultT], *, attempts: Optional[int] = None
) -> ResultT:
    """Run ``operation`` again when it loses a ledger race, up to ``attempts`` times."""

    max_attempts = attempts or max(_read_int_env(CONFLICT_RETRIES_ENV, DEFAULT_CONFLICT_RETRIES), 1)
    attempt = 1
    while True:
        try:
            return operation()
        except LedgerConflictError:
            if attempt >= max_attempts:
                raise
            attempt += 1
            LOGGER.info("Retrying ledger operation after conflict (attempt %s)", attempt)
