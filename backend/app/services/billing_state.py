"""Billing-frequency state machine.

Transitions are pure functions over :class:`BillingState` returning the new
state together with the ledger side effects the caller must apply. They never
touch the database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple

from ..db_types import to_money
from ..models import BillingFrequency, ClientProfile

ZERO = Decimal("0.00")


class BillingEffect(str, enum.Enum):
    """Ledger actions produced by a transition."""

    APPEND_CREDIT = "append_credit"
    DEDUCT_SESSION = "deduct_session"
    APPLY_CREDIT = "apply_credit"
    RETAIN_CREDIT = "retain_credit"
    CANCEL_TOP_UP = "cancel_top_up"


@dataclass(frozen=True)
class SideEffect:
    kind: BillingEffect
    amount: Decimal = ZERO


@dataclass(frozen=True)
class BillingState:
    """Billing model of a client plus its running balance."""

    frequency: BillingFrequency
    balance: Decimal = ZERO

    @classmethod
    def from_profile(cls, profile: ClientProfile) -> "BillingState":
        return cls(
            frequency=BillingFrequency(profile.billing_frequency),
            balance=to_money(profile.prepaid_balance),
        )

    @property
    def has_retained_credit(self) -> bool:
        return self.frequency is not BillingFrequency.PREPAID and self.balance > 0


Transition = Tuple[BillingState, Tuple[SideEffect, ...]]

RETENTION_TARGETS = frozenset({BillingFrequency.PER_SESSION, BillingFrequency.MONTHLY})


def add_credit(state: BillingState, amount: Decimal) -> Transition:
    """Credit the balance; any client receiving credit becomes PREPAID."""

    amount = to_money(amount)
    if amount <= 0:
        raise ValueError("Credit amount must be greater than zero")
    new_state = BillingState(BillingFrequency.PREPAID, state.balance + amount)
    return new_state, (SideEffect(BillingEffect.APPEND_CREDIT, amount),)


def deduct_session(state: BillingState, rate: Decimal) -> Transition:
    """Consume up to ``rate`` from the balance, never going below zero."""

    if state.balance <= 0:
        return state, ()
    deducted = min(state.balance, to_money(rate))
    new_state = BillingState(state.frequency, state.balance - deducted)
    return new_state, (SideEffect(BillingEffect.DEDUCT_SESSION, deducted),)


def switch_to_per_session(state: BillingState) -> Transition:
    return BillingState(BillingFrequency.PER_SESSION, state.balance), ()


def void_top_up(state: BillingState, new_frequency: BillingFrequency) -> Transition:
    """Cancel the open top-up and keep the balance as credit under a new model."""

    new_frequency = BillingFrequency(new_frequency)
    if new_frequency not in RETENTION_TARGETS:
        raise ValueError("New billing frequency must be PER_SESSION or MONTHLY")
    effects = [SideEffect(BillingEffect.CANCEL_TOP_UP)]
    if state.balance > 0:
        effects.append(SideEffect(BillingEffect.RETAIN_CREDIT, state.balance))
    return BillingState(new_frequency, state.balance), tuple(effects)


def apply_invoice_credit(state: BillingState, invoice_amount: Decimal) -> Transition:
    """Spend retained credit against an invoice of ``invoice_amount``."""

    credit = min(state.balance, max(to_money(invoice_amount), ZERO))
    if credit <= 0:
        return state, ()
    new_state = BillingState(state.frequency, state.balance - credit)
    return new_state, (SideEffect(BillingEffect.APPLY_CREDIT, credit),)


def effect_amount(effects: Tuple[SideEffect, ...], kind: BillingEffect) -> Decimal:
    return sum((effect.amount for effect in effects if effect.kind is kind), ZERO)
