from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.models import BillingFrequency
from backend.app.services import billing_state
from backend.app.services.billing_state import BillingEffect, BillingState


def test_add_credit_always_lands_on_prepaid():
    state = BillingState(BillingFrequency.MONTHLY, Decimal("20.00"))

    new_state, effects = billing_state.add_credit(state, Decimal("30"))

    assert new_state == BillingState(BillingFrequency.PREPAID, Decimal("50.00"))
    assert [effect.kind for effect in effects] == [BillingEffect.APPEND_CREDIT]


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
def test_add_credit_rejects_non_positive_amounts(amount):
    with pytest.raises(ValueError):
        billing_state.add_credit(BillingState(BillingFrequency.PREPAID), amount)


def test_deduct_session_clamps_and_skips_empty_balance():
    state = BillingState(BillingFrequency.PREPAID, Decimal("30.00"))

    new_state, effects = billing_state.deduct_session(state, Decimal("45"))
    assert new_state.balance == Decimal("0.00")
    assert billing_state.effect_amount(effects, BillingEffect.DEDUCT_SESSION) == Decimal("30.00")

    unchanged, no_effects = billing_state.deduct_session(new_state, Decimal("45"))
    assert unchanged is new_state
    assert no_effects == ()


def test_void_top_up_retains_positive_balance():
    state = BillingState(BillingFrequency.PREPAID, Decimal("75.00"))

    new_state, effects = billing_state.void_top_up(state, BillingFrequency.PER_SESSION)

    assert new_state.frequency is BillingFrequency.PER_SESSION
    assert new_state.has_retained_credit is True
    assert [effect.kind for effect in effects] == [
        BillingEffect.CANCEL_TOP_UP,
        BillingEffect.RETAIN_CREDIT,
    ]
    assert billing_state.effect_amount(effects, BillingEffect.RETAIN_CREDIT) == Decimal("75.00")


def test_void_top_up_with_empty_balance_only_cancels():
    state = BillingState(BillingFrequency.PREPAID, Decimal("0.00"))

    new_state, effects = billing_state.void_top_up(state, BillingFrequency.MONTHLY)

    assert new_state.frequency is BillingFrequency.MONTHLY
    assert [effect.kind for effect in effects] == [BillingEffect.CANCEL_TOP_UP]


def test_void_top_up_cannot_target_prepaid():
    with pytest.raises(ValueError):
        billing_state.void_top_up(
            BillingState(BillingFrequency.PREPAID, Decimal("10")), BillingFrequency.PREPAID
        )


def test_apply_invoice_credit_consumes_at_most_the_invoice():
    state = BillingState(BillingFrequency.PER_SESSION, Decimal("150.00"))

    partial, effects = billing_state.apply_invoice_credit(state, Decimal("100"))
    assert billing_state.effect_amount(effects, BillingEffect.APPLY_CREDIT) == Decimal("100.00")
    assert partial.balance == Decimal("50.00")

    drained, effects = billing_state.apply_invoice_credit(partial, Decimal("100"))
    assert billing_state.effect_amount(effects, BillingEffect.APPLY_CREDIT) == Decimal("50.00")
    assert drained.balance == Decimal("0.00")
    assert drained.has_retained_credit is False

    _, effects = billing_state.apply_invoice_credit(drained, Decimal("100"))
    assert effects == ()


def test_switch_to_per_session_keeps_balance():
    state = BillingState(BillingFrequency.PREPAID, Decimal("60.00"))

    new_state, effects = billing_state.switch_to_per_session(state)

    assert new_state == BillingState(BillingFrequency.PER_SESSION, Decimal("60.00"))
    assert effects == ()
