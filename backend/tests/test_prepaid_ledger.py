from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from backend.app import models
from backend.app.services.ledger import (
    ClientProfileNotFoundError,
    LedgerConflictError,
    LedgerStore,
    retry_on_conflict,
)


def _hours_ago(hours: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def _transactions(db_session, profile_id):
    return (
        db_session.query(models.PrepaidTransaction)
        .filter(models.PrepaidTransaction.client_profile_id == profile_id)
        .order_by(models.PrepaidTransaction.sequence)
        .all()
    )


def test_balance_matches_credits_minus_deductions(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", session_rate="100")

    prepaid_service.add_credit(client.id, Decimal("500"), "Starter pack")
    for hours in (30, 20, 10):
        appointment = factory.appointment(trainer, client, start_time=_hours_ago(hours))
        assert prepaid_service.deduct_session(appointment.id).success
    prepaid_service.add_credit(client.id, "50")

    profile = client.profile
    db_session.refresh(profile)
    history = _transactions(db_session, profile.id)
    credits = sum(
        (t.amount for t in history if t.transaction_type is models.PrepaidTransactionType.CREDIT),
        Decimal("0"),
    )
    deductions = sum(
        (t.amount for t in history if t.transaction_type is models.PrepaidTransactionType.DEDUCTION),
        Decimal("0"),
    )

    assert profile.prepaid_balance == Decimal("250.00")
    assert credits - deductions == Decimal("250.00")
    assert history[-1].balance_after == Decimal("250.00")
    assert [t.sequence for t in history] == [1, 2, 3, 4, 5]
    assert profile.version == 6


def test_fractional_rate_drains_balance_to_exactly_zero(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", session_rate="33.33")
    prepaid_service.add_credit(client.id, Decimal("333.30"))

    results = []
    for hours in range(10, 0, -1):
        appointment = factory.appointment(trainer, client, start_time=_hours_ago(hours * 3))
        results.append(prepaid_service.deduct_session(appointment.id))

    assert all(result.amount_deducted == Decimal("33.33") for result in results)
    assert results[-1].new_balance == Decimal("0.00")
    db_session.refresh(client.profile)
    assert client.profile.prepaid_balance == Decimal("0.00")


def test_fractional_credits_sum_exactly(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", target="500")

    for _ in range(10):
        result = prepaid_service.add_credit(client.id, Decimal("33.33"))

    assert result.new_balance == Decimal("333.30")
    db_session.refresh(client.profile)
    assert client.profile.prepaid_balance == Decimal("333.30")
    assert _transactions(db_session, client.profile.id)[-1].balance_after == Decimal("333.30")


def test_deducting_exact_balance_leaves_zero_without_switch(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="0", session_rate="100")
    prepaid_service.add_credit(client.id, Decimal("100"))
    appointment = factory.appointment(trainer, client)

    result = prepaid_service.deduct_session(appointment.id)

    assert result.success is True
    assert result.new_balance == Decimal("0.00")
    assert result.amount_deducted == Decimal("100.00")
    assert result.should_generate_invoice is True
    assert result.should_switch_to_per_session is False


def test_zero_balance_creates_no_transaction(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance=None, session_rate="100")
    appointment = factory.appointment(trainer, client)

    result = prepaid_service.deduct_session(appointment.id)

    assert result.success is False
    assert result.new_balance == Decimal("0.00")
    assert result.amount_deducted == Decimal("0.00")
    assert result.should_generate_invoice is True
    assert result.should_switch_to_per_session is False
    assert _transactions(db_session, client.profile.id) == []


def test_deduction_is_clamped_to_remaining_balance(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="40", session_rate="100")
    appointment = factory.appointment(trainer, client)

    result = prepaid_service.deduct_session(appointment.id)

    assert result.amount_deducted == Decimal("40.00")
    assert result.new_balance == Decimal("0.00")


def test_low_balance_looks_ahead_to_next_session(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="150", target="500", session_rate="100")
    completed = factory.appointment(trainer, client)
    factory.appointment(
        trainer,
        client,
        start_time=datetime.now(timezone.utc) + timedelta(days=2),
        status=models.AppointmentStatus.SCHEDULED,
    )

    result = prepaid_service.deduct_session(completed.id)

    assert result.success is True
    assert result.new_balance == Decimal("50.00")
    assert result.should_generate_invoice is True


def test_balance_covering_next_session_does_not_request_invoice(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="500", target="500", session_rate="100")
    completed = factory.appointment(trainer, client)
    factory.appointment(
        trainer,
        client,
        start_time=datetime.now(timezone.utc) + timedelta(days=1),
        status=models.AppointmentStatus.SCHEDULED,
    )

    result = prepaid_service.deduct_session(completed.id)

    assert result.new_balance == Decimal("400.00")
    assert result.should_generate_invoice is False


def test_without_next_session_target_drives_the_signal(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="500", target="500", session_rate="100")
    completed = factory.appointment(trainer, client)

    result = prepaid_service.deduct_session(completed.id)

    assert result.new_balance == Decimal("400.00")
    assert result.should_generate_invoice is True


def test_deduct_session_is_idempotent_per_appointment(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="300", session_rate="100")
    appointment = factory.appointment(trainer, client)

    first = prepaid_service.deduct_session(appointment.id)
    second = prepaid_service.deduct_session(appointment.id)

    assert first.success and second.success
    assert second.new_balance == first.new_balance == Decimal("200.00")
    assert second.amount_deducted == Decimal("100.00")
    assert second.should_generate_invoice is False
    assert len(_transactions(db_session, client.profile.id)) == 1
    db_session.refresh(client.profile)
    assert client.profile.prepaid_balance == Decimal("200.00")


def test_zero_rate_session_still_records_a_deduction(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="100", session_rate="0")
    appointment = factory.appointment(trainer, client)

    result = prepaid_service.deduct_session(appointment.id)

    assert result.success is True
    assert result.amount_deducted == Decimal("0.00")
    history = _transactions(db_session, client.profile.id)
    assert len(history) == 1
    assert history[0].amount == Decimal("0.00")
    assert history[0].balance_after == Decimal("100.00")


def test_missing_appointment_or_non_prepaid_client_is_not_applied(db_session, factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(
        trainer, balance="200", billing_frequency=models.BillingFrequency.PER_SESSION
    )
    appointment = factory.appointment(trainer, client)

    assert prepaid_service.deduct_session("00000000-0000-0000-0000-000000000000").success is False
    assert prepaid_service.deduct_session(appointment.id).success is False
    assert _transactions(db_session, client.profile.id) == []


def test_add_credit_moves_client_to_prepaid(factory, prepaid_service):
    trainer = factory.trainer()
    client = factory.client(
        trainer, balance=None, billing_frequency=models.BillingFrequency.PER_SESSION
    )

    result = prepaid_service.add_credit(client.id, Decimal("120.50"), "Gift card")

    assert result.new_balance == Decimal("120.50")
    assert result.transaction.transaction_type is models.PrepaidTransactionType.CREDIT
    assert result.transaction.description == "Gift card"
    assert client.profile.billing_frequency is models.BillingFrequency.PREPAID


def test_add_credit_rejects_non_positive_amounts_and_missing_profiles(prepaid_service):
    with pytest.raises(ValueError):
        prepaid_service.add_credit("any-client", Decimal("0"))
    with pytest.raises(ValueError):
        prepaid_service.add_credit("any-client", Decimal("-5"))
    with pytest.raises(ClientProfileNotFoundError):
        prepaid_service.add_credit("missing-client", Decimal("10"))


def test_stale_version_raises_conflict(db_session, factory, repository):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="100")
    profile = repository.get_profile_for_client(client.id)

    db_session.execute(
        update(models.ClientProfile)
        .where(models.ClientProfile.id == profile.id)
        .values(version=profile.version + 1)
        .execution_options(synchronize_session=False)
    )

    store = LedgerStore(repository)
    with pytest.raises(LedgerConflictError) as excinfo:
        store.record_credit(profile, Decimal("25"), "Late credit")

    assert excinfo.value.retryable is True
    assert _transactions(db_session, profile.id) == []


def test_deduction_beyond_balance_is_rejected_by_store(factory, repository):
    trainer = factory.trainer()
    client = factory.client(trainer, balance="10")
    profile = repository.get_profile_for_client(client.id)

    with pytest.raises(ValueError):
        LedgerStore(repository).record_deduction(profile, Decimal("10.01"), "Too much")


def test_retry_on_conflict_retries_until_success():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise LedgerConflictError("profile-1")
        return "done"

    assert retry_on_conflict(flaky, attempts=3) == "done"
    assert len(calls) == 3


def test_retry_on_conflict_gives_up_after_attempts():
    def always_conflicts():
        raise LedgerConflictError("profile-1")

    with pytest.raises(LedgerConflictError):
        retry_on_conflict(always_conflicts, attempts=2)


def test_deductions_that_do_nothing_take_no_row_lock(factory, prepaid_service, monkeypatch):
    trainer = factory.trainer()
    empty = factory.client(trainer, "Avery Empty", balance="0")
    per_session = factory.client(
        trainer,
        "Sam Session",
        billing_frequency=models.BillingFrequency.PER_SESSION,
        balance=None,
        target=None,
    )
    funded = factory.client(trainer, "Cameron Funded", balance="200")
    appointments = [factory.appointment(trainer, client) for client in (empty, per_session, funded)]

    lock_requests = []
    repository = prepaid_service.repository
    load_profile = repository.get_profile_for_client

    def recording_load(client_id, *, for_update=False):
        lock_requests.append(for_update)
        return load_profile(client_id, for_update=for_update)

    monkeypatch.setattr(repository, "get_profile_for_client", recording_load)

    assert prepaid_service.deduct_session(appointments[0].id).success is False
    assert prepaid_service.deduct_session(appointments[1].id).success is False
    assert lock_requests == [False, False]

    assert prepaid_service.deduct_session(appointments[2].id).success is True
    assert lock_requests[-1] is True
