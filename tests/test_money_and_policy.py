import os
import sys
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utils.errors import ValidationError
from utils.fee_policy import (
    OVERDUE,
    PAID,
    PARTIAL,
    UNPAID,
    allocate_to_installments,
    compute_due,
    next_installment,
    refresh_fee,
    release_from_installments,
    should_lock_discount,
)
from utils.money import format_money, inclusive_tax, parse_percentage, percentage_of, to_major, to_minor
from utils.schedule import parse_datetime, utcnow
from utils.transitions import (
    AUTHORIZED,
    CAPTURED,
    CREATED,
    FAILED,
    PARTIALLY_REFUNDED,
    PENDING,
    REFUNDED,
    can_transition,
    is_terminal,
)


def make_fee(**overrides):
    now = utcnow()
    values = dict(
        total_amount=500000,
        paid_amount=0,
        late_fee_amount=0,
        discount_amount=0,
        discount_locked=False,
        due_amount=500000,
        payment_status=UNPAID,
        due_date=now + timedelta(days=30),
        is_installment_enabled=False,
        installments=[],
        auto_late_fee=False,
        late_fee_fixed=0,
        late_fee_percentage=Decimal("0"),
        grace_period_days=0,
        discount_fixed=0,
        discount_percentage=Decimal("0"),
        early_payment_deadline=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_to_minor_parses_decimal_strings():
    assert to_minor("5000") == 500000
    assert to_minor("1,250.50") == 125050
    assert to_minor(0.1) == 10
    assert to_minor("10.005") == 1001
    assert to_minor(7) == 700


@pytest.mark.parametrize("bad", [None, True, "abc", "NaN"])
def test_to_minor_rejects_garbage(bad):
    with pytest.raises(ValidationError):
        to_minor(bad)


def test_major_rendering():
    assert to_major(510000) == "5100.00"
    assert to_major(None) == "0.00"
    assert format_money(123456, "INR") == "INR 1,234.56"


def test_percentages_and_tax():
    assert percentage_of(500000, Decimal("2")) == 10000
    assert percentage_of(333, "50") == 167
    assert inclusive_tax(11800, 18) == 1800
    assert inclusive_tax(11800, 0) == 0
    assert parse_percentage("2.5") == Decimal("2.50")
    with pytest.raises(ValidationError):
        parse_percentage("150")


def test_parse_datetime_bare_date_means_end_of_day():
    dt = parse_datetime("2026-03-31")
    assert (dt.hour, dt.minute, dt.second) == (23, 59, 59)
    assert parse_datetime("2026-03-31T10:00:00Z").hour == 10
    assert parse_datetime("not a date") is None


def test_compute_due_never_negative():
    assert compute_due(500000, 0, 0, 600000) == 0
    assert compute_due(500000, 10000, 0, 0) == 510000


def test_percentage_late_fee_after_grace():
    now = utcnow()
    fee = make_fee(due_date=now - timedelta(days=10), auto_late_fee=True, late_fee_percentage=Decimal("2"))
    refresh_fee(fee, now)
    assert fee.late_fee_amount == 10000
    assert fee.due_amount == 510000
    assert to_major(fee.due_amount) == "5100.00"
    assert fee.payment_status == OVERDUE


def test_no_late_fee_inside_grace_period():
    now = utcnow()
    fee = make_fee(
        due_date=now - timedelta(days=10),
        auto_late_fee=True,
        late_fee_fixed=25000,
        grace_period_days=15,
    )
    refresh_fee(fee, now)
    assert fee.late_fee_amount == 0
    assert fee.payment_status == UNPAID


def test_late_fee_sticks_once_assessed():
    now = utcnow()
    fee = make_fee(due_date=now - timedelta(days=1), auto_late_fee=True, late_fee_fixed=25000)
    refresh_fee(fee, now)
    assert fee.late_fee_amount == 25000
    # Moving the clock back (or extending the date) does not remove it
    fee.due_date = now + timedelta(days=5)
    refresh_fee(fee, now)
    assert fee.late_fee_amount == 25000


def test_discount_offered_only_inside_window():
    now = utcnow()
    fee = make_fee(discount_fixed=50000, early_payment_deadline=now + timedelta(days=5))
    refresh_fee(fee, now)
    assert fee.discount_amount == 50000
    assert fee.due_amount == 450000

    refresh_fee(fee, now + timedelta(days=6))
    assert fee.discount_amount == 0
    assert fee.due_amount == 500000


def test_discount_locks_when_settled_in_window():
    now = utcnow()
    fee = make_fee(discount_percentage=Decimal("10"), early_payment_deadline=now + timedelta(days=5))
    fee.paid_amount = 450000
    refresh_fee(fee, now)
    assert fee.due_amount == 0
    assert fee.payment_status == PAID
    assert should_lock_discount(fee, now)

    fee.discount_locked = True
    refresh_fee(fee, now + timedelta(days=30))
    assert fee.discount_amount == 50000
    assert fee.payment_status == PAID


def test_partial_payment_status():
    now = utcnow()
    fee = make_fee(paid_amount=200000)
    refresh_fee(fee, now)
    assert fee.payment_status == PARTIAL
    assert fee.due_amount == 300000


def test_installment_allocation_and_release():
    plan = [
        {"installment_number": 1, "amount": 200000, "due_date": "2026-01-31T23:59:59", "paid_amount": 0},
        {"installment_number": 2, "amount": 300000, "due_date": "2026-04-30T23:59:59", "paid_amount": 0},
    ]
    paid = allocate_to_installments(plan, 250000)
    assert [i["paid_amount"] for i in paid] == [200000, 50000]
    assert [i["is_paid"] for i in paid] == [True, False]
    assert plan[0]["paid_amount"] == 0

    back = release_from_installments(paid, 100000)
    assert [i["paid_amount"] for i in back] == [150000, 0]


def test_overdue_uses_next_unpaid_installment():
    now = utcnow()
    plan = [
        {"installment_number": 1, "amount": 200000, "due_date": (now - timedelta(days=3)).isoformat(), "paid_amount": 200000},
        {"installment_number": 2, "amount": 300000, "due_date": (now + timedelta(days=30)).isoformat(), "paid_amount": 0},
    ]
    fee = make_fee(is_installment_enabled=True, installments=plan, paid_amount=200000, due_date=now + timedelta(days=30))
    refresh_fee(fee, now)
    assert fee.payment_status == PARTIAL
    assert next_installment(fee)["installment_number"] == 2


def test_transition_table():
    assert can_transition(CREATED, PENDING)
    assert can_transition(CREATED, CAPTURED)
    assert can_transition(AUTHORIZED, CAPTURED)
    assert can_transition(PENDING, FAILED)
    assert can_transition(CAPTURED, PARTIALLY_REFUNDED)
    assert can_transition(PARTIALLY_REFUNDED, REFUNDED)

    assert not can_transition(CAPTURED, FAILED)
    assert not can_transition(CAPTURED, AUTHORIZED)
    assert not can_transition(FAILED, CAPTURED)
    assert not can_transition(CREATED, REFUNDED)
    assert not can_transition(REFUNDED, PARTIALLY_REFUNDED)


def test_terminal_states():
    assert is_terminal(FAILED)
    assert is_terminal(REFUNDED)
    assert not is_terminal(CAPTURED)
