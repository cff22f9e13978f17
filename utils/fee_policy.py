"""Pure fee arithmetic: late fees, early-payment discounts, due amount, status.

Nothing here touches the database; callers pass a ``Fee`` (or anything with
the same attributes) and a clock value.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from utils.money import percentage_of
from utils.schedule import in_early_payment_window, is_overdue, is_past_grace, parse_datetime

UNPAID = "unpaid"
PARTIAL = "partial"
PAID = "paid"
OVERDUE = "overdue"


def compute_due(total: int, late_fee: int, discount: int, paid: int) -> int:
    return max(0, int(total) + int(late_fee) - int(discount) - int(paid))


def late_fee_for(fee) -> int:
    if fee.late_fee_fixed:
        return int(fee.late_fee_fixed)
    return percentage_of(fee.total_amount, fee.late_fee_percentage)


def discount_for(fee) -> int:
    if fee.discount_fixed:
        return int(fee.discount_fixed)
    return percentage_of(fee.total_amount, fee.discount_percentage)


def effective_due_date(fee) -> datetime:
    """Next installment still owed, or the fee's own due date."""
    if fee.is_installment_enabled:
        for inst in fee.installments or []:
            if int(inst.get("paid_amount", 0)) < int(inst["amount"]):
                when = parse_datetime(inst.get("due_date"))
                if when is not None:
                    return when
    return fee.due_date


def derive_status(due_amount: int, paid_amount: int, due_date: datetime, grace_days: int, now: datetime) -> str:
    if due_amount <= 0:
        return PAID
    if is_overdue(due_amount, due_date, grace_days, now):
        return OVERDUE
    if paid_amount > 0:
        return PARTIAL
    return UNPAID


def refresh_fee(fee, now: datetime) -> None:
    """Recompute late fee, provisional discount, due amount and status in place."""
    due_date = effective_due_date(fee)

    if not fee.discount_locked:
        offered = 0
        if not fee.late_fee_amount and in_early_payment_window(fee.early_payment_deadline, now):
            offered = discount_for(fee)
        fee.discount_amount = offered

    outstanding = compute_due(fee.total_amount, 0, fee.discount_amount, fee.paid_amount)
    if (
        not fee.late_fee_amount
        and fee.auto_late_fee
        and not fee.discount_locked
        and outstanding > 0
        and is_past_grace(due_date, fee.grace_period_days, now)
    ):
        fee.late_fee_amount = late_fee_for(fee)
        fee.discount_amount = 0

    fee.due_amount = compute_due(fee.total_amount, fee.late_fee_amount, fee.discount_amount, fee.paid_amount)
    fee.payment_status = derive_status(fee.due_amount, fee.paid_amount, due_date, fee.grace_period_days, now)


def should_lock_discount(fee, settled_at: datetime) -> bool:
    """A discount sticks only when the fee is fully settled inside the window."""
    return (
        not fee.discount_locked
        and fee.discount_amount > 0
        and fee.due_amount == 0
        and in_early_payment_window(fee.early_payment_deadline, settled_at)
    )


def allocate_to_installments(installments: list, amount: int) -> list:
    """Spread a captured amount over installments in order; returns a new list."""
    remaining = int(amount)
    updated = []
    for inst in installments or []:
        inst = dict(inst)
        paid = int(inst.get("paid_amount", 0))
        owed = int(inst["amount"]) - paid
        if remaining > 0 and owed > 0:
            take = min(owed, remaining)
            inst["paid_amount"] = paid + take
            remaining -= take
        inst["is_paid"] = int(inst.get("paid_amount", 0)) >= int(inst["amount"])
        updated.append(inst)
    return updated


def release_from_installments(installments: list, amount: int) -> list:
    """Undo ``allocate_to_installments`` for a refund, newest installment first."""
    remaining = int(amount)
    updated = [dict(i) for i in installments or []]
    for inst in reversed(updated):
        paid = int(inst.get("paid_amount", 0))
        if remaining > 0 and paid > 0:
            take = min(paid, remaining)
            inst["paid_amount"] = paid - take
            remaining -= take
        inst["is_paid"] = int(inst.get("paid_amount", 0)) >= int(inst["amount"])
    return updated


def next_installment(fee) -> Optional[dict]:
    for inst in fee.installments or []:
        if int(inst.get("paid_amount", 0)) < int(inst["amount"]):
            return inst
    return None
