"""Ledger reconciliation: the only code that moves money on a Fee.

Every status change on a ``PaymentTransaction`` goes through
``compare_and_set_status`` (an ``UPDATE ... WHERE status = :expected``), so
a client verification and a webhook racing on the same order settle on a
single winner. The winner applies the fee credit inside the same database
transaction; the loser re-reads and finds nothing left to do.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Fee, LedgerEntry, PaymentRefund, PaymentTransaction, ReconciliationIssue
from utils.errors import NotFoundError, ReconciliationError, ValidationError
from utils.fee_policy import allocate_to_installments, refresh_fee, release_from_installments, should_lock_discount
from utils.invoices import generate_invoice, generate_refund_invoice
from utils.money import format_money
from utils.notify import send_alert_email
from utils.schedule import utcnow
from utils.transitions import (
    AUTHORIZED,
    CAPTURED,
    FAILED,
    PARTIALLY_REFUNDED,
    REFUNDED,
    SETTLED,
    can_transition,
)

log = logging.getLogger(__name__)

_CAS_ATTEMPTS = 5

_TIMESTAMP_FOR = {
    AUTHORIZED: "authorized_at",
    CAPTURED: "captured_at",
    FAILED: "failed_at",
    PARTIALLY_REFUNDED: "refunded_at",
    REFUNDED: "refunded_at",
}


@dataclass
class TransitionResult:
    transaction_id: str
    applied: bool
    status: str
    fee_status: Optional[str] = None
    invoice_id: Optional[str] = None


# -----------------------------
# Primitives
# -----------------------------


def compare_and_set_status(txn_id: str, expected: str, new: str, *, guard: Optional[Dict[str, Any]] = None, **values) -> bool:
    """Conditional status update; True only for the caller that won.

    ``guard`` adds extra ``column == value`` conditions. Does not commit.
    """
    stmt = update(PaymentTransaction).where(
        PaymentTransaction.id == txn_id,
        PaymentTransaction.status == expected,
    )
    for column, value in (guard or {}).items():
        stmt = stmt.where(getattr(PaymentTransaction, column) == value)
    values.update(status=new, updated_at=utcnow())
    result = db.session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


def _load_txn(txn_id: str) -> PaymentTransaction:
    txn = db.session.get(PaymentTransaction, txn_id, populate_existing=True)
    if txn is None:
        raise NotFoundError("Payment not found", detail=f"transaction {txn_id}")
    return txn


def _load_fee(fee_id: str) -> Fee:
    fee = db.session.get(Fee, fee_id, populate_existing=True)
    if fee is None:
        raise NotFoundError("Fee not found", detail=f"fee {fee_id}")
    return fee


def report_issue(
    kind: str,
    detail: str,
    *,
    campus_id: Optional[str] = None,
    fee_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> ReconciliationIssue:
    """Queue a discrepancy for operators and page them by email."""
    issue = ReconciliationIssue(
        kind=kind,
        campus_id=campus_id,
        fee_id=fee_id,
        transaction_id=transaction_id,
        detail=detail,
    )
    db.session.add(issue)
    db.session.commit()
    log.error("reconciliation issue %s txn=%s fee=%s: %s", kind, transaction_id, fee_id, detail)

    raw = current_app.config.get("OPERATOR_ALERT_EMAILS") or ""
    recipients = [r.strip() for r in raw.split(",") if r.strip()]
    if recipients:
        send_alert_email(
            f"[fees] reconciliation issue: {kind}",
            f"Kind: {kind}\nCampus: {campus_id}\nFee: {fee_id}\nTransaction: {transaction_id}\n\n{detail}\n",
            recipients,
        )
    return issue


def list_issues(campus_id: Optional[str] = None, status: str = "open", limit: int = 100) -> List[ReconciliationIssue]:
    q = ReconciliationIssue.query
    if campus_id:
        q = q.filter(ReconciliationIssue.campus_id == campus_id)
    if status:
        q = q.filter(ReconciliationIssue.status == status)
    return q.order_by(ReconciliationIssue.created_at.desc(), ReconciliationIssue.id.desc()).limit(limit).all()


def ledger_for_fee(fee_id: str) -> List[LedgerEntry]:
    return LedgerEntry.query.filter_by(fee_id=fee_id).order_by(LedgerEntry.ts, LedgerEntry.id).all()


# -----------------------------
# Capture / fail
# -----------------------------


_DERIVED_FIELDS = ("discount_amount", "late_fee_amount", "due_amount", "payment_status")


def store_fee_state(fee: Fee, now: datetime) -> bool:
    """Persist a refreshed late fee, discount, due amount and status.

    The write only lands if no payment or refund touched the fee since it was
    loaded; otherwise the fee is reloaded and False is returned.
    """
    fee_id = fee.id
    seen_paid = fee.paid_amount
    seen_locked = fee.discount_locked
    refresh_fee(fee, now)
    derived = {name: getattr(fee, name) for name in _DERIVED_FIELDS}
    db.session.expire(fee)
    stored = db.session.execute(
        update(Fee)
        .where(Fee.id == fee_id, Fee.paid_amount == seen_paid, Fee.discount_locked == seen_locked)
        .values(**derived)
        .execution_options(synchronize_session=False)
    )
    if stored.rowcount != 1:
        log.info("fee %s changed while refreshing, keeping the stored state", fee_id)
        db.session.refresh(fee)
        return False
    db.session.commit()
    return True


def _credit_fee(txn: PaymentTransaction, now: datetime) -> tuple[Fee, List[tuple]]:
    """Add the captured amount to the fee; caller owns the commit."""
    db.session.execute(
        update(Fee)
        .where(Fee.id == txn.fee_id)
        .values(paid_amount=Fee.paid_amount + txn.amount, last_payment_at=now)
        .execution_options(synchronize_session=False)
    )
    fee = _load_fee(txn.fee_id)
    if fee.is_installment_enabled:
        fee.installments = allocate_to_installments(fee.installments, txn.amount)
    refresh_fee(fee, now)
    if should_lock_discount(fee, now):
        fee.discount_locked = True

    issues = []
    excess = fee.paid_amount + fee.discount_amount - fee.total_amount - fee.late_fee_amount
    if excess > 0:
        issues.append(
            (
                "overpayment",
                f"Fee {fee.id} collected {format_money(excess, fee.currency)} more than owed "
                f"after {txn.gateway} order {txn.gateway_order_id}",
            )
        )

    db.session.add(
        LedgerEntry(
            campus_id=txn.campus_id,
            student_id=txn.student_id,
            fee_id=fee.id,
            ts=now,
            entry_type="credit",
            amount=txn.amount,
            ref=txn.gateway_payment_id or txn.gateway_order_id,
            description=f"{txn.gateway} payment for {fee.name}",
            link_type="payment_transaction",
            link_id=txn.id,
        )
    )
    return fee, issues


def _mark_webhook_verified(txn_id: str) -> None:
    db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn_id, PaymentTransaction.webhook_verified.is_(False))
        .values(webhook_verified=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def apply_transition(
    txn_id: str,
    target: str,
    *,
    payment_id: Optional[str] = None,
    via_webhook: bool = False,
    event_amount: Optional[int] = None,
    failure_reason: Optional[str] = None,
) -> TransitionResult:
    """Move a transaction to ``target`` if the state machine allows it.

    Disallowed or duplicate transitions return ``applied=False`` and change
    nothing (apart from recording that the provider confirmed it by webhook).
    Moving into ``captured`` credits the fee and issues the invoice.
    """
    now = utcnow()
    for _ in range(_CAS_ATTEMPTS):
        txn = _load_txn(txn_id)
        current = txn.status
        if current == target or not can_transition(current, target):
            if via_webhook and current != FAILED and not txn.webhook_verified and target in (current, CAPTURED):
                _mark_webhook_verified(txn.id)
            log.info("transition %s -> %s ignored for txn %s", current, target, txn.id)
            fee = db.session.get(Fee, txn.fee_id)
            invoice_id = None
            if target == CAPTURED and current in SETTLED:
                # Issues the invoice if the delivery that captured it failed to
                invoice_id = generate_invoice(txn.id).id
            return TransitionResult(txn.id, False, current, fee.payment_status if fee else None, invoice_id)

        if target == CAPTURED and event_amount is not None and int(event_amount) != int(txn.amount):
            report_issue(
                "amount_mismatch",
                f"{txn.gateway} reported {format_money(event_amount, txn.currency)} captured for order "
                f"{txn.gateway_order_id}, expected {format_money(txn.amount, txn.currency)}",
                campus_id=txn.campus_id,
                fee_id=txn.fee_id,
                transaction_id=txn.id,
            )
            raise ReconciliationError(
                "Captured amount does not match the order",
                detail=f"txn {txn.id} expected {txn.amount} got {event_amount}",
            )

        values: Dict[str, Any] = {}
        stamp = _TIMESTAMP_FOR.get(target)
        if stamp:
            values[stamp] = now
        if payment_id:
            values["gateway_payment_id"] = payment_id
        if via_webhook:
            values["webhook_verified"] = True
        if failure_reason:
            values["failure_reason"] = failure_reason[:255]

        if not compare_and_set_status(txn.id, current, target, **values):
            db.session.rollback()
            log.info("lost status race on txn %s (%s -> %s), retrying", txn.id, current, target)
            continue

        issues: List[tuple] = []
        fee_status = None
        if target == CAPTURED:
            txn = _load_txn(txn.id)
            fee, issues = _credit_fee(txn, now)
            fee_status = fee.payment_status
        db.session.commit()
        log.info("txn %s %s -> %s (webhook=%s)", txn.id, current, target, via_webhook)
        break
    else:
        raise ReconciliationError("Payment is being updated, please retry", detail=f"CAS contention on txn {txn_id}")

    for kind, detail in issues:
        report_issue(kind, detail, campus_id=txn.campus_id, fee_id=txn.fee_id, transaction_id=txn.id)

    invoice_id = None
    if target == CAPTURED:
        invoice_id = generate_invoice(txn.id).id
    if fee_status is None:
        fee = db.session.get(Fee, txn.fee_id)
        fee_status = fee.payment_status if fee else None
    return TransitionResult(txn.id, True, target, fee_status, invoice_id)


# -----------------------------
# Refunds
# -----------------------------


def apply_refund(
    txn_id: str,
    amount: int,
    refund_id: str,
    *,
    reason: Optional[str] = None,
) -> tuple[PaymentRefund, bool]:
    """Record a refund against a captured transaction.

    Returns ``(refund, created)``; a ``refund_id`` already on file returns the
    stored refund with ``created=False``.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be positive")
    if not refund_id:
        raise ValidationError("refund_id is required")

    now = utcnow()
    for _ in range(_CAS_ATTEMPTS):
        existing = PaymentRefund.query.filter_by(transaction_id=txn_id, gateway_refund_id=refund_id).first()
        if existing is not None:
            return existing, False

        txn = _load_txn(txn_id)
        if txn.status not in (CAPTURED, PARTIALLY_REFUNDED):
            report_issue(
                "refund_without_capture",
                f"Refund {refund_id} for {txn.gateway} order {txn.gateway_order_id} arrived while the payment is {txn.status}",
                campus_id=txn.campus_id,
                fee_id=txn.fee_id,
                transaction_id=txn.id,
            )
            raise ReconciliationError("Refund cannot be applied", detail=f"txn {txn.id} status {txn.status}")

        fee = _load_fee(txn.fee_id)
        remaining = int(txn.amount) - int(txn.refunded_amount or 0)
        if amount > remaining or amount > int(fee.paid_amount):
            report_issue(
                "refund_exceeds_payment",
                f"Refund {refund_id} of {format_money(amount, txn.currency)} exceeds the "
                f"{format_money(min(remaining, fee.paid_amount), txn.currency)} still refundable on order {txn.gateway_order_id}",
                campus_id=txn.campus_id,
                fee_id=txn.fee_id,
                transaction_id=txn.id,
            )
            raise ReconciliationError("Refund exceeds the amount paid", detail=f"txn {txn.id} refund {amount} remaining {remaining}")

        refunded_total = int(txn.refunded_amount or 0) + amount
        target = REFUNDED if refunded_total >= int(txn.amount) else PARTIALLY_REFUNDED
        if not compare_and_set_status(
            txn.id,
            txn.status,
            target,
            guard={"refunded_amount": txn.refunded_amount or 0},
            refunded_amount=refunded_total,
            refunded_at=now,
        ):
            db.session.rollback()
            continue

        debited = db.session.execute(
            update(Fee)
            .where(Fee.id == fee.id, Fee.paid_amount >= amount)
            .values(paid_amount=Fee.paid_amount - amount)
            .execution_options(synchronize_session=False)
        )
        if debited.rowcount != 1:
            db.session.rollback()
            continue

        fee = _load_fee(fee.id)
        if fee.is_installment_enabled:
            fee.installments = release_from_installments(fee.installments, amount)
        refresh_fee(fee, now)

        refund = PaymentRefund(transaction_id=txn.id, gateway_refund_id=refund_id, amount=amount, reason=reason)
        db.session.add(refund)
        db.session.add(
            LedgerEntry(
                campus_id=txn.campus_id,
                student_id=txn.student_id,
                fee_id=fee.id,
                ts=now,
                entry_type="debit",
                amount=amount,
                ref=refund_id,
                description=f"{txn.gateway} refund for {fee.name}",
                link_type="payment_refund",
                link_id=f"{txn.id}:{refund_id}",
            )
        )
        try:
            db.session.commit()
        except IntegrityError:
            # Same refund id recorded by a concurrent delivery
            db.session.rollback()
            continue
        log.info("refund %s of %s applied to txn %s (%s)", refund_id, amount, txn.id, target)
        break
    else:
        raise ReconciliationError("Refund is being updated, please retry", detail=f"CAS contention on txn {txn_id}")

    generate_refund_invoice(txn.id, refund)
    return refund, True
