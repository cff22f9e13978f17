"""Invoice snapshots for captured payments and refunds.

An invoice is written once and never edited. A refund produces a new
invoice that points back at the one it supersedes.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Campus, Fee, InvoiceSequence, LedgerEntry, PaymentInvoice, PaymentRefund, PaymentTransaction
from utils.directory import get_student
from utils.errors import NotFoundError, ReconciliationError, ValidationError
from utils.fee_policy import PAID, PARTIAL
from utils.money import inclusive_tax, parse_percentage, to_major
from utils.schedule import utcnow
from utils.transitions import SETTLED

log = logging.getLogger(__name__)

_SEQUENCE_ATTEMPTS = 10

PAYMENT = "payment"
REFUND = "refund"


def format_invoice_number(year: int, sequence: int) -> str:
    return f"INV-{year}-{sequence:06d}"


def next_invoice_sequence(campus_id: str, year: int) -> int:
    """Advance the campus/year counter; the caller commits with the invoice."""
    for _ in range(_SEQUENCE_ATTEMPTS):
        row = db.session.get(InvoiceSequence, (campus_id, year), populate_existing=True)
        if row is None:
            db.session.add(InvoiceSequence(campus_id=campus_id, year=year, last_value=0))
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
            continue
        current = int(row.last_value)
        result = db.session.execute(
            update(InvoiceSequence)
            .where(
                InvoiceSequence.campus_id == campus_id,
                InvoiceSequence.year == year,
                InvoiceSequence.last_value == current,
            )
            .values(last_value=current + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return current + 1
        db.session.rollback()
    raise ReconciliationError("Invoice numbering is busy, please retry", detail=f"sequence contention {campus_id}/{year}")


def _ledger_entry(link_type: str, link_id: str) -> Optional[LedgerEntry]:
    return LedgerEntry.query.filter_by(link_type=link_type, link_id=link_id).order_by(LedgerEntry.id).first()


def _paid_through(fee_id: str, entry: Optional[LedgerEntry]) -> int:
    """Net amount the fee had received as of ``entry`` (inclusive)."""
    q = db.session.query(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.amount), 0)).filter(
        LedgerEntry.fee_id == fee_id
    )
    if entry is not None:
        q = q.filter(LedgerEntry.id <= entry.id)
    totals = dict(q.group_by(LedgerEntry.entry_type).all())
    return int(totals.get("credit", 0)) - int(totals.get("debit", 0))


def _snapshots(fee: Fee) -> tuple[Dict[str, Any], Dict[str, Any]]:
    student = get_student(fee.student_id)
    campus = db.session.get(Campus, fee.campus_id)
    return (student.as_dict() if student else {"student_id": fee.student_id}), (campus.snapshot() if campus else {})


def _build(txn: PaymentTransaction, fee: Fee, *, kind: str, source_key: str, when, line_items: list,
           amount_paid: int, paid_to_date: int, supersedes: Optional[str] = None) -> PaymentInvoice:
    subtotal = int(fee.total_amount)
    total = subtotal + int(fee.late_fee_amount) - int(fee.discount_amount)
    rate = parse_percentage(current_app.config.get("TAX_RATE_PERCENT", 0), "tax rate")
    balance = max(0, total - paid_to_date)
    student_snapshot, school_snapshot = _snapshots(fee)
    year = when.year
    sequence = next_invoice_sequence(txn.campus_id, year)
    return PaymentInvoice(
        invoice_number=format_invoice_number(year, sequence),
        campus_id=txn.campus_id,
        year=year,
        sequence=sequence,
        kind=kind,
        source_key=source_key,
        transaction_id=txn.id,
        supersedes_invoice_id=supersedes,
        fee_id=fee.id,
        student_id=fee.student_id,
        invoice_date=when,
        due_date=fee.due_date,
        line_items=line_items,
        subtotal=subtotal,
        late_fee=int(fee.late_fee_amount),
        discount=int(fee.discount_amount),
        tax_percentage=rate,
        tax_amount=inclusive_tax(total, rate),
        total_amount=total,
        amount_paid=amount_paid,
        balance_due=balance,
        currency=txn.currency,
        payment_status=PAID if balance == 0 else PARTIAL,
        payment_date=when,
        payment_method=txn.gateway,
        gateway_order_id=txn.gateway_order_id,
        gateway_payment_id=txn.gateway_payment_id,
        student_snapshot=student_snapshot,
        school_snapshot=school_snapshot,
    )


def _save_once(invoice: PaymentInvoice) -> PaymentInvoice:
    db.session.add(invoice)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = PaymentInvoice.query.filter_by(source_key=invoice.source_key).first()
        if existing is None:
            raise
        return existing
    log.info("issued invoice %s (%s) for txn %s", invoice.invoice_number, invoice.kind, invoice.transaction_id)
    return invoice


def _fee_items(fee: Fee) -> list:
    return [
        {"category": i.get("category"), "name": i.get("name") or i.get("category"), "amount": int(i["amount"])}
        for i in fee.items or []
    ]


def generate_invoice(transaction_id: str) -> PaymentInvoice:
    """Issue (or return the already issued) invoice for a captured payment."""
    txn = db.session.get(PaymentTransaction, transaction_id)
    if txn is None:
        raise NotFoundError("Payment not found", detail=f"transaction {transaction_id}")
    if txn.status not in SETTLED:
        raise ValidationError("Invoices are issued only for captured payments")

    source_key = f"{txn.id}:capture"
    existing = PaymentInvoice.query.filter_by(source_key=source_key).first()
    if existing is not None:
        return existing

    fee = db.session.get(Fee, txn.fee_id)
    entry = _ledger_entry("payment_transaction", txn.id)
    return _save_once(
        _build(
            txn,
            fee,
            kind=PAYMENT,
            source_key=source_key,
            when=txn.captured_at or utcnow(),
            line_items=_fee_items(fee),
            amount_paid=int(txn.amount),
            paid_to_date=_paid_through(fee.id, entry),
        )
    )


def generate_refund_invoice(transaction_id: str, refund: PaymentRefund) -> PaymentInvoice:
    txn = db.session.get(PaymentTransaction, transaction_id)
    if txn is None:
        raise NotFoundError("Payment not found", detail=f"transaction {transaction_id}")

    source_key = f"{txn.id}:refund:{refund.gateway_refund_id}"
    existing = PaymentInvoice.query.filter_by(source_key=source_key).first()
    if existing is not None:
        return existing

    previous = (
        PaymentInvoice.query.filter_by(transaction_id=txn.id)
        .order_by(PaymentInvoice.year.desc(), PaymentInvoice.sequence.desc())
        .first()
    )
    fee = db.session.get(Fee, txn.fee_id)
    entry = _ledger_entry("payment_refund", f"{txn.id}:{refund.gateway_refund_id}")
    refunded_through = (
        db.session.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(
            LedgerEntry.link_type == "payment_refund",
            LedgerEntry.link_id.like(f"{txn.id}:%"),
            LedgerEntry.id <= (entry.id if entry else 0),
        )
        .scalar()
    )
    line_items = _fee_items(fee) + [
        {"category": "refund", "name": refund.reason or "Refund", "amount": -int(refund.amount)},
    ]
    return _save_once(
        _build(
            txn,
            fee,
            kind=REFUND,
            source_key=source_key,
            when=refund.created_at or utcnow(),
            line_items=line_items,
            amount_paid=int(txn.amount) - int(refunded_through or 0),
            paid_to_date=_paid_through(fee.id, entry),
            supersedes=previous.id if previous else None,
        )
    )


def get_invoice(invoice_id: str) -> PaymentInvoice:
    invoice = db.session.get(PaymentInvoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found", detail=f"invoice {invoice_id}")
    return invoice


def list_invoices(campus_id: Optional[str], student_id: Optional[str] = None, fee_id: Optional[str] = None) -> List[PaymentInvoice]:
    q = PaymentInvoice.query
    if campus_id:
        q = q.filter(PaymentInvoice.campus_id == campus_id)
    if student_id:
        q = q.filter(PaymentInvoice.student_id == student_id)
    if fee_id:
        q = q.filter(PaymentInvoice.fee_id == fee_id)
    return q.order_by(PaymentInvoice.year.desc(), PaymentInvoice.sequence.desc()).all()


def invoice_as_dict(invoice: PaymentInvoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "kind": invoice.kind,
        "supersedes_invoice_id": invoice.supersedes_invoice_id,
        "invoice_date": invoice.invoice_date.isoformat() if invoice.invoice_date else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "fee_id": invoice.fee_id,
        "transaction_id": invoice.transaction_id,
        "line_items": [dict(item, amount=to_major(item["amount"])) for item in invoice.line_items or []],
        "subtotal": to_major(invoice.subtotal),
        "late_fee": to_major(invoice.late_fee),
        "discount": to_major(invoice.discount),
        "tax_percentage": str(invoice.tax_percentage),
        "tax_amount": to_major(invoice.tax_amount),
        "total_amount": to_major(invoice.total_amount),
        "amount_paid": to_major(invoice.amount_paid),
        "balance_due": to_major(invoice.balance_due),
        "currency": invoice.currency,
        "payment_status": invoice.payment_status,
        "payment_date": invoice.payment_date.isoformat() if invoice.payment_date else None,
        "payment_method": invoice.payment_method,
        "gateway_order_id": invoice.gateway_order_id,
        "gateway_payment_id": invoice.gateway_payment_id,
        "student": dict(invoice.student_snapshot or {}),
        "school": dict(invoice.school_snapshot or {}),
    }
