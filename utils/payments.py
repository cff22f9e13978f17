"""Payment orders, client verification and provider webhooks.

Both confirmation paths (the payer's browser coming back with a signature,
and the provider's server-to-server webhook) end in
``utils.ledger.apply_transition``; whichever arrives first wins the
compare-and-set and the other becomes a no-op.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Fee, PaymentTransaction
from utils.audit import log_event, log_security_event
from utils.directory import get_student
from utils.errors import (
    AmountMismatchError,
    ConfigurationError,
    NotFoundError,
    ReconciliationError,
    SignatureVerificationError,
    ValidationError,
)
from utils.fee_policy import OVERDUE, PAID, next_installment
from utils.gateways import REFUND, adapter_class, adapters_for_webhook, available_gateways, get_adapter
from utils.gateways.base import UNSETTLED, VERIFIED, transaction_ref
from utils.ledger import apply_refund, apply_transition, report_issue, store_fee_state
from utils.money import to_major
from utils.schedule import utcnow
from utils.transitions import CAPTURED, CREATED, FAILED, PENDING, SETTLED

log = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    success: bool
    transaction_id: str
    status: str
    fee_status: Optional[str] = None
    invoice_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WebhookResult:
    action: str  # applied / duplicate / ignored / refund / refund_duplicate
    transaction_id: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _get_fee(fee_id: str) -> Fee:
    fee = db.session.get(Fee, fee_id)
    if fee is None or fee.is_deleted:
        raise NotFoundError("Fee not found", detail=f"fee {fee_id}")
    return fee


def _find_transaction(order_id: str, gateway: Optional[str] = None) -> Optional[PaymentTransaction]:
    q = PaymentTransaction.query.filter(PaymentTransaction.gateway_order_id == order_id)
    if gateway:
        q = q.filter(PaymentTransaction.gateway == gateway)
    return q.first()


# -----------------------------
# Initiation
# -----------------------------


def initiate_payment(
    fee_id: str,
    gateway: Optional[str],
    amount: int,
    *,
    initiated_by: Optional[str] = None,
    student_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Open a provider order for part or all of what the fee still owes.

    ``amount`` is in minor units. The fee itself is not changed; only a
    transaction in ``created`` is stored once the provider accepts the order.
    """
    fee = _get_fee(fee_id)
    if student_id and fee.student_id != student_id:
        raise NotFoundError("Fee not found", detail=f"fee {fee_id} does not belong to student {student_id}")
    store_fee_state(fee, utcnow())

    amount = int(amount)
    if amount <= 0:
        raise AmountMismatchError("Payment amount must be greater than zero")
    if amount > fee.due_amount:
        raise AmountMismatchError(
            f"Payment amount exceeds the {to_major(fee.due_amount)} {fee.currency} still due",
            detail=f"fee {fee.id} due {fee.due_amount} requested {amount}",
        )

    adapter = get_adapter(fee.campus_id, gateway)
    if adapter.credentials.currency and adapter.credentials.currency != fee.currency:
        raise ConfigurationError(
            f"{adapter.name} is not set up for {fee.currency} payments",
            detail=f"credential currency {adapter.credentials.currency} fee currency {fee.currency}",
        )
    student = get_student(fee.student_id)
    transaction_id = str(uuid.uuid4())
    order = adapter.create_order(
        fee,
        amount,
        transaction_ref=transaction_ref(transaction_id),
        currency=fee.currency,
        customer=student.as_dict() if student else None,
    )

    txn = PaymentTransaction(
        id=transaction_id,
        campus_id=fee.campus_id,
        fee_id=fee.id,
        student_id=fee.student_id,
        gateway=adapter.name,
        gateway_order_id=order.order_id,
        amount=amount,
        refunded_amount=0,
        currency=fee.currency,
        status=CREATED,
        webhook_verified=False,
        client_payload=order.client_payload,
        initiated_by=initiated_by or "client",
    )
    db.session.add(txn)
    db.session.commit()
    log.info("opened %s order %s for fee %s amount %s", adapter.name, order.order_id, fee.id, amount)

    return {
        "transaction_id": txn.id,
        "order_id": order.order_id,
        "gateway": adapter.name,
        "amount": to_major(amount),
        "currency": fee.currency,
        "client_payload": order.client_payload,
    }


# -----------------------------
# Client verification
# -----------------------------


def verify_client_payment(
    order_id: str,
    payment_id: str,
    signature: str,
    *,
    gateway: Optional[str] = None,
    student_id: Optional[str] = None,
    campus_id: Optional[str] = None,
    fail_on_reject: bool = True,
) -> VerificationResult:
    """Settle a payment the payer's browser reports, once the provider agrees.

    ``student_id`` and ``campus_id`` limit the lookup to what the caller may
    see. A payment the provider has not finished yet moves to ``pending`` and
    waits for the webhook. Only an outright rejection fails the transaction,
    and only when ``fail_on_reject`` is set.
    """
    txn = _find_transaction(order_id, gateway)
    if txn is None or (student_id and txn.student_id != student_id) or (campus_id and txn.campus_id != campus_id):
        raise NotFoundError("Payment not found", detail=f"order {order_id}")

    adapter = get_adapter(txn.campus_id, txn.gateway)
    # A GatewayTimeoutError here leaves the transaction untouched
    outcome = adapter.verify_client_payment(order_id, payment_id, signature)

    if outcome == VERIFIED:
        result = apply_transition(txn.id, CAPTURED, payment_id=payment_id)
        return VerificationResult(result.status in SETTLED, txn.id, result.status, result.fee_status, result.invoice_id)

    if outcome == UNSETTLED:
        log.info("%s order %s not settled yet, waiting for the webhook", txn.gateway, order_id)
        result = apply_transition(txn.id, PENDING)
        return VerificationResult(result.status in SETTLED, txn.id, result.status, result.fee_status, result.invoice_id)

    log_security_event(
        "payment_signature_invalid",
        target=txn.id,
        detail=f"{txn.gateway} client verification failed for order {order_id}",
        campus_id=txn.campus_id,
    )
    if not fail_on_reject:
        status = get_transaction_status(order_id, txn.gateway)
        return VerificationResult(False, txn.id, status["status"], status["fee_status"])
    result = apply_transition(txn.id, FAILED, failure_reason="client verification failed")
    return VerificationResult(False, txn.id, result.status, result.fee_status)


# -----------------------------
# Webhooks
# -----------------------------


def _adopt_order(adapter, event) -> Optional[PaymentTransaction]:
    """Create the transaction for a provider order we never recorded."""
    if not event.fee_id or not event.amount or not event.gateway_order_id:
        return None
    fee = db.session.get(Fee, event.fee_id)
    if fee is None or fee.campus_id != adapter.credentials.campus_id:
        return None
    txn = PaymentTransaction(
        campus_id=fee.campus_id,
        fee_id=fee.id,
        student_id=fee.student_id,
        gateway=adapter.name,
        gateway_order_id=event.gateway_order_id,
        amount=int(event.amount),
        refunded_amount=0,
        currency=event.currency or fee.currency,
        status=CREATED,
        webhook_verified=False,
        initiated_by="webhook",
    )
    db.session.add(txn)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _find_transaction(event.gateway_order_id, adapter.name)
    log.warning("adopted unknown %s order %s for fee %s", adapter.name, event.gateway_order_id, fee.id)
    return txn


def _check_callback_binding(adapter, txn: PaymentTransaction, params: Mapping[str, str]) -> None:
    """Callback URLs are issued per order; refuse one replayed for another."""
    if params.get("ref") == transaction_ref(txn.id) and params.get("fee_id") == txn.fee_id:
        return
    log_security_event(
        "webhook_order_mismatch",
        target=txn.id,
        detail=f"{adapter.name} callback for order {txn.gateway_order_id} carries another order's token",
        campus_id=txn.campus_id,
    )
    raise SignatureVerificationError("Invalid webhook signature", detail=f"callback token not issued for txn {txn.id}")


def handle_webhook(
    gateway: str,
    raw_body: bytes,
    signature_header: Optional[str],
    headers: Optional[Mapping[str, str]] = None,
    campus_id: Optional[str] = None,
    params: Optional[Mapping[str, str]] = None,
) -> WebhookResult:
    """Verify, normalise and apply one provider notification."""
    params = params or {}
    cls = adapter_class(gateway)
    candidates = adapters_for_webhook(cls.name, campus_id)
    if not candidates:
        log_security_event("webhook_unconfigured", target=cls.name, detail="no enabled credentials", campus_id=campus_id)
        raise ConfigurationError("Gateway is not configured", detail=f"{cls.name} campus={campus_id}")

    adapter = next(
        (a for a in candidates if a.verify_webhook_signature(raw_body, signature_header, headers, params)),
        None,
    )
    if adapter is None:
        log_security_event(
            "webhook_signature_invalid",
            target=cls.name,
            detail=f"{len(raw_body or b'')} byte body rejected",
            campus_id=campus_id,
        )
        raise SignatureVerificationError("Invalid webhook signature")

    event = adapter.parse_webhook_event(raw_body)
    if event.campus_id and event.campus_id != adapter.credentials.campus_id:
        log_security_event(
            "webhook_campus_mismatch",
            target=event.gateway_order_id,
            detail=f"event campus {event.campus_id} signed with campus {adapter.credentials.campus_id} credentials",
            campus_id=adapter.credentials.campus_id,
        )
        raise SignatureVerificationError("Invalid webhook signature")
    if event.status is None or not (event.gateway_order_id or event.gateway_payment_id):
        log.info("ignoring %s event %s", adapter.name, event.event_type)
        return WebhookResult("ignored")

    txn = None
    if event.gateway_order_id:
        txn = _find_transaction(event.gateway_order_id, adapter.name)
    if txn is None and event.gateway_payment_id:
        txn = PaymentTransaction.query.filter_by(gateway=adapter.name, gateway_payment_id=event.gateway_payment_id).first()
    if txn is not None and txn.campus_id != adapter.credentials.campus_id:
        raise SignatureVerificationError("Invalid webhook signature", detail=f"txn {txn.id} belongs to another campus")
    if adapter.signs_callback_params and txn is not None:
        _check_callback_binding(adapter, txn, params)

    if event.status == REFUND:
        if txn is None:
            report_issue(
                "refund_for_unknown_payment",
                f"{adapter.name} refund {event.refund_id} for unknown order {event.gateway_order_id}",
                campus_id=adapter.credentials.campus_id,
            )
            raise ReconciliationError("Refund for an unknown payment", detail=f"order {event.gateway_order_id}")
        if not event.refund_amount or not event.refund_id:
            raise ValidationError("Refund notification is missing its id or amount")
        _, created = apply_refund(txn.id, event.refund_amount, event.refund_id, reason=f"{adapter.name} {event.event_type}")
        txn = db.session.get(PaymentTransaction, txn.id, populate_existing=True)
        return WebhookResult("refund" if created else "refund_duplicate", txn.id, txn.status)

    if txn is None:
        # A token in the URL says nothing about orders it was not issued for
        txn = None if adapter.signs_callback_params else _adopt_order(adapter, event)
        if txn is None:
            report_issue(
                "orphan_webhook",
                f"{adapter.name} {event.event_type} for order {event.gateway_order_id} matches no transaction or fee",
                campus_id=adapter.credentials.campus_id,
            )
            return WebhookResult("ignored")

    if event.status == CAPTURED and txn.status == FAILED:
        report_issue(
            "capture_after_failure",
            f"{adapter.name} reports order {txn.gateway_order_id} captured but it was marked failed",
            campus_id=txn.campus_id,
            fee_id=txn.fee_id,
            transaction_id=txn.id,
        )
        return WebhookResult("ignored", txn.id, txn.status)

    if event.status == CAPTURED and adapter.signs_callback_params and txn.status not in SETTLED:
        outcome = adapter.verify_client_payment(txn.gateway_order_id, event.gateway_payment_id or "", "")
        if outcome != VERIFIED:
            log_security_event(
                "callback_capture_unconfirmed",
                target=txn.id,
                detail=f"{adapter.name} query answered {outcome} for order {txn.gateway_order_id}",
                campus_id=txn.campus_id,
            )
            return WebhookResult("ignored", txn.id, txn.status)

    result = apply_transition(
        txn.id,
        event.status,
        payment_id=event.gateway_payment_id,
        via_webhook=True,
        event_amount=event.amount if event.status == CAPTURED else None,
        failure_reason=event.event_type if event.status == FAILED else None,
    )
    return WebhookResult("applied" if result.applied else "duplicate", txn.id, result.status)


# -----------------------------
# Refunds and queries
# -----------------------------


def record_refund(transaction_id: str, amount: int, refund_id: str, reason: Optional[str] = None):
    txn = db.session.get(PaymentTransaction, transaction_id)
    if txn is None:
        raise NotFoundError("Payment not found", detail=f"transaction {transaction_id}")
    refund, created = apply_refund(txn.id, amount, refund_id, reason=reason)
    if created:
        log_event("payment_refunded", target=txn.id, detail=f"{refund_id} {amount}", campus_id=txn.campus_id)
    return refund


def get_transaction_status(order_id: str, gateway: Optional[str] = None) -> Dict[str, Any]:
    txn = _find_transaction(order_id, gateway)
    if txn is None:
        raise NotFoundError("Payment not found", detail=f"order {order_id}")
    data = txn.to_dict()
    fee = db.session.get(Fee, txn.fee_id)
    data["fee_status"] = fee.payment_status if fee else None
    return data


def list_fee_transactions(fee_id: str) -> List[PaymentTransaction]:
    return (
        PaymentTransaction.query.filter_by(fee_id=fee_id)
        .order_by(PaymentTransaction.created_at.desc())
        .all()
    )


def student_fee_summary(student_id: str, now=None) -> Dict[str, Any]:
    """Every live fee for a student with derived state brought up to date."""
    now = now or utcnow()
    fees = (
        Fee.query.filter(Fee.student_id == student_id, Fee.is_deleted.is_(False))
        .order_by(Fee.due_date)
        .all()
    )
    for fee in fees:
        store_fee_state(fee, now)

    groups: Dict[str, List[Dict[str, Any]]] = {"pending": [], "paid": [], "overdue": []}
    for fee in fees:
        data = fee.to_dict()
        if fee.payment_status == PAID:
            groups["paid"].append(data)
            continue
        upcoming = next_installment(fee) if fee.is_installment_enabled else None
        if upcoming:
            data["next_installment"] = {
                "installment_number": upcoming.get("installment_number"),
                "due_date": upcoming.get("due_date"),
                "amount": to_major(int(upcoming["amount"]) - int(upcoming.get("paid_amount", 0))),
            }
        groups["overdue" if fee.payment_status == OVERDUE else "pending"].append(data)
    student = get_student(student_id)
    return {
        "student_id": student_id,
        "total_due": to_major(sum(f.due_amount for f in fees)),
        "total_paid": to_major(sum(f.paid_amount for f in fees)),
        "gateways": available_gateways(student.campus_id) if student else [],
        **groups,
    }
