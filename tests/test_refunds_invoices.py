import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from conftest import RZP_KEY_SECRET
from extensions import db
from models import Fee, PaymentInvoice, PaymentRefund, PaymentTransaction, ReconciliationIssue, Student
from utils.errors import ReconciliationError
from utils.gateways.razorpay import stub_signature
from utils.invoices import format_invoice_number, generate_invoice, list_invoices
from utils.ledger import ledger_for_fee
from utils.payments import initiate_payment, record_refund, verify_client_payment
from utils.schedule import utcnow


@pytest.fixture
def paid(app, razorpay_credentials, fee):
    """A fee settled in full through a client-verified razorpay payment."""
    app.config["PAYMENT_GATEWAY_STUB"] = True
    order = initiate_payment(fee.id, "razorpay", 500000)
    payment_id, signature = stub_signature(RZP_KEY_SECRET, order["order_id"], "pay_100")
    verify_client_payment(order["order_id"], payment_id, signature)
    return db.session.get(PaymentTransaction, order["transaction_id"])


def reload(model, pk):
    return db.session.get(model, pk, populate_existing=True)


def test_partial_refund(paid, fee):
    record_refund(paid.id, 200000, "rfnd_1", reason="Bus service cancelled")

    fee = reload(Fee, fee.id)
    assert (fee.paid_amount, fee.due_amount, fee.payment_status) == (300000, 200000, "partial")
    txn = reload(PaymentTransaction, paid.id)
    assert (txn.status, txn.refunded_amount) == ("partially_refunded", 200000)

    capture, refund = list_invoices(fee.campus_id, fee_id=fee.id)[::-1]
    assert capture.kind == "payment"
    assert refund.kind == "refund"
    assert refund.supersedes_invoice_id == capture.id
    assert refund.amount_paid == 300000
    assert refund.balance_due == 200000
    assert refund.line_items[-1]["amount"] == -200000
    # The original invoice is never rewritten
    assert capture.amount_paid == 500000
    assert capture.balance_due == 0


def test_refund_id_is_applied_once(paid, fee):
    record_refund(paid.id, 100000, "rfnd_1")
    again = record_refund(paid.id, 100000, "rfnd_1")
    assert again.gateway_refund_id == "rfnd_1"
    assert PaymentRefund.query.count() == 1
    assert reload(Fee, fee.id).paid_amount == 400000
    assert PaymentInvoice.query.count() == 2


def test_full_refund_reopens_fee(paid, fee):
    record_refund(paid.id, 300000, "rfnd_1")
    record_refund(paid.id, 200000, "rfnd_2")
    txn = reload(PaymentTransaction, paid.id)
    assert txn.status == "refunded"
    fee = reload(Fee, fee.id)
    assert (fee.paid_amount, fee.due_amount, fee.payment_status) == (0, 500000, "unpaid")


def test_refund_larger_than_payment(paid, fee):
    with pytest.raises(ReconciliationError):
        record_refund(paid.id, 600000, "rfnd_big")
    assert reload(Fee, fee.id).paid_amount == 500000
    assert reload(PaymentTransaction, paid.id).status == "captured"
    assert ReconciliationIssue.query.filter_by(kind="refund_exceeds_payment").count() == 1


def test_refund_before_capture(app, razorpay_credentials, fee):
    app.config["PAYMENT_GATEWAY_STUB"] = True
    order = initiate_payment(fee.id, "razorpay", 500000)
    with pytest.raises(ReconciliationError):
        record_refund(order["transaction_id"], 1000, "rfnd_x")
    assert ReconciliationIssue.query.filter_by(kind="refund_without_capture").count() == 1


def test_refund_webhook(paid, fee, post_razorpay):
    body = json.dumps(
        {
            "event": "refund.processed",
            "payload": {
                "payment": {"entity": {"id": "pay_100", "order_id": paid.gateway_order_id, "amount": 500000}},
                "refund": {"entity": {"id": "rfnd_wh", "payment_id": "pay_100", "amount": 200000}},
            },
        }
    ).encode()
    r = post_razorpay(body)
    assert r.get_json()["action"] == "refund"
    r = post_razorpay(body)
    assert r.get_json()["action"] == "refund_duplicate"
    assert reload(Fee, fee.id).paid_amount == 300000


def test_refund_webhook_for_unknown_order(razorpay_credentials, post_razorpay):
    body = json.dumps(
        {
            "event": "refund.processed",
            "payload": {
                "payment": {"entity": {"id": "pay_x", "order_id": "order_unknown", "amount": 500000}},
                "refund": {"entity": {"id": "rfnd_x", "payment_id": "pay_x", "amount": 1000}},
            },
        }
    ).encode()
    r = post_razorpay(body)
    assert r.status_code == 200
    assert r.get_json()["ok"] is False
    assert ReconciliationIssue.query.filter_by(kind="refund_for_unknown_payment").count() == 1


def test_ledger_records_both_directions(paid, fee):
    record_refund(paid.id, 50000, "rfnd_1")
    entries = ledger_for_fee(fee.id)
    assert [(e.entry_type, e.amount) for e in entries] == [("credit", 500000), ("debit", 50000)]
    assert entries[0].link_id == paid.id


# -----------------------------
# Invoices
# -----------------------------


def test_invoice_number_format():
    assert format_invoice_number(2026, 7) == "INV-2026-000007"


def test_invoice_numbers_increase_per_campus(app, razorpay_credentials, make_fee, student, campus):
    app.config["PAYMENT_GATEWAY_STUB"] = True
    sibling = Student(campus_id=campus.id, class_id="grade-3", name="Kiran Rao")
    db.session.add(sibling)
    db.session.commit()

    numbers = []
    for who in (student, sibling, student):
        fee = make_fee(who, amount="100")
        order = initiate_payment(fee.id, "razorpay", 10000)
        payment_id, signature = stub_signature(RZP_KEY_SECRET, order["order_id"])
        result = verify_client_payment(order["order_id"], payment_id, signature)
        numbers.append(db.session.get(PaymentInvoice, result.invoice_id).invoice_number)

    year = utcnow().year
    assert numbers == [format_invoice_number(year, n) for n in (1, 2, 3)]


def test_invoice_is_issued_once(paid):
    first = PaymentInvoice.query.one()
    assert generate_invoice(paid.id).id == first.id
    assert PaymentInvoice.query.count() == 1


def test_invoice_snapshot(paid, student, campus):
    invoice = PaymentInvoice.query.one()
    assert invoice.student_snapshot["student_name"] == "Asha Rao"
    assert invoice.school_snapshot["school_name"] == "Green Valley School"
    assert invoice.payment_method == "razorpay"
    assert invoice.gateway_payment_id == "pay_100"
    assert invoice.total_amount == 500000


def test_invoice_routes(paid, client, student):
    invoice = PaymentInvoice.query.one()
    with client.session_transaction() as sess:
        sess["student_id"] = student.id
    r = client.get(f"/payment/invoices/{invoice.id}")
    assert r.status_code == 200
    body = r.get_json()["invoice"]
    assert body["invoice_number"] == invoice.invoice_number
    assert body["amount_paid"] == "5000.00"
    assert body["balance_due"] == "0.00"

    r = client.get("/payment/invoices")
    assert [i["id"] for i in r.get_json()["invoices"]] == [invoice.id]

    with client.session_transaction() as sess:
        sess["student_id"] = "someone-else"
    assert client.get(f"/payment/invoices/{invoice.id}").status_code == 404


def test_refund_route(paid, admin_session, fee):
    r = admin_session.post(
        "/payment/refunds",
        json={"transaction_id": paid.id, "refund_id": "rfnd_admin", "amount": "2000", "reason": "Overcharged"},
    )
    assert r.status_code == 200
    assert r.get_json()["transaction"]["status"] == "partially_refunded"
    assert reload(Fee, fee.id).paid_amount == 300000

    r = admin_session.post("/payment/refunds", json={"transaction_id": paid.id, "refund_id": "rfnd_big", "amount": "9000"})
    assert r.status_code == 409
    assert "notified" in r.get_json()["message"]
