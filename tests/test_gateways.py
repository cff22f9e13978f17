import base64
import hashlib
import hmac
import json
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.parse import urlencode

import pytest
import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utils.credentials import GatewayCredentials, decrypt_secrets, masked_credentials, store_gateway_credentials
from utils.errors import ConfigurationError, GatewayError, GatewayTimeoutError, ValidationError
from utils.gateways import REFUND, adapter_class, get_adapter
from utils.gateways.base import REJECTED, UNSETTLED, VERIFIED, hmac_sha256_hex
from utils.gateways.cashfree import CashfreeAdapter
from utils.gateways.mpesa import MpesaAdapter, callback_token, normalize_msisdn
from utils.gateways.payu import PayUAdapter, request_hash, response_hash
from utils.gateways.razorpay import RazorpayAdapter, stub_signature

FEE = SimpleNamespace(id="fee-1", campus_id="campus-1", student_id="stu-1", name="Term 1 fees")


def creds(gateway, key_id, currency="INR", **secrets):
    return GatewayCredentials(campus_id="campus-1", gateway=gateway, key_id=key_id, secrets=secrets, currency=currency)


def razorpay(**kw):
    return RazorpayAdapter(creds("razorpay", "rzp_test_key", key_secret="ks", webhook_secret="ws"), **kw)


# -----------------------------
# Razorpay
# -----------------------------


def test_razorpay_client_signature():
    adapter = razorpay()
    payment_id, signature = stub_signature("ks", "order_1", "pay_1")
    assert adapter.verify_client_payment("order_1", payment_id, signature) == VERIFIED
    assert adapter.verify_client_payment("order_1", "pay_2", signature) == REJECTED
    assert adapter.verify_client_payment("order_1", payment_id, "") == REJECTED


def test_razorpay_webhook_signature_covers_raw_body():
    adapter = razorpay()
    body = b'{"event":"payment.captured"}'
    assert adapter.verify_webhook_signature(body, hmac_sha256_hex("ws", body))
    assert not adapter.verify_webhook_signature(body + b" ", hmac_sha256_hex("ws", body))
    assert not adapter.verify_webhook_signature(body, hmac_sha256_hex("ks", body))


def test_razorpay_create_order_posts_minor_units():
    adapter = razorpay(callback_base_url="https://school.example.org")
    response = MagicMock(status_code=200)
    response.json.return_value = {"id": "order_ABC", "amount": 250000, "currency": "INR"}
    with patch("utils.gateways.base.requests.request", return_value=response) as req:
        order = adapter.create_order(FEE, 250000, transaction_ref="ref123", currency="INR")
    assert order.order_id == "order_ABC"
    kwargs = req.call_args.kwargs
    assert kwargs["json"]["amount"] == 250000
    assert kwargs["json"]["notes"]["fee_id"] == "fee-1"
    assert kwargs["auth"] == ("rzp_test_key", "ks")
    assert order.client_payload["callback_url"] == "https://school.example.org/payment/return/razorpay"


def test_razorpay_timeout_and_errors():
    adapter = razorpay()
    with patch("utils.gateways.base.requests.request", side_effect=requests.Timeout("slow")):
        with pytest.raises(GatewayTimeoutError):
            adapter.create_order(FEE, 100, transaction_ref="r", currency="INR")

    declined = MagicMock(status_code=400, text='{"error":{"description":"bad amount"}}')
    with patch("utils.gateways.base.requests.request", return_value=declined):
        with pytest.raises(GatewayError) as exc:
            adapter.create_order(FEE, 100, transaction_ref="r", currency="INR")
    assert "bad amount" in exc.value.detail
    assert "bad amount" not in exc.value.message


def test_razorpay_event_normalisation():
    adapter = razorpay()
    body = json.dumps(
        {
            "event": "refund.processed",
            "payload": {
                "payment": {"entity": {"id": "pay_1", "order_id": "order_1", "amount": 500000, "notes": {"fee_id": "fee-1"}}},
                "refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1", "amount": 200000}},
            },
        }
    ).encode()
    event = adapter.parse_webhook_event(body)
    assert event.status == REFUND
    assert event.gateway_order_id == "order_1"
    assert event.refund_id == "rfnd_1"
    assert event.refund_amount == 200000
    assert event.fee_id == "fee-1"

    ignored = adapter.parse_webhook_event(b'{"event":"invoice.paid","payload":{}}')
    assert ignored.status is None


# -----------------------------
# Cashfree
# -----------------------------


def test_cashfree_webhook_signature_uses_timestamp():
    adapter = CashfreeAdapter(creds("cashfree", "cf_app", secret_key="cf_secret"))
    body = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
    ts = "1760000000"
    sig = base64.b64encode(hmac.new(b"cf_secret", ts.encode() + body, hashlib.sha256).digest()).decode()
    assert adapter.verify_webhook_signature(body, sig, {"X-Webhook-Timestamp": ts})
    assert not adapter.verify_webhook_signature(body, sig, {"X-Webhook-Timestamp": "1760000001"})
    assert not adapter.verify_webhook_signature(body, sig, {})


def test_cashfree_events():
    adapter = CashfreeAdapter(creds("cashfree", "cf_app", secret_key="cf_secret"))
    success = json.dumps(
        {
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": "CF_abc", "order_amount": 5000, "order_tags": {"fee_id": "fee-1", "campus_id": "campus-1"}},
                "payment": {"cf_payment_id": 98765, "payment_status": "SUCCESS", "payment_amount": 5000, "payment_currency": "INR"},
            },
        }
    ).encode()
    event = adapter.parse_webhook_event(success)
    assert (event.status, event.amount, event.gateway_payment_id) == ("captured", 500000, "98765")
    assert event.campus_id == "campus-1"

    pending_refund = json.dumps(
        {"type": "REFUND_STATUS_WEBHOOK", "data": {"refund": {"order_id": "CF_abc", "refund_status": "PENDING", "refund_amount": 10}}}
    ).encode()
    assert adapter.parse_webhook_event(pending_refund).status is None


def test_cashfree_client_verification_asks_the_api():
    adapter = CashfreeAdapter(creds("cashfree", "cf_app", secret_key="cf_secret"))
    response = MagicMock(status_code=200)
    response.json.return_value = [
        {"cf_payment_id": 111, "payment_status": "SUCCESS"},
        {"cf_payment_id": 333, "payment_status": "PENDING"},
        {"cf_payment_id": 444, "payment_status": "USER_DROPPED"},
    ]
    with patch("utils.gateways.base.requests.request", return_value=response) as req:
        assert adapter.verify_client_payment("CF_abc", "111", "") == VERIFIED
        assert adapter.verify_client_payment("CF_abc", "333", "") == UNSETTLED
        assert adapter.verify_client_payment("CF_abc", "444", "") == REJECTED
        # Not listed yet
        assert adapter.verify_client_payment("CF_abc", "222", "") == UNSETTLED
    assert req.call_args.args[1].endswith("/orders/CF_abc/payments")


# -----------------------------
# PayU
# -----------------------------


def test_payu_request_and_response_hashes():
    adapter = PayUAdapter(creds("payu", "payu_key", merchant_salt="salt"), stub=True)
    order = adapter.create_order(FEE, 500000, transaction_ref="abc123", currency="INR", customer={"student_name": "Asha"})
    fields = order.client_payload["fields"]
    assert fields["amount"] == "5000.00"
    assert fields["hash"] == request_hash(fields, "salt")
    assert fields["udf2"] == "fee-1"

    posted = dict(fields, status="success", mihpayid="40399")
    posted.pop("hash")
    posted["hash"] = response_hash(posted, "salt")
    body = urlencode(posted).encode()
    assert adapter.verify_webhook_signature(body, "")

    tampered = urlencode(dict(posted, amount="1.00")).encode()
    assert not adapter.verify_webhook_signature(tampered, "")

    event = adapter.parse_webhook_event(body)
    assert (event.status, event.amount, event.fee_id) == ("captured", 500000, "fee-1")


def test_payu_verification_waits_for_a_final_status():
    adapter = PayUAdapter(creds("payu", "payu_key", merchant_salt="salt"))

    def answer(status, mihpayid="40399"):
        response = MagicMock(status_code=200)
        response.json.return_value = {"transaction_details": {"txn_1": {"status": status, "mihpayid": mihpayid}}}
        return response

    with patch("utils.gateways.base.requests.request", return_value=answer("success")):
        assert adapter.verify_client_payment("txn_1", "40399", "") == VERIFIED
        assert adapter.verify_client_payment("txn_1", "99999", "") == UNSETTLED
    with patch("utils.gateways.base.requests.request", return_value=answer("pending")):
        assert adapter.verify_client_payment("txn_1", "40399", "") == UNSETTLED
    with patch("utils.gateways.base.requests.request", return_value=answer("failure")):
        assert adapter.verify_client_payment("txn_1", "40399", "") == REJECTED


# -----------------------------
# M-Pesa
# -----------------------------


def mpesa(**kw):
    kw.setdefault("callback_base_url", "https://school.example.org")
    return MpesaAdapter(
        creds("mpesa", "174379", currency="KES", consumer_key="ck", consumer_secret="cs", passkey="pk", callback_secret="cb"),
        **kw,
    )


def test_normalize_msisdn():
    assert normalize_msisdn("0712345678") == "254712345678"
    assert normalize_msisdn("+254712345678") == "254712345678"
    assert normalize_msisdn("712 345 678") == "254712345678"


def test_mpesa_order_rules():
    adapter = mpesa(stub=True)
    with pytest.raises(ValidationError):
        adapter.create_order(FEE, 150050, transaction_ref="r", currency="KES", customer={"student_phone": "0712345678"})
    with pytest.raises(ValidationError):
        adapter.create_order(FEE, 150000, transaction_ref="r", currency="KES", customer={})

    local = mpesa(stub=True, callback_base_url="http://localhost:5000")
    with pytest.raises(ConfigurationError):
        local.create_order(FEE, 150000, transaction_ref="r", currency="KES", customer={"student_phone": "0712345678"})

    order = adapter.create_order(FEE, 150000, transaction_ref="r", currency="KES", customer={"student_phone": "0712345678"})
    assert order.order_id.startswith("ws_CO_")


def test_mpesa_callback_url_is_bound_to_the_order():
    adapter = mpesa()
    url = adapter._callback_url("campus-1", "fee-1", "ref1")
    assert "ref=ref1" in url
    assert f"token={callback_token('cb', 'campus-1', 'fee-1', 'ref1')}" in url


def test_mpesa_stk_query_outcomes():
    adapter = mpesa()
    token = MagicMock(status_code=200)
    token.json.return_value = {"access_token": "tok"}

    def query(result_code):
        response = MagicMock(status_code=200)
        response.json.return_value = {"ResultCode": result_code, "ResultDesc": "..."}
        return response

    with patch("utils.gateways.base.requests.request", side_effect=[token, query("0")]):
        assert adapter.verify_client_payment("ws_CO_1", "QK1234", "") == VERIFIED
    with patch("utils.gateways.base.requests.request", side_effect=[token, query("1032")]):
        assert adapter.verify_client_payment("ws_CO_1", "", "") == REJECTED
    with patch("utils.gateways.base.requests.request", side_effect=[token, query("4999")]):
        assert adapter.verify_client_payment("ws_CO_1", "", "") == UNSETTLED

    processing = MagicMock(status_code=500, text='{"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}')
    with patch("utils.gateways.base.requests.request", side_effect=[token, processing]):
        assert adapter.verify_client_payment("ws_CO_1", "", "") == UNSETTLED

    broken = MagicMock(status_code=500, text="upstream error")
    with patch("utils.gateways.base.requests.request", side_effect=[token, broken]):
        with pytest.raises(GatewayError):
            adapter.verify_client_payment("ws_CO_1", "", "")


def test_mpesa_callback_token_and_parsing():
    adapter = mpesa()
    token = callback_token("cb", "campus-1", "fee-1", "ref1")
    params = {"campus_id": "campus-1", "fee_id": "fee-1", "ref": "ref1", "token": token}
    assert MpesaAdapter.signature_from_request({}, params) == token
    assert adapter.verify_webhook_signature(b"{}", token, {}, params)
    assert not adapter.verify_webhook_signature(b"{}", token, {}, dict(params, fee_id="fee-2"))
    assert not adapter.verify_webhook_signature(b"{}", token, {}, dict(params, ref="ref2"))
    assert not adapter.verify_webhook_signature(b"{}", token, {}, {k: v for k, v in params.items() if k != "ref"})

    body = json.dumps(
        {
            "Body": {
                "stkCallback": {
                    "CheckoutRequestID": "ws_CO_1",
                    "ResultCode": 0,
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "Amount", "Value": 1500},
                            {"Name": "MpesaReceiptNumber", "Value": "QK1234"},
                            {"Name": "PhoneNumber", "Value": 254712345678},
                        ]
                    },
                }
            }
        }
    ).encode()
    event = adapter.parse_webhook_event(body)
    assert (event.status, event.amount, event.gateway_payment_id) == ("captured", 150000, "QK1234")

    cancelled = json.dumps({"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": 1032}}}).encode()
    assert adapter.parse_webhook_event(cancelled).status == "failed"


# -----------------------------
# Credentials and selection
# -----------------------------


def test_unknown_gateway():
    with pytest.raises(ValidationError):
        adapter_class("paypal")


def test_credentials_are_encrypted_at_rest(campus):
    row = store_gateway_credentials(campus.id, "cashfree", "cf_app_id", {"secret_key": "cf_secret"})
    assert "cf_secret" not in row.encrypted_secrets
    assert decrypt_secrets(row.encrypted_secrets) == {"secret_key": "cf_secret"}
    listed = masked_credentials(campus.id)
    assert listed[0]["key_id"] == "cf****id"
    assert "secrets" not in listed[0]


def test_missing_secret_is_rejected(campus):
    with pytest.raises(ValidationError):
        store_gateway_credentials(campus.id, "razorpay", "rzp_key", {"key_secret": "only-one"})


def test_adapter_selection(campus, razorpay_credentials):
    store_gateway_credentials(campus.id, "cashfree", "cf_app", {"secret_key": "cf_secret"})
    assert get_adapter(campus.id).name == "razorpay"
    assert get_adapter(campus.id, "cashfree").name == "cashfree"
    with pytest.raises(ConfigurationError):
        get_adapter(campus.id, "payu")
    with pytest.raises(ConfigurationError):
        get_adapter("no-such-campus")
