from __future__ import annotations

import base64
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from utils.errors import ConfigurationError, GatewayError, ValidationError
from utils.gateways.base import (
    REJECTED,
    UNSETTLED,
    VERIFIED,
    GatewayAdapter,
    NormalizedEvent,
    OrderResult,
    constant_time_equals,
    hmac_sha256_hex,
)
from utils.money import to_minor

# Daraja result codes that mean the customer never completed the STK prompt
_PENDING_CODES = {"4999"}
# Error code the STK query answers with while the prompt is still open
_STILL_PROCESSING = "500.001.1001"


def normalize_msisdn(phone: str) -> str:
    p = (phone or "").strip()
    if p.startswith("+"):
        p = p[1:]
    if p.startswith("0"):
        p = "254" + p[1:]
    if p.startswith("254"):
        return p
    # Fallback: digits only, take last 9 with 254 prefix
    digits = "".join(ch for ch in p if ch.isdigit())
    if len(digits) >= 9:
        return "254" + digits[-9:]
    return p


def parse_callback_items(items: list[dict]) -> dict:
    out: Dict[str, Any] = {}
    for it in items or []:
        name = it.get("Name")
        val = it.get("Value")
        if name == "MpesaReceiptNumber" or (name and "Receipt" in name):
            out["receipt"] = val
        elif name == "Amount":
            out["amount"] = val
        elif name in ("PhoneNumber", "MSISDN"):
            out["phone"] = str(val)
        elif name == "TransactionDate":
            out["transaction_date"] = str(val)
    return out


def callback_token(callback_secret: str, campus_id: str, fee_id: str, ref: str) -> str:
    return hmac_sha256_hex(callback_secret, f"{campus_id}|{fee_id}|{ref}")


class MpesaAdapter(GatewayAdapter):
    """Safaricom Daraja STK push.

    Daraja does not sign callbacks, so each order gets its own callback URL
    carrying an HMAC token over the campus id, fee id and transaction ref.
    The token only proves the URL is ours; captures are still confirmed
    with an STK query before they count.
    """

    name = "mpesa"
    signs_callback_params = True

    def _base_url(self) -> str:
        env = str(self.config.get("DARAJA_ENV") or "sandbox").lower()
        return "https://api.safaricom.co.ke" if env == "production" else "https://sandbox.safaricom.co.ke"

    @classmethod
    def signature_from_request(cls, headers, params):
        return (params or {}).get("token", "")

    def _access_token(self) -> str:
        if self.stub:
            return "stub-token"
        data = self._request(
            "GET",
            f"{self._base_url()}/oauth/v1/generate?grant_type=client_credentials",
            auth=(self.credentials.secret("consumer_key"), self.credentials.secret("consumer_secret")),
        )
        token = data.get("access_token") or ""
        if not token:
            raise GatewayError("mpesa authentication failed.", detail="access_token missing in response")
        return token

    def _password(self, ts: str) -> str:
        raw = f"{self.credentials.key_id}{self.credentials.secret('passkey')}{ts}".encode("utf-8")
        return base64.b64encode(raw).decode("utf-8")

    def _callback_url(self, campus_id: str, fee_id: str, ref: str) -> str:
        token = callback_token(self.credentials.secret("callback_secret"), campus_id, fee_id, ref)
        cb = self.webhook_url(fee_id=fee_id, ref=ref, token=token)
        pr = urlparse(cb)
        host = (pr.hostname or "").lower()
        if (pr.scheme or "").lower() != "https" or not host:
            raise ConfigurationError("M-Pesa callbacks need a public HTTPS address", detail=f"callback url {cb!r}")
        if host in {"localhost", "127.0.0.1", "0.0.0.0"}:
            raise ConfigurationError("M-Pesa callbacks need a public HTTPS address", detail="callback url targets a local host")
        return cb

    def create_order(self, fee, amount, *, transaction_ref, currency, customer=None):
        if amount % 100:
            raise ValidationError("M-Pesa payments must be in whole shillings")
        phone = normalize_msisdn((customer or {}).get("student_phone") or "")
        if not phone:
            raise ValidationError("A phone number is required for M-Pesa payments")
        cb = self._callback_url(fee.campus_id, fee.id, transaction_ref)
        if self.stub:
            resp = {
                "ResponseCode": "0",
                "MerchantRequestID": f"MR{int(time.time())}",
                "CheckoutRequestID": f"ws_CO_{int(time.time() * 1000)}",
                "CustomerMessage": "Success. Request accepted for processing",
            }
        else:
            ts = datetime.now().strftime("%Y%m%d%H%M%S")
            short_code = self.credentials.key_id
            resp = self._request(
                "POST",
                f"{self._base_url()}/mpesa/stkpush/v1/processrequest",
                headers={"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"},
                json={
                    "BusinessShortCode": short_code,
                    "Password": self._password(ts),
                    "Timestamp": ts,
                    "TransactionType": "CustomerPayBillOnline",
                    "Amount": amount // 100,
                    "PartyA": phone,
                    "PartyB": short_code,
                    "PhoneNumber": phone,
                    "CallBackURL": cb,
                    "AccountReference": transaction_ref[:12],
                    "TransactionDesc": (fee.name or "School fee")[:13],
                },
            )
        if str(resp.get("ResponseCode")) != "0" or not resp.get("CheckoutRequestID"):
            raise GatewayError("mpesa declined the request.", detail=json.dumps(resp)[:500])
        return OrderResult(
            order_id=resp["CheckoutRequestID"],
            client_payload={
                "checkout_request_id": resp["CheckoutRequestID"],
                "merchant_request_id": resp.get("MerchantRequestID"),
                "customer_message": resp.get("CustomerMessage"),
                "amount": amount,
                "currency": currency,
            },
        )

    def verify_client_payment(self, order_id, payment_id, signature):
        if self.stub:
            return VERIFIED
        ts = datetime.now().strftime("%Y%m%d%H%M%S")
        try:
            data = self._request(
                "POST",
                f"{self._base_url()}/mpesa/stkpushquery/v1/query",
                headers={"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"},
                json={
                    "BusinessShortCode": self.credentials.key_id,
                    "Password": self._password(ts),
                    "Timestamp": ts,
                    "CheckoutRequestID": order_id,
                },
            )
        except GatewayError as err:
            if _STILL_PROCESSING in (err.detail or ""):
                return UNSETTLED
            raise
        code = str(data.get("ResultCode", ""))
        if code == "0":
            return VERIFIED
        if not code or code in _PENDING_CODES:
            return UNSETTLED
        return REJECTED

    def verify_webhook_signature(self, raw_body, signature_header, headers=None, params=None):
        params = params or {}
        campus_id = params.get("campus_id") or ""
        fee_id = params.get("fee_id") or ""
        ref = params.get("ref") or ""
        if not campus_id or not fee_id or not ref:
            return False
        expected = callback_token(self.credentials.secret("callback_secret"), campus_id, fee_id, ref)
        return constant_time_equals(expected, signature_header)

    def parse_webhook_event(self, raw_body):
        try:
            data = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Malformed M-Pesa callback body")
        cb = ((data.get("Body") or {}).get("stkCallback")) or {}
        code = str(cb.get("ResultCode", ""))
        items = parse_callback_items(((cb.get("CallbackMetadata") or {}).get("Item")) or [])
        if code == "0":
            status: Optional[str] = "captured"
        elif code in _PENDING_CODES:
            status = "pending"
        elif code:
            status = "failed"
        else:
            status = None
        amount = to_minor(items["amount"]) if items.get("amount") is not None else None
        return NormalizedEvent(
            event_type=f"stk_callback:{code}" if code else "stk_callback",
            gateway_order_id=cb.get("CheckoutRequestID"),
            gateway_payment_id=items.get("receipt"),
            amount=amount,
            status=status,
            currency="KES",
            raw=data,
        )

