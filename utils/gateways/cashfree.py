from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from typing import Optional

from utils.errors import GatewayError, ValidationError
from utils.gateways.base import (
    REFUND,
    REJECTED,
    UNSETTLED,
    VERIFIED,
    GatewayAdapter,
    NormalizedEvent,
    OrderResult,
    constant_time_equals,
)
from utils.money import to_major, to_minor

_PAYMENT_STATUS = {
    "SUCCESS": "captured",
    "PENDING": "pending",
    "NOT_ATTEMPTED": "pending",
    "FAILED": "failed",
    "USER_DROPPED": "failed",
    "CANCELLED": "failed",
    "VOID": "failed",
}


class CashfreeAdapter(GatewayAdapter):
    name = "cashfree"
    signature_header = "x-webhook-signature"

    def _base_url(self) -> str:
        env = str(self.config.get("CASHFREE_ENV") or "sandbox").lower()
        return "https://api.cashfree.com/pg" if env == "production" else "https://sandbox.cashfree.com/pg"

    def _headers(self) -> dict:
        return {
            "x-client-id": self.credentials.key_id,
            "x-client-secret": self.credentials.secret("secret_key"),
            "x-api-version": str(self.config.get("CASHFREE_API_VERSION") or "2023-08-01"),
            "Content-Type": "application/json",
        }

    def create_order(self, fee, amount, *, transaction_ref, currency, customer=None):
        customer = customer or {}
        order_id = f"CF_{transaction_ref}"[:45]
        if self.stub:
            data = {"order_id": order_id, "payment_session_id": f"session_{uuid.uuid4().hex}"}
        else:
            data = self._request(
                "POST",
                f"{self._base_url()}/orders",
                headers=self._headers(),
                json={
                    "order_id": order_id,
                    "order_amount": float(to_major(amount)),
                    "order_currency": currency,
                    "customer_details": {
                        "customer_id": fee.student_id,
                        "customer_name": customer.get("student_name"),
                        "customer_email": customer.get("parent_email") or customer.get("student_email"),
                        "customer_phone": customer.get("student_phone") or "9999999999",
                    },
                    "order_meta": {
                        "return_url": self.return_url() + "?order_id={order_id}",
                        "notify_url": self.webhook_url(),
                    },
                    "order_tags": {"fee_id": fee.id, "campus_id": fee.campus_id},
                },
            )
        if not data.get("payment_session_id"):
            raise GatewayError("cashfree returned an unexpected response.", detail="payment_session_id missing")
        env = str(self.config.get("CASHFREE_ENV") or "sandbox").lower()
        return OrderResult(
            order_id=data.get("order_id") or order_id,
            client_payload={
                "payment_session_id": data["payment_session_id"],
                "order_id": data.get("order_id") or order_id,
                "mode": "production" if env == "production" else "sandbox",
                "amount": amount,
                "currency": currency,
            },
        )

    def verify_client_payment(self, order_id, payment_id, signature):
        # The drop-in checkout returns no signature; ask Cashfree directly.
        if self.stub:
            return VERIFIED
        payments = self._request("GET", f"{self._base_url()}/orders/{order_id}/payments", headers=self._headers())
        for p in payments if isinstance(payments, list) else []:
            if str(p.get("cf_payment_id")) != str(payment_id):
                continue
            status = _PAYMENT_STATUS.get(str(p.get("payment_status") or "").upper())
            if status == "captured":
                return VERIFIED
            if status == "failed":
                return REJECTED
            return UNSETTLED
        # Payments can take a moment to be listed after the redirect
        return UNSETTLED

    def verify_webhook_signature(self, raw_body, signature_header, headers=None, params=None):
        timestamp = ""
        for key, value in (headers or {}).items():
            if key.lower() == "x-webhook-timestamp":
                timestamp = value
                break
        if not timestamp:
            return False
        digest = hmac.new(
            self.credentials.secret("secret_key").encode("utf-8"),
            timestamp.encode("utf-8") + (raw_body or b""),
            hashlib.sha256,
        ).digest()
        return constant_time_equals(base64.b64encode(digest).decode("utf-8"), signature_header)

    def parse_webhook_event(self, raw_body):
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Malformed cashfree webhook body")
        event_type = body.get("type") or ""
        data = body.get("data") or {}
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        refund = data.get("refund") or {}
        tags = order.get("order_tags") or {}

        status: Optional[str] = None
        refund_amount = None
        if refund:
            if refund.get("refund_status") == "SUCCESS":
                status = REFUND
                refund_amount = to_minor(refund.get("refund_amount", 0))
        elif payment:
            status = _PAYMENT_STATUS.get(str(payment.get("payment_status") or "").upper())

        amount = payment.get("payment_amount", order.get("order_amount"))
        return NormalizedEvent(
            event_type=event_type,
            gateway_order_id=order.get("order_id") or refund.get("order_id"),
            gateway_payment_id=str(payment.get("cf_payment_id") or refund.get("cf_payment_id") or "") or None,
            amount=to_minor(amount) if amount is not None else None,
            status=status,
            refund_id=str(refund.get("cf_refund_id") or refund.get("refund_id") or "") or None,
            refund_amount=refund_amount,
            fee_id=tags.get("fee_id"),
            campus_id=tags.get("campus_id"),
            currency=payment.get("payment_currency") or order.get("order_currency"),
            raw=body,
        )
