from __future__ import annotations

import json
import time
import uuid
from typing import Optional

from utils.errors import GatewayError, ValidationError
from utils.gateways.base import (
    REFUND,
    REJECTED,
    VERIFIED,
    GatewayAdapter,
    NormalizedEvent,
    OrderResult,
    constant_time_equals,
    hmac_sha256_hex,
)

_STATUS_BY_EVENT = {
    "payment.authorized": "authorized",
    "payment.captured": "captured",
    "order.paid": "captured",
    "payment.failed": "failed",
    "refund.processed": REFUND,
}


class RazorpayAdapter(GatewayAdapter):
    name = "razorpay"
    signature_header = "X-Razorpay-Signature"

    def _base_url(self) -> str:
        return str(self.config.get("RAZORPAY_API_BASE") or "https://api.razorpay.com/v1").rstrip("/")

    def create_order(self, fee, amount, *, transaction_ref, currency, customer=None):
        notes = {"fee_id": fee.id, "campus_id": fee.campus_id, "student_id": fee.student_id}
        if self.stub:
            order = {"id": f"order_{uuid.uuid4().hex[:14]}", "amount": amount, "currency": currency}
        else:
            order = self._request(
                "POST",
                f"{self._base_url()}/orders",
                auth=(self.credentials.key_id, self.credentials.secret("key_secret")),
                json={"amount": int(amount), "currency": currency, "receipt": transaction_ref[:40], "notes": notes},
            )
        order_id = order.get("id")
        if not order_id:
            raise GatewayError("razorpay returned an unexpected response.", detail="order id missing")
        payload = {
            "key": self.credentials.key_id,
            "order_id": order_id,
            "amount": int(amount),
            "currency": currency,
            "name": fee.name,
            "notes": notes,
            "callback_url": self.return_url(),
        }
        if customer:
            payload["prefill"] = {
                "name": customer.get("student_name"),
                "email": customer.get("parent_email") or customer.get("student_email"),
                "contact": customer.get("student_phone"),
            }
        return OrderResult(order_id=order_id, client_payload=payload)

    def verify_client_payment(self, order_id, payment_id, signature):
        expected = hmac_sha256_hex(self.credentials.secret("key_secret"), f"{order_id}|{payment_id}")
        return VERIFIED if constant_time_equals(expected, signature) else REJECTED

    def verify_webhook_signature(self, raw_body, signature_header, headers=None, params=None):
        expected = hmac_sha256_hex(self.credentials.secret("webhook_secret"), raw_body)
        return constant_time_equals(expected, signature_header)

    def parse_webhook_event(self, raw_body):
        try:
            data = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Malformed razorpay webhook body")
        event = data.get("event") or ""
        payload = data.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}
        refund = (payload.get("refund") or {}).get("entity") or {}
        notes = payment.get("notes") or order.get("notes") or {}
        if not isinstance(notes, dict):
            notes = {}

        status = _STATUS_BY_EVENT.get(event)
        amount = payment.get("amount", order.get("amount_paid"))
        return NormalizedEvent(
            event_type=event,
            gateway_order_id=payment.get("order_id") or order.get("id"),
            gateway_payment_id=payment.get("id") or refund.get("payment_id"),
            amount=int(amount) if amount is not None else None,
            status=status,
            refund_id=refund.get("id"),
            refund_amount=int(refund["amount"]) if refund.get("amount") is not None else None,
            fee_id=notes.get("fee_id"),
            campus_id=notes.get("campus_id"),
            currency=payment.get("currency") or order.get("currency"),
            raw=data,
        )


def stub_signature(key_secret: str, order_id: str, payment_id: Optional[str] = None) -> tuple[str, str]:
    """Payment id and checkout signature the hosted checkout would return."""
    payment_id = payment_id or f"pay_{int(time.time() * 1000)}"
    return payment_id, hmac_sha256_hex(key_secret, f"{order_id}|{payment_id}")
