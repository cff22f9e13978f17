from __future__ import annotations

import hashlib
from typing import Dict, Optional
from urllib.parse import parse_qsl

from utils.errors import ValidationError
from utils.gateways.base import (
    REJECTED,
    UNSETTLED,
    VERIFIED,
    GatewayAdapter,
    NormalizedEvent,
    OrderResult,
    constant_time_equals,
)
from utils.money import to_major, to_minor

_STATUS = {"success": "captured", "pending": "pending", "failure": "failed", "failed": "failed"}

_UDF = ("udf1", "udf2", "udf3", "udf4", "udf5")


def _sha512(text: str) -> str:
    return hashlib.sha512(text.encode("utf-8")).hexdigest()


def request_hash(fields: Dict[str, str], salt: str) -> str:
    """key|txnid|amount|productinfo|firstname|email|udf1..udf5||||||salt"""
    parts = [fields.get(k, "") for k in ("key", "txnid", "amount", "productinfo", "firstname", "email")]
    parts += [fields.get(k, "") for k in _UDF]
    parts += [""] * 5 + [salt]
    return _sha512("|".join(parts))


def response_hash(fields: Dict[str, str], salt: str) -> str:
    """Reverse hash PayU puts on its redirect and webhook posts."""
    parts = [salt, fields.get("status", "")] + [""] * 5
    parts += [fields.get(k, "") for k in reversed(_UDF)]
    parts += [fields.get(k, "") for k in ("email", "firstname", "productinfo", "amount", "txnid", "key")]
    text = "|".join(parts)
    if fields.get("additionalCharges"):
        text = f"{fields['additionalCharges']}|{text}"
    return _sha512(text)


def _form(raw_body: bytes) -> Dict[str, str]:
    return dict(parse_qsl((raw_body or b"").decode("utf-8"), keep_blank_values=True))


class PayUAdapter(GatewayAdapter):
    """PayU hosted checkout. The hash travels inside the form body."""

    name = "payu"

    def _checkout_url(self) -> str:
        env = str(self.config.get("PAYU_ENV") or "test").lower()
        return "https://secure.payu.in/_payment" if env == "production" else "https://test.payu.in/_payment"

    def _info_url(self) -> str:
        env = str(self.config.get("PAYU_ENV") or "test").lower()
        host = "info.payu.in" if env == "production" else "test.payu.in"
        return f"https://{host}/merchant/postservice.php?form=2"

    @classmethod
    def signature_from_request(cls, headers, params):
        return ""

    def create_order(self, fee, amount, *, transaction_ref, currency, customer=None):
        customer = customer or {}
        txnid = f"PU{transaction_ref}"[:25]
        fields = {
            "key": self.credentials.key_id,
            "txnid": txnid,
            "amount": str(to_major(amount)),
            "productinfo": (fee.name or "School fee")[:100],
            "firstname": customer.get("student_name") or "Student",
            "email": customer.get("parent_email") or customer.get("student_email") or "",
            "phone": customer.get("student_phone") or "",
            "udf1": fee.student_id,
            "udf2": fee.id,
            "udf3": fee.campus_id,
            "surl": self.return_url(),
            "furl": self.return_url(),
        }
        fields["hash"] = request_hash(fields, self.credentials.secret("merchant_salt"))
        return OrderResult(order_id=txnid, client_payload={"action": self._checkout_url(), "fields": fields, "currency": currency})

    def verify_client_payment(self, order_id, payment_id, signature):
        if self.stub:
            return VERIFIED
        key = self.credentials.key_id
        command = "verify_payment"
        data = self._request(
            "POST",
            self._info_url(),
            data={
                "key": key,
                "command": command,
                "var1": order_id,
                "hash": _sha512(f"{key}|{command}|{order_id}|{self.credentials.secret('merchant_salt')}"),
            },
        )
        detail = (data.get("transaction_details") or {}).get(order_id) or {}
        status = _STATUS.get(str(detail.get("status") or "").lower())
        if status == "failed":
            return REJECTED
        if status == "captured" and (not payment_id or str(detail.get("mihpayid") or "") == str(payment_id)):
            return VERIFIED
        return UNSETTLED

    def verify_webhook_signature(self, raw_body, signature_header, headers=None, params=None):
        fields = _form(raw_body)
        if fields.get("key") and fields["key"] != self.credentials.key_id:
            return False
        received = fields.get("hash") or signature_header
        return constant_time_equals(response_hash(fields, self.credentials.secret("merchant_salt")), received)

    def parse_webhook_event(self, raw_body):
        fields = _form(raw_body)
        if not fields:
            raise ValidationError("Malformed PayU notification body")
        status: Optional[str] = _STATUS.get(str(fields.get("status") or "").lower())
        return NormalizedEvent(
            event_type=f"payment.{fields.get('status') or 'unknown'}",
            gateway_order_id=fields.get("txnid"),
            gateway_payment_id=fields.get("mihpayid"),
            amount=to_minor(fields["amount"]) if fields.get("amount") else None,
            status=status,
            fee_id=fields.get("udf2") or None,
            campus_id=fields.get("udf3") or None,
            raw=fields,
        )
