from __future__ import annotations

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base for every failure the fee/payment subsystem raises on purpose.

    ``message`` is always safe to show to the paying user; anything that may
    contain gateway responses or secrets goes in ``detail`` and is only
    logged.
    """

    code = "payment_error"
    http_status = 400

    def __init__(self, message: str, detail: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message}


class ValidationError(PaymentError):
    code = "validation_error"
    http_status = 400


class AmountMismatchError(PaymentError):
    code = "amount_mismatch"
    http_status = 400


class NotFoundError(PaymentError):
    code = "not_found"
    http_status = 404


class SignatureVerificationError(PaymentError):
    code = "signature_verification_failed"
    http_status = 400


class GatewayError(PaymentError):
    """Provider declined, was unreachable, or answered with garbage."""

    code = "gateway_error"
    http_status = 502


class GatewayTimeoutError(GatewayError):
    code = "gateway_timeout"
    http_status = 504


class ConfigurationError(PaymentError):
    code = "gateway_not_configured"
    http_status = 400


class ReconciliationError(PaymentError):
    code = "reconciliation_error"
    http_status = 409

    def to_dict(self) -> Dict[str, Any]:
        # Operators get the detail through the issue queue, never the payer
        return {
            "ok": False,
            "error": self.code,
            "message": "We could not complete this update. The school has been notified.",
        }
