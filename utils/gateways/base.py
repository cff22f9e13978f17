from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests
from flask import current_app
from requests.exceptions import RequestException, SSLError, ConnectionError as RequestsConnectionError, Timeout as RequestsTimeout

from utils.credentials import GatewayCredentials
from utils.errors import GatewayError, GatewayTimeoutError

log = logging.getLogger(__name__)

# Pseudo-status for refund notifications; the ledger decides between
# refunded and partially_refunded from its own totals.
REFUND = "refund"

# Outcomes of verify_client_payment. UNSETTLED means the provider has not
# finished the payment yet; only REJECTED may fail a transaction.
VERIFIED = "verified"
REJECTED = "rejected"
UNSETTLED = "unsettled"


@dataclass
class OrderResult:
    order_id: str
    client_payload: Dict[str, Any]


@dataclass
class NormalizedEvent:
    event_type: str
    gateway_order_id: Optional[str]
    gateway_payment_id: Optional[str]
    amount: Optional[int]  # minor units
    status: Optional[str]  # transaction status, REFUND, or None when irrelevant
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    fee_id: Optional[str] = None
    campus_id: Optional[str] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def constant_time_equals(expected: str, received: str | None) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def transaction_ref(transaction_id: str) -> str:
    """Merchant reference sent to providers for one of our transaction ids."""
    return transaction_id.replace("-", "")[:20]


class GatewayAdapter:
    """Protocol translator for one payment provider.

    Built fresh for every request from the campus's stored credentials and
    the app config; holds no state beyond those values. Adapters never read
    or write fees or transactions.
    """

    name = ""
    signature_header = ""
    # True when the query string on the callback URL is covered by the signature
    signs_callback_params = False

    def __init__(
        self,
        credentials: GatewayCredentials,
        *,
        timeout: int = 15,
        stub: bool = False,
        callback_base_url: str = "",
        config: Optional[Mapping[str, Any]] = None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.stub = stub
        self.callback_base_url = (callback_base_url or "").rstrip("/")
        self.config = dict(config or {})

    @classmethod
    def from_app(cls, credentials: GatewayCredentials) -> "GatewayAdapter":
        cfg = current_app.config
        return cls(
            credentials,
            timeout=int(cfg.get("GATEWAY_TIMEOUT_SECONDS", 15)),
            stub=bool(cfg.get("PAYMENT_GATEWAY_STUB")),
            callback_base_url=cfg.get("PAYMENT_CALLBACK_BASE_URL", ""),
            config=cfg,
        )

    # -----------------------------
    # Capability set
    # -----------------------------

    def create_order(self, fee, amount: int, *, transaction_ref: str, currency: str, customer: Optional[dict] = None) -> OrderResult:
        raise NotImplementedError

    def verify_client_payment(self, order_id: str, payment_id: str, signature: str) -> str:
        """Return VERIFIED, REJECTED or UNSETTLED for a payment the payer reports."""
        raise NotImplementedError

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str | None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> bool:
        raise NotImplementedError

    def parse_webhook_event(self, raw_body: bytes) -> NormalizedEvent:
        raise NotImplementedError

    @classmethod
    def signature_from_request(cls, headers: Mapping[str, str], params: Mapping[str, str]) -> str:
        return headers.get(cls.signature_header, "") if cls.signature_header else ""

    # -----------------------------
    # Helpers
    # -----------------------------

    def webhook_url(self, **params: str) -> str:
        query = {"campus_id": self.credentials.campus_id}
        query.update({k: v for k, v in params.items() if v})
        return f"{self.callback_base_url}/payment/webhook/{self.name}?{urlencode(query)}"

    def return_url(self) -> str:
        return f"{self.callback_base_url}/payment/return/{self.name}"

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault("timeout", self.timeout)
        try:
            r = requests.request(method, url, **kwargs)
        except RequestsTimeout as e:
            raise GatewayTimeoutError(
                f"{self.name} did not respond in time. Please try again.",
                detail=f"{type(e).__name__}: {e}",
            )
        except (SSLError, RequestsConnectionError, RequestException) as e:
            raise GatewayError(
                f"Could not reach {self.name}. Please try again.",
                detail=f"Network/SSL error contacting {self.name}: {type(e).__name__}: {e}",
            )
        if r.status_code >= 400:
            log.warning("%s %s returned %s", self.name, url, r.status_code)
            raise GatewayError(
                f"{self.name} declined the request.",
                detail=f"{r.status_code} {r.text[:500]}",
            )
        try:
            return r.json()
        except ValueError:
            raise GatewayError(
                f"{self.name} returned an unexpected response.",
                detail="non-JSON response",
            )
