from __future__ import annotations

from typing import Dict, List, Optional, Type

from utils.credentials import enabled_rows, load_credentials
from utils.errors import ConfigurationError, ValidationError
from utils.gateways.base import REFUND, GatewayAdapter, NormalizedEvent, OrderResult
from utils.gateways.cashfree import CashfreeAdapter
from utils.gateways.mpesa import MpesaAdapter
from utils.gateways.payu import PayUAdapter
from utils.gateways.razorpay import RazorpayAdapter

ADAPTERS: Dict[str, Type[GatewayAdapter]] = {
    "razorpay": RazorpayAdapter,
    "cashfree": CashfreeAdapter,
    "payu": PayUAdapter,
    "mpesa": MpesaAdapter,
}


def adapter_class(gateway: str) -> Type[GatewayAdapter]:
    cls = ADAPTERS.get((gateway or "").strip().lower())
    if cls is None:
        raise ValidationError(f"Unsupported payment gateway: {gateway}")
    return cls


def get_adapter(campus_id: str, gateway: Optional[str] = None) -> GatewayAdapter:
    """Build a fresh adapter for one request.

    Picks the requested gateway when the campus has it enabled, otherwise
    the campus default (the first enabled row when none is marked default).
    """
    if gateway:
        adapter_class(gateway)
        rows = enabled_rows(campus_id, gateway.strip().lower())
    else:
        rows = enabled_rows(campus_id)
    if not rows:
        raise ConfigurationError(
            "Online payments are not configured for this school",
            detail=f"no enabled credentials campus={campus_id} gateway={gateway}",
        )
    row = rows[0]
    return ADAPTERS[row.gateway].from_app(load_credentials(row))


def adapters_for_webhook(gateway: str, campus_id: Optional[str] = None) -> List[GatewayAdapter]:
    """Candidate adapters a webhook may be verified against."""
    cls = adapter_class(gateway)
    return [cls.from_app(load_credentials(row)) for row in enabled_rows(campus_id, cls.name)]


def available_gateways(campus_id: str) -> List[str]:
    return [row.gateway for row in enabled_rows(campus_id)]


__all__ = [
    "ADAPTERS",
    "REFUND",
    "GatewayAdapter",
    "NormalizedEvent",
    "OrderResult",
    "adapter_class",
    "adapters_for_webhook",
    "available_gateways",
    "get_adapter",
]
