"""Fixed-point currency helpers.

Amounts live as integer minor units (paise, cents) everywhere inside the
service. Decimal strings only appear at the HTTP/JSON boundary, through
``to_minor`` on the way in and ``to_major`` on the way out.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from utils.errors import ValidationError


def _scale(digits: int) -> Decimal:
    return Decimal(10) ** digits


def to_minor(value: Any, digits: int = 2) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount is required")
    if isinstance(value, int):
        return value * (10 ** digits)
    try:
        # str() keeps floats like 0.1 from dragging binary noise in
        dec = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return int((dec * _scale(digits)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_major(minor: int | None, digits: int = 2) -> str:
    value = Decimal(int(minor or 0)) / _scale(digits)
    return f"{value:.{digits}f}"


def format_money(minor: int | None, currency: str = "", digits: int = 2) -> str:
    value = Decimal(int(minor or 0)) / _scale(digits)
    text = f"{value:,.{digits}f}"
    return f"{currency} {text}".strip()


def percentage_of(minor: int, percent: Any) -> int:
    pct = Decimal(str(percent or 0))
    result = Decimal(int(minor)) * pct / Decimal(100)
    return int(result.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def inclusive_tax(minor: int, rate_percent: Any) -> int:
    """Tax component already contained in ``minor`` at a flat rate."""
    rate = Decimal(str(rate_percent or 0))
    if rate <= 0:
        return 0
    net = Decimal(int(minor)) * Decimal(100) / (Decimal(100) + rate)
    return int((Decimal(int(minor)) - net).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_percentage(value: Any, field: str = "percentage") -> Decimal:
    if value in (None, ""):
        return Decimal(0)
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if not pct.is_finite() or pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100")
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
