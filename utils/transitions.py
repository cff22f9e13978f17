"""Payment transaction state machine.

    created -> pending -> authorized -> captured
    created|pending|authorized -> failed
    captured -> partially_refunded | refunded
    partially_refunded -> partially_refunded | refunded

Forward jumps along the happy path are allowed (a webhook can report a
capture for an order we still hold as ``created``). Anything else is a
no-op, which is how duplicate and out-of-order deliveries are absorbed.
"""
from __future__ import annotations

CREATED = "created"
PENDING = "pending"
AUTHORIZED = "authorized"
CAPTURED = "captured"
FAILED = "failed"
PARTIALLY_REFUNDED = "partially_refunded"
REFUNDED = "refunded"

STATUSES = (CREATED, PENDING, AUTHORIZED, CAPTURED, FAILED, PARTIALLY_REFUNDED, REFUNDED)

_HAPPY_PATH = (CREATED, PENDING, AUTHORIZED, CAPTURED)

_REFUND_FROM = {
    CAPTURED: {PARTIALLY_REFUNDED, REFUNDED},
    PARTIALLY_REFUNDED: {PARTIALLY_REFUNDED, REFUNDED},
}

# Statuses whose money counts toward the fee
SETTLED = frozenset({CAPTURED, PARTIALLY_REFUNDED, REFUNDED})


def can_transition(current: str, target: str) -> bool:
    if target == FAILED:
        return current in (CREATED, PENDING, AUTHORIZED)
    if target in (PARTIALLY_REFUNDED, REFUNDED):
        return target in _REFUND_FROM.get(current, ())
    if current in _HAPPY_PATH and target in _HAPPY_PATH:
        return _HAPPY_PATH.index(target) > _HAPPY_PATH.index(current)
    return False


def is_terminal(status: str) -> bool:
    return status in (FAILED, REFUNDED)
