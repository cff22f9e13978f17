from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column in the service is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept ISO dates/datetimes (or objects) and return naive UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        # A bare due date means "by the end of that day"
        dt = datetime.combine(value, time(23, 59, 59))
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if len(text) == 10:
            dt = datetime.combine(dt.date(), time(23, 59, 59))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def grace_deadline(due_date: datetime, grace_days: int) -> datetime:
    return due_date + timedelta(days=int(grace_days or 0))


def is_past_grace(due_date: datetime, grace_days: int, now: datetime) -> bool:
    return now > grace_deadline(due_date, grace_days)


def is_overdue(due_amount: int, due_date: datetime, grace_days: int, now: datetime) -> bool:
    return due_amount > 0 and is_past_grace(due_date, grace_days, now)


def in_early_payment_window(deadline: Optional[datetime], at: datetime) -> bool:
    return deadline is not None and at < deadline


def due_within(due_date: datetime, now: datetime, lookahead_days: int) -> bool:
    return now <= due_date <= now + timedelta(days=int(lookahead_days or 0))
