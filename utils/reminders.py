from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import update

from extensions import db
from models import Fee, ReminderLog
from utils.directory import get_campus, get_student
from utils.fee_policy import OVERDUE, PAID, effective_due_date
from utils.ledger import store_fee_state
from utils.money import format_money
from utils.notify import NotificationChannel, default_channel
from utils.schedule import due_within, utcnow

log = logging.getLogger(__name__)

UPCOMING = "upcoming"


@dataclass
class SweepResult:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class _SafeDict(dict):
    """Leave unknown placeholders in the text instead of raising."""

    def __missing__(self, key):
        return "{" + key + "}"


def compose_reminder(fee: Fee, kind: str, student_name: str, school_name: str) -> tuple[str, str]:
    cfg = current_app.config
    values = _SafeDict(
        student_name=student_name,
        fee_name=fee.name,
        reminder_kind=kind,
        academic_year=fee.academic_year or "",
        due_amount=format_money(fee.due_amount, fee.currency),
        due_date=effective_due_date(fee).date().isoformat(),
        school_name=school_name,
    )
    subject = cfg.get("REMINDER_SUBJECT_TEMPLATE", "Fee reminder: {fee_name}").format_map(values)
    body = cfg.get("REMINDER_BODY_TEMPLATE", "{fee_name}: {due_amount} due by {due_date}").format_map(values)
    return subject, body


def _claim(fee: Fee, now: datetime, max_per_fee: int) -> bool:
    """Take the fee for this sweep; a concurrent sweep loses the update."""
    previous = fee.last_reminder_at
    stmt = update(Fee).where(Fee.id == fee.id, Fee.reminder_count < max_per_fee)
    if previous is None:
        stmt = stmt.where(Fee.last_reminder_at.is_(None))
    else:
        stmt = stmt.where(Fee.last_reminder_at == previous)
    result = db.session.execute(
        stmt.values(last_reminder_at=now, reminder_count=Fee.reminder_count + 1).execution_options(
            synchronize_session=False
        )
    )
    db.session.commit()
    return result.rowcount == 1


def _reminder_kind(fee: Fee, now: datetime, lookahead_days: int) -> Optional[str]:
    if fee.payment_status == OVERDUE:
        return OVERDUE
    if due_within(effective_due_date(fee), now, lookahead_days):
        return UPCOMING
    return None


def run_reminder_sweep(
    now: Optional[datetime] = None,
    channel: Optional[NotificationChannel] = None,
    lookahead_days: Optional[int] = None,
) -> SweepResult:
    """One pass over unpaid fees, sending at most one reminder per fee.

    Safe to run concurrently with another sweep: each fee is claimed with a
    conditional update before anything is sent.
    """
    cfg = current_app.config
    now = now or utcnow()
    channel = channel or default_channel()
    if lookahead_days is None:
        lookahead_days = int(cfg.get("REMINDER_LOOKAHEAD_DAYS", 3))
    min_gap = timedelta(hours=int(cfg.get("REMINDER_MIN_INTERVAL_HOURS", 24)))
    max_per_fee = int(cfg.get("REMINDER_MAX_PER_FEE", 10))

    result = SweepResult()
    fees = (
        Fee.query.filter(Fee.is_deleted.is_(False), Fee.payment_status != PAID)
        .order_by(Fee.due_date, Fee.id)
        .all()
    )
    for fee in fees:
        result.processed += 1
        store_fee_state(fee, now)

        kind = None if fee.payment_status == PAID else _reminder_kind(fee, now, lookahead_days)
        if kind is None:
            result.skipped += 1
            continue
        if (fee.reminder_count or 0) >= max_per_fee:
            result.skipped += 1
            continue
        if fee.last_reminder_at and now - fee.last_reminder_at < min_gap:
            result.skipped += 1
            continue
        if not _claim(fee, now, max_per_fee):
            result.skipped += 1
            continue

        student = get_student(fee.student_id)
        campus = get_campus(fee.campus_id)
        recipient = student.contact_email if student else None
        subject, body = compose_reminder(
            fee,
            kind,
            student.name if student else "Student",
            campus.name if campus else "",
        )

        error = None
        try:
            delivered = channel.send(recipient, subject, body)
            if not delivered:
                error = "no deliverable address" if not recipient else "channel declined"
        except Exception as exc:
            log.exception("reminder for fee %s to %s failed", fee.id, recipient)
            delivered = False
            error = f"{type(exc).__name__}: {exc}"

        db.session.add(
            ReminderLog(
                fee_id=fee.id,
                student_id=fee.student_id,
                channel=channel.name,
                recipient=recipient,
                kind=kind,
                subject=subject[:255],
                status="sent" if delivered else "failed",
                error=(error or None) and error[:255],
            )
        )
        db.session.commit()

        if delivered:
            result.sent += 1
        else:
            result.failed += 1
            result.failures.append({"fee_id": fee.id, "recipient": recipient, "error": error})

    log.info(
        "reminder sweep: processed=%s sent=%s skipped=%s failed=%s",
        result.processed,
        result.sent,
        result.skipped,
        result.failed,
    )
    return result
