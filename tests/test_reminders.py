import os
import sys
from datetime import timedelta
from unittest.mock import patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from extensions import db, mail
from models import AuditLog, Fee, ReminderLog, Student
from scheduler import reminder_job, start_scheduler
from utils.notify import NotificationChannel, NullChannel
from utils.reminders import run_reminder_sweep
from utils.schedule import utcnow


class FlakyChannel(NotificationChannel):
    name = "flaky"

    def __init__(self, broken):
        self.broken = broken
        self.sent = []

    def send(self, recipient, subject, body):
        if recipient == self.broken:
            raise RuntimeError("smtp down")
        self.sent.append(recipient)
        return True


def test_upcoming_fee_gets_one_reminder(make_fee, student):
    fee = make_fee(student, days=2)
    channel = NullChannel()
    now = utcnow()

    result = run_reminder_sweep(now=now, channel=channel)
    assert (result.sent, result.failed) == (1, 0)
    recipient, subject, body = channel.sent[0]
    assert recipient == "parent@example.org"
    assert "Asha Rao" in subject
    assert "upcoming" in body
    assert "INR 5,000.00" in body

    fee = db.session.get(Fee, fee.id, populate_existing=True)
    assert fee.reminder_count == 1
    assert fee.last_reminder_at == now


def test_reminders_are_rate_limited(make_fee, student):
    make_fee(student, days=2)
    channel = NullChannel()
    now = utcnow()

    run_reminder_sweep(now=now, channel=channel)
    again = run_reminder_sweep(now=now + timedelta(hours=1), channel=channel)
    assert (again.sent, again.skipped) == (0, 1)

    later = run_reminder_sweep(now=now + timedelta(hours=25), channel=channel)
    assert later.sent == 1
    assert len(channel.sent) == 2


def test_reminder_cap_per_fee(app, make_fee, student):
    app.config["REMINDER_MAX_PER_FEE"] = 1
    make_fee(student, days=2)
    channel = NullChannel()
    now = utcnow()
    run_reminder_sweep(now=now, channel=channel)
    result = run_reminder_sweep(now=now + timedelta(hours=30), channel=channel)
    assert result.sent == 0
    assert len(channel.sent) == 1


def test_far_future_and_paid_fees_are_left_alone(make_fee, student):
    make_fee(student, days=40)
    paid = make_fee(student, days=2, name="Paid already")
    paid.paid_amount = paid.total_amount
    paid.due_amount = 0
    paid.payment_status = "paid"
    db.session.commit()

    channel = NullChannel()
    result = run_reminder_sweep(channel=channel)
    assert result.sent == 0
    assert channel.sent == []


def test_overdue_reminder(make_fee, student):
    make_fee(student, days=-5)
    channel = NullChannel()
    result = run_reminder_sweep(channel=channel)
    assert result.sent == 1
    assert "overdue" in channel.sent[0][2]
    assert ReminderLog.query.one().kind == "overdue"


def test_one_bad_recipient_does_not_stop_the_sweep(campus, make_fee, student):
    other = Student(campus_id=campus.id, class_id="grade-5", name="Ravi Kumar", guardian_email="broken@example.org")
    db.session.add(other)
    db.session.commit()
    make_fee(student, days=2)
    broken_fee = make_fee(other, days=2)

    channel = FlakyChannel("broken@example.org")
    result = run_reminder_sweep(channel=channel)
    assert (result.sent, result.failed) == (1, 1)
    assert channel.sent == ["parent@example.org"]
    assert result.failures[0]["fee_id"] == broken_fee.id

    failed = ReminderLog.query.filter_by(status="failed").one()
    assert failed.error == "RuntimeError: smtp down"
    # The attempt still counts against the fee
    assert db.session.get(Fee, broken_fee.id, populate_existing=True).reminder_count == 1


def test_reminders_go_out_by_mail(make_fee, student):
    make_fee(student, days=2)
    with mail.record_messages() as outbox:
        result = run_reminder_sweep()
    assert result.sent == 1
    assert outbox[0].recipients == ["parent@example.org"]
    assert outbox[0].sender == "bursar@example.org"


def test_manual_sweep_route(admin_session, make_fee, student):
    make_fee(student, days=2)
    r = admin_session.post("/reminders/run", json={"dry_run": True})
    body = r.get_json()
    assert r.status_code == 200
    assert body["dry_run"] is True
    assert body["sent"] == 1
    assert AuditLog.query.filter_by(action="reminder_sweep").count() == 1


def test_manual_sweep_requires_admin(client):
    assert client.post("/reminders/run", json={}).status_code == 401


def test_scheduled_job_survives_errors(app):
    with patch("scheduler.run_reminder_sweep", side_effect=RuntimeError("db down")) as sweep:
        reminder_job(app)
    sweep.assert_called_once()


def test_scheduler_registers_sweep(app):
    with patch("scheduler.BackgroundScheduler") as scheduler_cls:
        scheduler = start_scheduler(app)
    scheduler.add_job.assert_called_once()
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == "fee_reminder_sweep"
    assert kwargs["hours"] == 24
    scheduler_cls.return_value.start.assert_called_once()
