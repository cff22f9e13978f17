import json
import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from config import TestConfig
from extensions import db
from models import Campus, Student
from utils.credentials import store_gateway_credentials
from utils.fee_templates import create_adhoc_fee
from utils.gateways.base import hmac_sha256_hex
from utils.schedule import utcnow

RZP_KEY_SECRET = "rzp_secret"
RZP_WEBHOOK_SECRET = "rzp_whsec"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def campus(app):
    c = Campus(name="Green Valley School", address="12 Hill Road", email="office@greenvalley.example", tax_id="GV-001")
    db.session.add(c)
    db.session.commit()
    return c


@pytest.fixture
def student(campus):
    s = Student(
        campus_id=campus.id,
        class_id="grade-5",
        admission_no="A-101",
        name="Asha Rao",
        phone="0712345678",
        guardian_name="Meera Rao",
        guardian_email="parent@example.org",
    )
    db.session.add(s)
    db.session.commit()
    return s


@pytest.fixture
def razorpay_credentials(campus):
    return store_gateway_credentials(
        campus.id,
        "razorpay",
        "rzp_test_key",
        {"key_secret": RZP_KEY_SECRET, "webhook_secret": RZP_WEBHOOK_SECRET},
        currency="INR",
        is_default=True,
    )


def due_in(days):
    return (utcnow() + timedelta(days=days)).date().isoformat()


@pytest.fixture
def make_fee(campus):
    def _make(student, amount="5000", days=30, currency="INR", **extra):
        payload = {
            "name": extra.pop("name", "Term 1 fees"),
            "currency": currency,
            "items": [
                {"category": "tuition", "name": "Tuition", "amount": amount, "is_mandatory": True, "due_date": due_in(days)},
            ],
        }
        payload.update(extra)
        return create_adhoc_fee(campus.id, student.id, payload)

    return _make


@pytest.fixture
def fee(make_fee, student):
    return make_fee(student)


@pytest.fixture
def admin_session(client, campus):
    with client.session_transaction() as sess:
        sess["admin_logged_in"] = True
        sess["campus_id"] = campus.id
        sess["user_id"] = "admin-1"
        sess["role"] = "admin"
    return client


@pytest.fixture
def student_session(client, student):
    with client.session_transaction() as sess:
        sess["student_id"] = student.id
    return client


def razorpay_body(event, order_id, payment_id, amount, notes=None, refund=None):
    payment = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "notes": notes or {},
    }
    payload = {"payment": {"entity": payment}}
    if refund:
        payload["refund"] = {"entity": refund}
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode("utf-8")


@pytest.fixture
def post_razorpay(client, campus):
    """Post a correctly signed razorpay webhook and return the response."""

    def _post(body, secret=RZP_WEBHOOK_SECRET, with_campus=True):
        url = "/payment/webhook/razorpay"
        if with_campus:
            url += f"?campus_id={campus.id}"
        return client.post(
            url,
            data=body,
            content_type="application/json",
            headers={"X-Razorpay-Signature": hmac_sha256_hex(secret, body)},
        )

    return _post
