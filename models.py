from __future__ import annotations

import uuid

from extensions import db
from utils.money import to_major
from utils.schedule import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# -----------------------------
# Directory boundary
# -----------------------------


class Campus(db.Model):
    __tablename__ = "campuses"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(255))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(32))
    tax_id = db.Column(db.String(32))  # GSTIN / KRA PIN printed on invoices
    created_at = db.Column(db.DateTime, default=utcnow)

    def snapshot(self) -> dict:
        return {
            "school_id": self.id,
            "school_name": self.name,
            "school_address": self.address,
            "school_email": self.email,
            "school_phone": self.phone,
            "school_tax_id": self.tax_id,
        }

    def __repr__(self):
        return f"<Campus {self.name}>"


class Student(db.Model):
    __tablename__ = "students"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campus_id = db.Column(db.String(36), db.ForeignKey("campuses.id"), nullable=False, index=True)
    class_id = db.Column(db.String(64), nullable=False, index=True)
    admission_no = db.Column(db.String(50))
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(32))
    guardian_name = db.Column(db.String(150))
    guardian_email = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Student {self.name} ({self.admission_no})>"


# -----------------------------
# Gateway credentials
# -----------------------------


class GatewayCredential(db.Model):
    __tablename__ = "gateway_credentials"
    __table_args__ = (
        db.UniqueConstraint("campus_id", "gateway", name="uq_gateway_credentials_campus_gateway"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campus_id = db.Column(db.String(36), db.ForeignKey("campuses.id"), nullable=False, index=True)
    gateway = db.Column(db.String(20), nullable=False)
    key_id = db.Column(db.String(120))  # public identifier (key id / app id / merchant key / shortcode)
    encrypted_secrets = db.Column(db.Text, nullable=False)
    currency = db.Column(db.String(3))
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    rotated_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f"<GatewayCredential {self.gateway} campus={self.campus_id}>"


# -----------------------------
# Fee templates and fees
# -----------------------------


class FeeTemplate(db.Model):
    __tablename__ = "fee_templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campus_id = db.Column(db.String(36), db.ForeignKey("campuses.id"), nullable=False, index=True)
    class_id = db.Column(db.String(64), nullable=False, index=True)
    academic_year = db.Column(db.String(16), nullable=False, index=True)
    template_name = db.Column(db.String(200), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    # [{category, name, amount (minor), is_mandatory, due_date (iso)}]
    items = db.Column(db.JSON, nullable=False, default=list)
    total_amount = db.Column(db.BigInteger, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)

    is_installment_enabled = db.Column(db.Boolean, nullable=False, default=False)
    # [{installment_number, amount (minor), due_date (iso)}]
    installments = db.Column(db.JSON, nullable=False, default=list)

    applicable_students = db.Column(db.JSON, nullable=False, default=list)  # empty means whole class
    excluded_student_ids = db.Column(db.JSON, nullable=False, default=list)

    auto_late_fee = db.Column(db.Boolean, nullable=False, default=False)
    late_fee_amount = db.Column(db.BigInteger, nullable=False, default=0)
    late_fee_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    grace_period_days = db.Column(db.Integer, nullable=False, default=0)
    discount_amount = db.Column(db.BigInteger, nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    early_payment_deadline = db.Column(db.DateTime)

    auto_generate = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campus_id": self.campus_id,
            "class_id": self.class_id,
            "academic_year": self.academic_year,
            "template_name": self.template_name,
            "currency": self.currency,
            "items": [dict(item, amount=to_major(item["amount"])) for item in self.items or []],
            "total_amount": to_major(self.total_amount),
            "due_date": _iso(self.due_date),
            "is_installment_enabled": self.is_installment_enabled,
            "installments": [dict(i, amount=to_major(i["amount"])) for i in self.installments or []],
            "applicable_students": list(self.applicable_students or []),
            "excluded_student_ids": list(self.excluded_student_ids or []),
            "auto_late_fee": self.auto_late_fee,
            "late_fee_amount": to_major(self.late_fee_amount),
            "late_fee_percentage": str(self.late_fee_percentage),
            "grace_period_days": self.grace_period_days,
            "discount_amount": to_major(self.discount_amount),
            "discount_percentage": str(self.discount_percentage),
            "early_payment_deadline": _iso(self.early_payment_deadline),
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<FeeTemplate {self.template_name} {self.academic_year}>"


class Fee(db.Model):
    """One payable obligation per student per template (or ad hoc).

    ``due_amount`` and ``payment_status`` are stored for querying but are
    always recomputed from the other columns (see ``utils.fee_policy``);
    ``paid_amount`` only moves through ``utils.ledger``.
    """

    __tablename__ = "fees"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campus_id = db.Column(db.String(36), db.ForeignKey("campuses.id"), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)
    class_id = db.Column(db.String(64))
    academic_year = db.Column(db.String(16), index=True)
    fee_template_id = db.Column(db.String(36), db.ForeignKey("fee_templates.id"), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    items = db.Column(db.JSON, nullable=False, default=list)
    installments = db.Column(db.JSON, nullable=False, default=list)
    is_installment_enabled = db.Column(db.Boolean, nullable=False, default=False)

    total_amount = db.Column(db.BigInteger, nullable=False)
    paid_amount = db.Column(db.BigInteger, nullable=False, default=0)
    late_fee_amount = db.Column(db.BigInteger, nullable=False, default=0)
    discount_amount = db.Column(db.BigInteger, nullable=False, default=0)
    discount_locked = db.Column(db.Boolean, nullable=False, default=False)
    due_amount = db.Column(db.BigInteger, nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid", index=True)
    due_date = db.Column(db.DateTime, nullable=False, index=True)

    # Policy copied from the template at generation time
    auto_late_fee = db.Column(db.Boolean, nullable=False, default=False)
    late_fee_fixed = db.Column(db.BigInteger, nullable=False, default=0)
    late_fee_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    grace_period_days = db.Column(db.Integer, nullable=False, default=0)
    discount_fixed = db.Column(db.BigInteger, nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    early_payment_deadline = db.Column(db.DateTime)

    reminder_count = db.Column(db.Integer, nullable=False, default=0)
    last_reminder_at = db.Column(db.DateTime)
    last_payment_at = db.Column(db.DateTime)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    student = db.relationship("Student", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campus_id": self.campus_id,
            "student_id": self.student_id,
            "class_id": self.class_id,
            "academic_year": self.academic_year,
            "fee_template_id": self.fee_template_id,
            "name": self.name,
            "currency": self.currency,
            "items": [dict(item, amount=to_major(item["amount"])) for item in self.items or []],
            "installments": [
                dict(i, amount=to_major(i["amount"]), paid_amount=to_major(i.get("paid_amount", 0)))
                for i in self.installments or []
            ],
            "total_amount": to_major(self.total_amount),
            "paid_amount": to_major(self.paid_amount),
            "late_fee_amount": to_major(self.late_fee_amount),
            "discount_amount": to_major(self.discount_amount),
            "due_amount": to_major(self.due_amount),
            "payment_status": self.payment_status,
            "due_date": _iso(self.due_date),
            "grace_period_days": self.grace_period_days,
            "early_payment_deadline": _iso(self.early_payment_deadline),
            "reminder_count": self.reminder_count,
            "last_reminder_at": _iso(self.last_reminder_at),
        }

    def __repr__(self):
        return f"<Fee {self.id} student={self.student_id} due={self.due_amount}>"


# -----------------------------
# Transactions, refunds, invoices
# -----------------------------


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.UniqueConstraint("gateway", "gateway_order_id", name="uq_payment_transactions_gateway_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campus_id = db.Column(db.String(36), db.ForeignKey("campuses.id"), nullable=False, index=True)
    fee_id = db.Column(db.String(36), db.ForeignKey("fees.id"), nullable=False, index=True)
    student_id = db.Column(db.String(36), nullable=False, index=True)
    gateway = db.Column(db.String(20), nullable=False)
    gateway_order_id = db.Column(db.String(100), nullable=False, index=True)
    gateway_payment_id = db.Column(db.String(100), index=True)
    amount = db.Column(db.BigInteger, nullable=False)
    refunded_amount = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(24), nullable=False, default="created", index=True)
    webhook_verified = db.Column(db.Boolean, nullable=False, default=False)
    client_payload = db.Column(db.JSON)
    failure_reason = db.Column(db.String(255))
    initiated_by = db.Column(db.String(64))  # "client" or "webhook"

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    authorized_at = db.Column(db.DateTime)
    captured_at = db.Column(db.DateTime)
    failed_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)

    fee = db.relationship("Fee", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fee_id": self.fee_id,
            "gateway": self.gateway,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "amount": to_major(self.amount),
            "refunded_amount": to_major(self.refunded_amount),
            "currency": self.currency,
            "status": self.status,
            "webhook_verified": self.webhook_verified,
            "created_at": _iso(self.created_at),
            "captured_at": _iso(self.captured_at),
        }

    def __repr__(self):
        return f"<PaymentTransaction {self.gateway}:{self.gateway_order_id} {self.status}>"


class PaymentRefund(db.Model):
    __tablename__ = "payment_refunds"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "gateway_refund_id", name="uq_payment_refunds_txn_refund"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    transaction_id = db.Column(db.String(36), db.ForeignKey("payment_transactions.id"), nullable=False, index=True)
    gateway_refund_id = db.Column(db.String(100), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)


class PaymentInvoice(db.Model):
    __tablename__ = "payment_invoices"
    __table_args__ = (
        db.UniqueConstraint("campus_id", "invoice_number", name="uq_payment_invoices_campus_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_number = db.Column(db.String(32), nullable=False)
    campus_id = db.Column(db.String(36), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="payment")  # payment / refund
    # "{transaction_id}:capture" or "{transaction_id}:refund:{refund_id}"
    source_key = db.Column(db.String(160), nullable=False, unique=True)
    transaction_id = db.Column(db.String(36), db.ForeignKey("payment_transactions.id"), nullable=False, index=True)
    supersedes_invoice_id = db.Column(db.String(36), db.ForeignKey("payment_invoices.id"))
    fee_id = db.Column(db.String(36), nullable=False, index=True)
    student_id = db.Column(db.String(36), nullable=False, index=True)

    invoice_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime)
    line_items = db.Column(db.JSON, nullable=False, default=list)
    subtotal = db.Column(db.BigInteger, nullable=False)
    late_fee = db.Column(db.BigInteger, nullable=False, default=0)
    discount = db.Column(db.BigInteger, nullable=False, default=0)
    tax_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_amount = db.Column(db.BigInteger, nullable=False, default=0)
    total_amount = db.Column(db.BigInteger, nullable=False)
    amount_paid = db.Column(db.BigInteger, nullable=False)
    balance_due = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False)

    payment_date = db.Column(db.DateTime)
    payment_method = db.Column(db.String(20))
    gateway_order_id = db.Column(db.String(100))
    gateway_payment_id = db.Column(db.String(100))
    student_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    school_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f"<PaymentInvoice {self.invoice_number}>"


class InvoiceSequence(db.Model):
    __tablename__ = "invoice_sequences"

    campus_id = db.Column(db.String(36), primary_key=True)
    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)


# -----------------------------
# Ledger, reminders, operator queue, audit
# -----------------------------


class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("idx_ledger_campus_student", "campus_id", "student_id", "ts"),
        db.Index("idx_ledger_link", "link_type", "link_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    campus_id = db.Column(db.String(36), nullable=False)
    student_id = db.Column(db.String(36), nullable=False)
    fee_id = db.Column(db.String(36), nullable=False, index=True)
    ts = db.Column(db.DateTime, nullable=False, default=utcnow)
    entry_type = db.Column(db.Enum("debit", "credit", name="ledger_entry_type"), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    ref = db.Column(db.String(100))
    description = db.Column(db.String(255))
    link_type = db.Column(db.String(32))
    link_id = db.Column(db.String(160))


class ReminderLog(db.Model):
    __tablename__ = "reminder_logs"

    id = db.Column(db.Integer, primary_key=True)
    fee_id = db.Column(db.String(36), nullable=False, index=True)
    student_id = db.Column(db.String(36), nullable=False)
    channel = db.Column(db.String(20), nullable=False)
    recipient = db.Column(db.String(255))
    kind = db.Column(db.String(16), nullable=False)  # upcoming / overdue
    subject = db.Column(db.String(255))
    status = db.Column(db.String(16), nullable=False)  # sent / failed
    error = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)


class ReconciliationIssue(db.Model):
    __tablename__ = "reconciliation_issues"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(40), nullable=False, index=True)
    campus_id = db.Column(db.String(36), index=True)
    fee_id = db.Column(db.String(36))
    transaction_id = db.Column(db.String(36))
    detail = db.Column(db.Text)
    status = db.Column(db.String(16), nullable=False, default="open", index=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    resolved_at = db.Column(db.DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "campus_id": self.campus_id,
            "fee_id": self.fee_id,
            "transaction_id": self.transaction_id,
            "detail": self.detail,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    campus_id = db.Column(db.String(36), index=True)
    user_id = db.Column(db.String(64))
    user_role = db.Column(db.String(64))
    action = db.Column(db.String(100), nullable=False, index=True)
    target = db.Column(db.String(160))
    detail = db.Column(db.Text)
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
