from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, session

from extensions import db, limiter
from models import Fee, FeeTemplate, PaymentTransaction
from utils import admin_required, student_required
from utils.audit import fetch_audit_logs, log_event
from utils.credentials import masked_credentials, store_gateway_credentials
from utils.errors import NotFoundError, PaymentError, ReconciliationError, ValidationError
from utils.fee_templates import (
    create_adhoc_fee,
    create_fee_template,
    generate_fees,
    list_fee_templates,
    soft_delete_fee,
    update_fee_template,
)
from utils.gateways import adapter_class
from utils.invoices import get_invoice, invoice_as_dict, list_invoices
from utils.ledger import list_issues
from utils.money import to_minor
from utils.payments import (
    get_transaction_status,
    handle_webhook,
    initiate_payment,
    list_fee_transactions,
    record_refund,
    student_fee_summary,
    verify_client_payment,
)

payment_bp = Blueprint("payment", __name__, url_prefix="/payment")


def _payment_rate_limit() -> str:
    return current_app.config.get("PAYMENT_RATE_LIMIT", "30 per minute")


@payment_bp.errorhandler(PaymentError)
def _payment_error(err: PaymentError):
    if isinstance(err, ReconciliationError) or err.http_status >= 500:
        current_app.logger.error("%s on %s: %s (%s)", err.code, request.path, err.message, err.detail)
    else:
        current_app.logger.warning("%s on %s: %s (%s)", err.code, request.path, err.message, err.detail)
    return jsonify(err.to_dict()), err.http_status


def _json() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body")
    return data


def _campus_id() -> str:
    return str(session["campus_id"])


def _minor(value) -> int:
    return to_minor(value, int(current_app.config.get("CURRENCY_MINOR_DIGITS", 2)))


def _is_admin() -> bool:
    return bool(session.get("admin_logged_in"))


# -----------------------------
# Fee templates and fees (admin)
# -----------------------------


@payment_bp.route("/fee-templates", methods=["POST"])
@admin_required
def create_template():
    template = create_fee_template(_campus_id(), _json())
    log_event("fee_template_created", target=template.id, campus_id=template.campus_id)
    return jsonify({"ok": True, "template": template.to_dict()}), 201


@payment_bp.route("/fee-templates", methods=["GET"])
@admin_required
def list_templates():
    templates = list_fee_templates(
        _campus_id(),
        class_id=request.args.get("class_id") or None,
        academic_year=request.args.get("academic_year") or None,
    )
    return jsonify({"ok": True, "templates": [t.to_dict() for t in templates]})


@payment_bp.route("/fee-templates/<template_id>", methods=["PATCH"])
@admin_required
def edit_template(template_id):
    existing = db.session.get(FeeTemplate, template_id)
    if existing is None or existing.campus_id != _campus_id():
        raise NotFoundError("Fee template not found")
    template = update_fee_template(template_id, _json())
    return jsonify({"ok": True, "template": template.to_dict()})


@payment_bp.route("/generate-fees", methods=["POST"])
@admin_required
def generate():
    data = _json()
    template_id = data.get("template_id")
    if not template_id:
        raise ValidationError("template_id is required")
    templates = {t.id for t in list_fee_templates(_campus_id())}
    if template_id not in templates:
        raise NotFoundError("Fee template not found")
    result = generate_fees(template_id, data.get("student_ids") or None)
    log_event(
        "fees_generated",
        target=template_id,
        detail=f"generated={result.generated_count} skipped={result.skipped_count}",
        campus_id=_campus_id(),
    )
    return jsonify({"ok": True, **result.to_dict()})


@payment_bp.route("/fees", methods=["POST"])
@admin_required
def create_fee():
    data = _json()
    student_id = data.get("student_id")
    if not student_id:
        raise ValidationError("student_id is required")
    fee = create_adhoc_fee(_campus_id(), str(student_id), data)
    log_event("fee_created", target=fee.id, campus_id=fee.campus_id)
    return jsonify({"ok": True, "fee": fee.to_dict()}), 201


@payment_bp.route("/fees/<fee_id>", methods=["DELETE"])
@admin_required
def delete_fee(fee_id):
    existing = db.session.get(Fee, fee_id)
    if existing is None or existing.campus_id != _campus_id():
        raise NotFoundError("Fee not found")
    fee = soft_delete_fee(fee_id)
    log_event("fee_deleted", target=fee.id, campus_id=fee.campus_id)
    return jsonify({"ok": True, "fee_id": fee.id})


@payment_bp.route("/fees/<fee_id>/transactions", methods=["GET"])
@admin_required
def fee_transactions(fee_id):
    txns = [t for t in list_fee_transactions(fee_id) if t.campus_id == _campus_id()]
    return jsonify({"ok": True, "transactions": [t.to_dict() for t in txns]})


# -----------------------------
# Paying
# -----------------------------


@payment_bp.route("/initiate-payment", methods=["POST"])
@limiter.limit(_payment_rate_limit)
@student_required
def initiate():
    data = _json()
    fee_id = data.get("fee_id")
    if not fee_id or data.get("amount") in (None, ""):
        raise ValidationError("fee_id and amount are required")
    result = initiate_payment(
        str(fee_id),
        data.get("gateway") or None,
        _minor(data["amount"]),
        initiated_by="admin" if _is_admin() else "student",
        student_id=None if _is_admin() else session.get("student_id"),
    )
    return jsonify({"ok": True, **result}), 201


@payment_bp.route("/verify-payment", methods=["POST"])
@limiter.limit(_payment_rate_limit)
@student_required
def verify():
    data = _json()
    order_id = data.get("gateway_order_id")
    payment_id = data.get("gateway_payment_id")
    if not order_id or not payment_id:
        raise ValidationError("gateway_order_id and gateway_payment_id are required")
    result = verify_client_payment(
        str(order_id),
        str(payment_id),
        str(data.get("signature") or ""),
        student_id=None if _is_admin() else session.get("student_id"),
        campus_id=session.get("campus_id") if _is_admin() else None,
    )
    return jsonify({"ok": result.success, **result.to_dict()})


@payment_bp.route("/return/<gateway>", methods=["GET", "POST"])
def gateway_return(gateway):
    """Landing point for hosted-checkout redirects.

    Anyone can reach this URL, so a bad signature here is only logged and
    never fails the payment; the webhook settles it either way.
    """
    adapter_class(gateway)
    values = request.values
    order_id = values.get("razorpay_order_id") or values.get("order_id") or values.get("txnid")
    payment_id = values.get("razorpay_payment_id") or values.get("cf_payment_id") or values.get("mihpayid")
    signature = values.get("razorpay_signature") or values.get("hash") or ""
    if not order_id:
        raise ValidationError("order id missing from gateway redirect")
    if payment_id:
        result = verify_client_payment(order_id, payment_id, signature, gateway=gateway, fail_on_reject=False)
        return jsonify({"ok": result.success, "status": result.status, "fee_status": result.fee_status})
    status = get_transaction_status(order_id, gateway)
    return jsonify({"ok": True, "status": status["status"], "fee_status": status["fee_status"]})


@payment_bp.route("/webhook/<gateway>", methods=["POST"])
@limiter.exempt
def webhook(gateway):
    """Provider notifications. Verified by signature, never by session.

    Always answers 200 so providers do not retry forged or unprocessable
    payloads; rejections land in the audit log, failures in the app log.
    """
    raw = request.get_data()
    try:
        cls = adapter_class(gateway)
        result = handle_webhook(
            cls.name,
            raw,
            cls.signature_from_request(request.headers, request.args),
            headers=dict(request.headers),
            campus_id=request.args.get("campus_id") or None,
            params=request.args.to_dict(),
        )
    except PaymentError as err:
        current_app.logger.warning("webhook %s rejected: %s (%s)", gateway, err.code, err.detail)
        return jsonify(err.to_dict()), 200
    except Exception:
        db.session.rollback()
        current_app.logger.exception("webhook %s failed while processing", gateway)
        return jsonify({"ok": False, "error": "internal_error"}), 200
    return jsonify({"ok": True, **result.to_dict()}), 200


# -----------------------------
# Queries
# -----------------------------


@payment_bp.route("/student-fees", methods=["GET"])
@student_required
def student_fees():
    student_id = session.get("student_id")
    if _is_admin():
        student_id = request.args.get("student_id") or student_id
    if not student_id:
        raise ValidationError("student_id is required")
    return jsonify({"ok": True, **student_fee_summary(str(student_id))})


@payment_bp.route("/transactions/<order_id>", methods=["GET"])
@student_required
def transaction_status(order_id):
    status = get_transaction_status(order_id, request.args.get("gateway") or None)
    txn = db.session.get(PaymentTransaction, status["id"])
    if not _is_admin() and txn.student_id != session.get("student_id"):
        raise NotFoundError("Payment not found")
    if _is_admin() and txn.campus_id != session.get("campus_id"):
        raise NotFoundError("Payment not found")
    return jsonify({"ok": True, "transaction": status})


@payment_bp.route("/invoices/<invoice_id>", methods=["GET"])
@student_required
def invoice_detail(invoice_id):
    invoice = get_invoice(invoice_id)
    if _is_admin():
        allowed = invoice.campus_id == session.get("campus_id")
    else:
        allowed = invoice.student_id == session.get("student_id")
    if not allowed:
        raise NotFoundError("Invoice not found")
    return jsonify({"ok": True, "invoice": invoice_as_dict(invoice)})


@payment_bp.route("/invoices", methods=["GET"])
@student_required
def invoice_list():
    if _is_admin():
        invoices = list_invoices(
            _campus_id(),
            student_id=request.args.get("student_id") or None,
            fee_id=request.args.get("fee_id") or None,
        )
    else:
        invoices = list_invoices(None, student_id=str(session["student_id"]))
    return jsonify({"ok": True, "invoices": [invoice_as_dict(i) for i in invoices]})


# -----------------------------
# Operators
# -----------------------------


@payment_bp.route("/refunds", methods=["POST"])
@admin_required
def refund():
    data = _json()
    txn_id = data.get("transaction_id")
    refund_id = data.get("refund_id")
    if not txn_id or not refund_id or data.get("amount") in (None, ""):
        raise ValidationError("transaction_id, refund_id and amount are required")
    txn = db.session.get(PaymentTransaction, str(txn_id))
    if txn is None or txn.campus_id != _campus_id():
        raise NotFoundError("Payment not found")
    recorded = record_refund(txn.id, _minor(data["amount"]), str(refund_id), reason=data.get("reason"))
    txn = db.session.get(PaymentTransaction, txn.id, populate_existing=True)
    return jsonify({"ok": True, "refund_id": recorded.gateway_refund_id, "transaction": txn.to_dict()})


@payment_bp.route("/gateways", methods=["POST"])
@admin_required
def save_gateway():
    data = _json()
    row = store_gateway_credentials(
        _campus_id(),
        data.get("gateway") or "",
        data.get("key_id") or "",
        data.get("secrets") or {},
        currency=data.get("currency"),
        is_enabled=data.get("is_enabled", True),
        is_default=bool(data.get("is_default")),
    )
    log_event("gateway_credentials_saved", target=row.gateway, campus_id=row.campus_id)
    return jsonify({"ok": True, "gateways": masked_credentials(_campus_id())}), 201


@payment_bp.route("/gateways", methods=["GET"])
@admin_required
def gateways():
    return jsonify({"ok": True, "gateways": masked_credentials(_campus_id())})


@payment_bp.route("/reconciliation-issues", methods=["GET"])
@admin_required
def reconciliation_issues():
    status = request.args.get("status", "open")
    issues = list_issues(_campus_id(), status=status or None)
    return jsonify({"ok": True, "issues": [i.to_dict() for i in issues]})


@payment_bp.route("/audit-logs", methods=["GET"])
@admin_required
def audit_logs():
    limit = min(request.args.get("limit", 50, type=int) or 50, 500)
    logs = fetch_audit_logs(_campus_id(), action=request.args.get("action") or None, limit=limit)
    return jsonify({"ok": True, "logs": logs})
