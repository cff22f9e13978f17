from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app

from extensions import db
from models import Fee, FeeTemplate, PaymentTransaction
from utils.directory import get_student, resolve_class_roster
from utils.errors import NotFoundError, ValidationError
from utils.fee_policy import refresh_fee
from utils.money import parse_percentage, to_major, to_minor
from utils.schedule import parse_datetime, utcnow
from utils.transitions import CAPTURED, PARTIALLY_REFUNDED

log = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    template_id: str
    generated_count: int = 0
    skipped_count: int = 0
    fee_ids: List[str] = field(default_factory=list)
    skipped_student_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "generated_count": self.generated_count,
            "skipped_count": self.skipped_count,
            "fee_ids": list(self.fee_ids),
        }


# -----------------------------
# Payload validation
# -----------------------------


def _digits() -> int:
    return int(current_app.config.get("CURRENCY_MINOR_DIGITS", 2))


def _amount(value: Any, what: str, *, allow_zero: bool = False) -> int:
    minor = to_minor(value, _digits())
    if minor < 0 or (minor == 0 and not allow_zero):
        raise ValidationError(f"{what} must be positive")
    return minor


def _date(value: Any, what: str):
    when = parse_datetime(value)
    if when is None:
        raise ValidationError(f"{what} is required (ISO date)")
    return when


def _clean_items(raw_items: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("At least one fee item is required")
    items = []
    for idx, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {idx} is malformed")
        category = str(raw.get("category") or "").strip()
        if not category:
            raise ValidationError(f"Item {idx} needs a category")
        if "is_mandatory" not in raw:
            raise ValidationError(f"Item {idx} must say whether it is mandatory")
        items.append(
            {
                "category": category,
                "name": str(raw.get("name") or category).strip(),
                "amount": _amount(raw.get("amount"), f"Item {idx} amount"),
                "is_mandatory": bool(raw.get("is_mandatory")),
                "late_fee_applicable": bool(raw.get("late_fee_applicable", True)),
                "due_date": _date(raw.get("due_date"), f"Item {idx} due date").isoformat(),
            }
        )
    return items


def _clean_installments(raw: Any, total: int) -> List[Dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Installment plan is enabled but no installments were given")
    plan = []
    for idx, inst in enumerate(raw, start=1):
        if not isinstance(inst, dict):
            raise ValidationError(f"Installment {idx} is malformed")
        plan.append(
            {
                "installment_number": int(inst.get("installment_number") or idx),
                "amount": _amount(inst.get("amount"), f"Installment {idx} amount"),
                "due_date": _date(inst.get("due_date"), f"Installment {idx} due date").isoformat(),
                "paid_amount": 0,
                "is_paid": False,
            }
        )
    if sum(i["amount"] for i in plan) != total:
        raise ValidationError("Installment amounts must add up to the total amount")
    plan.sort(key=lambda i: i["due_date"])
    return plan


def _clean_policy(payload: Dict[str, Any], due_date) -> Dict[str, Any]:
    late = payload.get("late_fee_config") or {}
    discount = payload.get("discount_config") or {}
    if not isinstance(late, dict) or not isinstance(discount, dict):
        raise ValidationError("late_fee_config and discount_config must be objects")

    late_amount = _amount(late.get("amount") or 0, "Late fee amount", allow_zero=True)
    late_pct = parse_percentage(late.get("percentage"), "Late fee percentage")
    if late_amount and late_pct:
        raise ValidationError("Late fee may be a fixed amount or a percentage, not both")
    try:
        grace = int(late.get("grace_period_days") or 0)
    except (TypeError, ValueError):
        raise ValidationError("grace_period_days must be a whole number")
    if grace < 0:
        raise ValidationError("grace_period_days cannot be negative")
    enabled = bool(late.get("enabled"))
    if enabled and not (late_amount or late_pct):
        raise ValidationError("Late fee is enabled but has no amount or percentage")

    disc_amount = _amount(discount.get("amount") or 0, "Discount amount", allow_zero=True)
    disc_pct = parse_percentage(discount.get("percentage"), "Discount percentage")
    if disc_amount and disc_pct:
        raise ValidationError("Discount may be a fixed amount or a percentage, not both")
    deadline = parse_datetime(discount.get("early_payment_deadline"))
    if deadline is None and discount.get("days_before_due") not in (None, ""):
        try:
            deadline = due_date - timedelta(days=int(discount["days_before_due"]))
        except (TypeError, ValueError):
            raise ValidationError("days_before_due must be a whole number")
    if (disc_amount or disc_pct) and deadline is None:
        raise ValidationError("An early-payment discount needs an early_payment_deadline")

    return {
        "auto_late_fee": enabled,
        "late_fee_amount": late_amount,
        "late_fee_percentage": late_pct,
        "grace_period_days": grace,
        "discount_amount": disc_amount,
        "discount_percentage": disc_pct,
        "early_payment_deadline": deadline if (disc_amount or disc_pct) else None,
    }


def _validated(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    items = _clean_items(payload.get("items"))
    item_total = sum(i["amount"] for i in items)
    total = _amount(payload.get("total_amount"), "Total amount") if payload.get("total_amount") is not None else item_total
    if total != item_total:
        raise ValidationError("Total amount must equal the sum of the fee items")

    due_date = parse_datetime(payload.get("due_date")) or max(parse_datetime(i["due_date"]) for i in items)
    installment_enabled = bool(payload.get("is_installment_enabled"))
    installments = _clean_installments(payload.get("installments"), total) if installment_enabled else []
    if installments:
        due_date = max(due_date, parse_datetime(installments[-1]["due_date"]))

    data = {
        "items": items,
        "total_amount": total,
        "due_date": due_date,
        "is_installment_enabled": installment_enabled,
        "installments": installments,
        "currency": str(payload.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "INR")).upper(),
    }
    data.update(_clean_policy(payload, due_date))
    if data["discount_amount"] and data["discount_amount"] >= total:
        raise ValidationError("Discount must be smaller than the total amount")
    return data


def _id_list(value: Any, what: str) -> List[str]:
    if value in (None, ""):
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{what} must be a list")
    return [str(v) for v in value if str(v).strip()]


# -----------------------------
# Templates
# -----------------------------


def create_fee_template(campus_id: str, payload: Dict[str, Any]) -> FeeTemplate:
    data = _validated(payload)
    for key in ("class_id", "academic_year", "template_name"):
        if not str(payload.get(key) or "").strip():
            raise ValidationError(f"{key} is required")

    template = FeeTemplate(
        campus_id=campus_id,
        class_id=str(payload["class_id"]).strip(),
        academic_year=str(payload["academic_year"]).strip(),
        template_name=str(payload["template_name"]).strip(),
        applicable_students=_id_list(payload.get("applicable_students"), "applicable_students"),
        excluded_student_ids=_id_list(payload.get("excluded_student_ids"), "excluded_student_ids"),
        auto_generate=bool(payload.get("auto_generate")),
        **data,
    )
    db.session.add(template)
    db.session.commit()
    log.info("fee template %s created for campus %s class %s", template.id, campus_id, template.class_id)

    if template.auto_generate:
        generate_fees(template.id)
    return template


def update_fee_template(template_id: str, payload: Dict[str, Any]) -> FeeTemplate:
    """Edit a template. Fees already generated keep their own copies."""
    template = _get_template(template_id)
    merged = template.to_dict()
    # to_dict renders amounts as major strings; rebuild the raw shape
    merged["items"] = [dict(i, amount=_major_str(i["amount"])) for i in template.items or []]
    merged["installments"] = [dict(i, amount=_major_str(i["amount"])) for i in template.installments or []]
    merged["late_fee_config"] = {
        "enabled": template.auto_late_fee,
        "amount": _major_str(template.late_fee_amount),
        "percentage": template.late_fee_percentage,
        "grace_period_days": template.grace_period_days,
    }
    merged["discount_config"] = {
        "amount": _major_str(template.discount_amount),
        "percentage": template.discount_percentage,
        "early_payment_deadline": template.early_payment_deadline,
    }
    merged.pop("total_amount", None)
    merged.update(payload or {})
    data = _validated(merged)

    for key in ("template_name", "academic_year", "class_id"):
        if payload.get(key):
            setattr(template, key, str(payload[key]).strip())
    if "applicable_students" in payload:
        template.applicable_students = _id_list(payload["applicable_students"], "applicable_students")
    if "excluded_student_ids" in payload:
        template.excluded_student_ids = _id_list(payload["excluded_student_ids"], "excluded_student_ids")
    if "is_active" in payload:
        template.is_active = bool(payload["is_active"])
    for key, value in data.items():
        setattr(template, key, value)
    db.session.commit()
    return template


def _major_str(minor: int) -> str:
    return to_major(minor, _digits())


def list_fee_templates(campus_id: str, class_id: Optional[str] = None, academic_year: Optional[str] = None) -> List[FeeTemplate]:
    q = FeeTemplate.query.filter(FeeTemplate.campus_id == campus_id, FeeTemplate.is_deleted.is_(False))
    if class_id:
        q = q.filter(FeeTemplate.class_id == class_id)
    if academic_year:
        q = q.filter(FeeTemplate.academic_year == academic_year)
    return q.order_by(FeeTemplate.created_at.desc()).all()


def _get_template(template_id: str) -> FeeTemplate:
    template = db.session.get(FeeTemplate, template_id)
    if template is None or template.is_deleted:
        raise NotFoundError("Fee template not found", detail=f"template {template_id}")
    return template


# -----------------------------
# Fee generation
# -----------------------------


def _new_fee(campus_id: str, student_id: str, name: str, data: Dict[str, Any], **extra) -> Fee:
    fee = Fee(
        campus_id=campus_id,
        student_id=student_id,
        name=name,
        currency=data["currency"],
        items=[dict(i) for i in data["items"]],
        installments=[dict(i) for i in data["installments"]],
        is_installment_enabled=data["is_installment_enabled"],
        total_amount=data["total_amount"],
        paid_amount=0,
        late_fee_amount=0,
        discount_amount=0,
        discount_locked=False,
        due_amount=data["total_amount"],
        due_date=data["due_date"],
        auto_late_fee=data["auto_late_fee"],
        late_fee_fixed=data["late_fee_amount"],
        late_fee_percentage=data["late_fee_percentage"],
        grace_period_days=data["grace_period_days"],
        discount_fixed=data["discount_amount"],
        discount_percentage=data["discount_percentage"],
        early_payment_deadline=data["early_payment_deadline"],
        **extra,
    )
    refresh_fee(fee, utcnow())
    return fee


def _template_data(template: FeeTemplate) -> Dict[str, Any]:
    return {
        "currency": template.currency,
        "items": template.items or [],
        "installments": template.installments or [],
        "is_installment_enabled": template.is_installment_enabled,
        "total_amount": int(template.total_amount),
        "due_date": template.due_date,
        "auto_late_fee": template.auto_late_fee,
        "late_fee_amount": int(template.late_fee_amount or 0),
        "late_fee_percentage": Decimal(template.late_fee_percentage or 0),
        "grace_period_days": int(template.grace_period_days or 0),
        "discount_amount": int(template.discount_amount or 0),
        "discount_percentage": Decimal(template.discount_percentage or 0),
        "early_payment_deadline": template.early_payment_deadline,
    }


def generate_fees(template_id: str, student_ids: Optional[List[str]] = None) -> GenerationResult:
    """Create one Fee per student in the template's population.

    Population: ``student_ids`` if given, else the template's
    ``applicable_students``, else the class roster; minus exclusions.
    Students that already hold a live fee for this template are skipped, so
    repeating a run is harmless.
    """
    template = _get_template(template_id)
    if not template.is_active:
        raise ValidationError("Fee template is inactive")

    if student_ids:
        population = [str(s) for s in student_ids]
    elif template.applicable_students:
        population = list(template.applicable_students)
    else:
        population = resolve_class_roster(template.campus_id, template.class_id)
    excluded = set(template.excluded_student_ids or [])
    population = [s for s in dict.fromkeys(population) if s not in excluded]

    existing = {
        row[0]
        for row in db.session.query(Fee.student_id).filter(
            Fee.fee_template_id == template.id,
            Fee.academic_year == template.academic_year,
            Fee.is_deleted.is_(False),
        )
    }

    result = GenerationResult(template_id=template.id)
    data = _template_data(template)
    for student_id in population:
        if student_id in existing:
            result.skipped_count += 1
            result.skipped_student_ids.append(student_id)
            continue
        student = get_student(student_id)
        if student is None or student.campus_id != template.campus_id:
            log.warning("skipping unknown student %s for template %s", student_id, template.id)
            result.skipped_count += 1
            result.skipped_student_ids.append(student_id)
            continue
        fee = _new_fee(
            template.campus_id,
            student_id,
            template.template_name,
            data,
            class_id=template.class_id,
            academic_year=template.academic_year,
            fee_template_id=template.id,
        )
        db.session.add(fee)
        db.session.flush()
        result.generated_count += 1
        result.fee_ids.append(fee.id)
    db.session.commit()
    log.info(
        "template %s: generated %s fees, skipped %s",
        template.id,
        result.generated_count,
        result.skipped_count,
    )
    return result


def create_adhoc_fee(campus_id: str, student_id: str, payload: Dict[str, Any]) -> Fee:
    student = get_student(student_id)
    if student is None or student.campus_id != campus_id:
        raise NotFoundError("Student not found", detail=f"student {student_id} campus {campus_id}")
    name = str((payload or {}).get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    data = _validated(payload)
    fee = _new_fee(
        campus_id,
        student_id,
        name,
        data,
        class_id=student.class_id,
        academic_year=str(payload.get("academic_year") or "").strip() or None,
    )
    db.session.add(fee)
    db.session.commit()
    return fee


def soft_delete_fee(fee_id: str) -> Fee:
    fee = db.session.get(Fee, fee_id)
    if fee is None or fee.is_deleted:
        raise NotFoundError("Fee not found", detail=f"fee {fee_id}")
    live = PaymentTransaction.query.filter(
        PaymentTransaction.fee_id == fee.id,
        PaymentTransaction.status.in_((CAPTURED, PARTIALLY_REFUNDED)),
    ).count()
    if live:
        raise ValidationError("Fees with payments on record cannot be deleted; refund them first")
    fee.is_deleted = True
    fee.deleted_at = utcnow()
    db.session.commit()
    return fee
