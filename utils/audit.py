from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flask import has_request_context, request, session

from extensions import db
from models import AuditLog

security_log = logging.getLogger("payments.security")


def _session_value(key: str) -> Optional[str]:
    if not has_request_context():
        return None
    value = session.get(key)
    return None if value is None else str(value)


def log_event(action: str, target: str | None = None, detail: str | None = None, campus_id: str | None = None) -> AuditLog:
    """Append an audit row in its own commit so it survives a later rollback."""
    entry = AuditLog(
        campus_id=campus_id or _session_value("campus_id"),
        user_id=_session_value("user_id") or _session_value("student_id"),
        user_role=_session_value("role"),
        action=action,
        target=target,
        detail=detail,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


def log_security_event(action: str, target: str | None = None, detail: str | None = None, campus_id: str | None = None) -> None:
    security_log.warning("security event %s target=%s campus=%s: %s", action, target, campus_id, detail)
    log_event(action, target=target, detail=detail, campus_id=campus_id)


def fetch_audit_logs(campus_id: str | None = None, action: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    q = AuditLog.query
    if campus_id:
        q = q.filter(AuditLog.campus_id == campus_id)
    if action:
        q = q.filter(AuditLog.action == action)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return [
        {
            "id": r.id,
            "campus_id": r.campus_id,
            "user_id": r.user_id,
            "action": r.action,
            "target": r.target,
            "detail": r.detail,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
