from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar, Any, cast
from flask import jsonify, session

F = TypeVar("F", bound=Callable[..., Any])


def _unauthorized(message: str):
    return jsonify({"ok": False, "error": "unauthorized", "message": message}), 401


def admin_required(func: F) -> F:
    """Decorator that requires an admin session.

    - If ``session['admin_logged_in']`` is truthy and a ``campus_id`` is
      selected, proceeds to the view.
    - Otherwise answers 401 JSON; sign-in itself lives in the wider school
      system.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if not session.get("admin_logged_in") or not session.get("campus_id"):
            return _unauthorized("Admin sign-in required")
        return func(*args, **kwargs)

    return cast(F, wrapper)


def student_required(func: F) -> F:
    """Decorator for payer-facing views: a student (or guardian) session or an admin."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if not session.get("student_id") and not session.get("admin_logged_in"):
            return _unauthorized("Sign-in required")
        return func(*args, **kwargs)

    return cast(F, wrapper)
