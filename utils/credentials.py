"""Encrypted storage of per-campus payment gateway credentials.

Secrets are kept as a Fernet token over a JSON document and decrypted only
while an adapter is being built for a single request. Rotating credentials
is an upsert; the next request picks the new values up.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app

from extensions import db
from models import GatewayCredential
from utils.errors import ConfigurationError, ValidationError
from utils.schedule import utcnow

# Secret fields each provider needs, beyond the public key_id
REQUIRED_SECRETS = {
    "razorpay": ("key_secret", "webhook_secret"),
    "cashfree": ("secret_key",),
    "payu": ("merchant_salt",),
    "mpesa": ("consumer_key", "consumer_secret", "passkey", "callback_secret"),
}


@dataclass
class GatewayCredentials:
    campus_id: str
    gateway: str
    key_id: str
    secrets: Dict[str, str] = field(repr=False)
    currency: str = "INR"
    is_default: bool = False

    def secret(self, name: str) -> str:
        value = (self.secrets.get(name) or "").strip()
        if not value:
            raise ConfigurationError(
                f"{self.gateway} is not fully configured for this school",
                detail=f"missing secret {name!r} for campus {self.campus_id}",
            )
        return value


def _fernet() -> Fernet:
    key = (current_app.config.get("CREDENTIALS_ENCRYPTION_KEY") or "").strip()
    if not key:
        raise ConfigurationError(
            "Payment credentials cannot be read right now",
            detail="CREDENTIALS_ENCRYPTION_KEY is not set",
        )
    return Fernet(key.encode("utf-8"))


def encrypt_secrets(secrets: Dict[str, str]) -> str:
    return _fernet().encrypt(json.dumps(secrets, sort_keys=True).encode("utf-8")).decode("utf-8")


def decrypt_secrets(token: str) -> Dict[str, str]:
    try:
        raw = _fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ConfigurationError(
            "Payment credentials cannot be read right now",
            detail="stored gateway secrets do not decrypt with the current key",
        )
    return json.loads(raw.decode("utf-8"))


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


def store_gateway_credentials(
    campus_id: str,
    gateway: str,
    key_id: str,
    secrets: Dict[str, Any],
    *,
    currency: Optional[str] = None,
    is_enabled: bool = True,
    is_default: bool = False,
) -> GatewayCredential:
    gateway = (gateway or "").strip().lower()
    if gateway not in REQUIRED_SECRETS:
        raise ValidationError(f"Unsupported payment gateway: {gateway}")
    clean = {k: str(v).strip() for k, v in (secrets or {}).items() if v not in (None, "")}
    missing = [name for name in REQUIRED_SECRETS[gateway] if name not in clean]
    if missing or not (key_id or "").strip():
        raise ValidationError(f"Missing {gateway} credentials: {', '.join(missing or ['key_id'])}")

    row = GatewayCredential.query.filter_by(campus_id=campus_id, gateway=gateway).first()
    if row is None:
        row = GatewayCredential(campus_id=campus_id, gateway=gateway)
        db.session.add(row)
    row.key_id = key_id.strip()
    row.encrypted_secrets = encrypt_secrets(clean)
    row.currency = (currency or current_app.config.get("DEFAULT_CURRENCY", "INR")).upper()
    row.is_enabled = bool(is_enabled)
    row.rotated_at = utcnow()
    if is_default:
        GatewayCredential.query.filter(
            GatewayCredential.campus_id == campus_id, GatewayCredential.gateway != gateway
        ).update({"is_default": False}, synchronize_session=False)
    row.is_default = bool(is_default)
    db.session.commit()
    return row


def load_credentials(row: GatewayCredential) -> GatewayCredentials:
    return GatewayCredentials(
        campus_id=row.campus_id,
        gateway=row.gateway,
        key_id=row.key_id or "",
        secrets=decrypt_secrets(row.encrypted_secrets),
        currency=row.currency or current_app.config.get("DEFAULT_CURRENCY", "INR"),
        is_default=row.is_default,
    )


def enabled_rows(campus_id: Optional[str] = None, gateway: Optional[str] = None) -> List[GatewayCredential]:
    q = GatewayCredential.query.filter(GatewayCredential.is_enabled.is_(True))
    if campus_id:
        q = q.filter(GatewayCredential.campus_id == campus_id)
    if gateway:
        q = q.filter(GatewayCredential.gateway == gateway)
    return q.order_by(GatewayCredential.is_default.desc(), GatewayCredential.gateway).all()


def masked_credentials(campus_id: str) -> List[Dict[str, Any]]:
    out = []
    for row in GatewayCredential.query.filter_by(campus_id=campus_id).order_by(GatewayCredential.gateway).all():
        out.append(
            {
                "gateway": row.gateway,
                "key_id": _mask(row.key_id or ""),
                "currency": row.currency,
                "is_enabled": row.is_enabled,
                "is_default": row.is_default,
                "rotated_at": row.rotated_at.isoformat() if row.rotated_at else None,
            }
        )
    return out
