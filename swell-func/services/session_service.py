from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import azure.functions as func

from shared.config import get_session_secret, get_session_settings
from shared.db import AuthSession, User
from shared.errors import AppError, AuthError, Forbidden, InvalidOrExpiredKey
from utils.http import get_cookie

logger = logging.getLogger(__name__)


@dataclass
class SessionCheck:
    authenticated: bool
    reason: Optional[str] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.authenticated:
            return {"authenticated": False, "session": False, "reason": self.reason}
        return {
            "authenticated": True,
            "session": True,
            "user": {
                "id": self.user_id,
                "email": self.email,
                "tenant_id": self.tenant_id,
                "role": self.role,
            },
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (ValueError, TypeError):
        return None


def _sign(secret: str, payload_bytes: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


def issue_session_token(
    tenant_id: str,
    user_id: str,
    email: str,
    ttl_seconds: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Sign a payload.signature session token valid for ttl_seconds (default 7 days)."""
    secret = get_session_secret()
    if not secret:
        raise AppError("Session secret is not configured", code="session_not_configured")
    ttl = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else get_session_settings()["ttl_seconds"]
    issued = now or datetime.now(timezone.utc)
    payload = {
        "tenant_id": str(tenant_id),
        "user_id": str(user_id),
        "email": str(email or "").strip().lower(),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl)).timestamp()),
    }
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return f"{_b64url_encode(payload_bytes)}.{_b64url_encode(_sign(secret, payload_bytes))}"


def _decode(token: str, now: datetime) -> Dict[str, Any]:
    """Return the verified claims or a dict with a single 'reason' key."""
    raw = str(token or "").strip()
    if "." not in raw:
        return {"reason": "malformed"}
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    if not payload_bytes or not sig_bytes:
        return {"reason": "malformed"}
    secret = get_session_secret()
    if not secret:
        return {"reason": "not_configured"}
    if not hmac.compare_digest(_sign(secret, payload_bytes), sig_bytes):
        return {"reason": "bad_signature"}
    try:
        claims = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {"reason": "malformed"}
    if not isinstance(claims, dict):
        return {"reason": "malformed"}
    try:
        exp = int(claims.get("exp") or 0)
    except (TypeError, ValueError):
        return {"reason": "malformed"}
    if exp <= int(now.timestamp()):
        return {"reason": "expired"}
    if not claims.get("user_id") or not claims.get("tenant_id"):
        return {"reason": "malformed"}
    return {"claims": claims}


def check_session(db, credential: Optional[str], *, now: Optional[datetime] = None) -> SessionCheck:
    """Validate a session credential. Never raises; failures carry a reason."""
    if not credential:
        return SessionCheck(authenticated=False, reason="missing")
    now = now or datetime.now(timezone.utc)
    decoded = _decode(credential, now)
    if "claims" not in decoded:
        logger.info("Session rejected: %s", decoded["reason"])
        return SessionCheck(authenticated=False, reason=decoded["reason"])
    claims = decoded["claims"]

    try:
        user = (
            db.query(User)
            .filter(User.id == str(claims["user_id"]), User.tenant_id == str(claims["tenant_id"]))
            .one_or_none()
        )
    except Exception:  # pylint: disable=broad-except
        logger.exception("Session lookup failed")
        return SessionCheck(authenticated=False, reason="lookup_failed")
    if not user:
        return SessionCheck(authenticated=False, reason="user_not_found")

    return SessionCheck(
        authenticated=True,
        tenant_id=user.tenant_id,
        user_id=user.id,
        email=user.email,
        role=user.role,
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )


def extract_credential(req: func.HttpRequest) -> Optional[str]:
    """Authorization: Bearer first, then x-session-token, then the session cookie."""
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    if auth_header:
        scheme, _, value = auth_header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    header_token = str(headers.get("x-session-token") or headers.get("X-Session-Token") or "").strip()
    if header_token:
        return header_token
    return get_cookie(req, get_session_settings()["cookie_name"])


def require_session(db, req: func.HttpRequest, tenant_id: Optional[str] = None) -> SessionCheck:
    session = check_session(db, extract_credential(req))
    if not session.authenticated:
        raise AuthError("Authentication required", code=f"session_{session.reason}")
    if tenant_id and str(tenant_id) != session.tenant_id:
        raise Forbidden("Session does not belong to the requested tenant")
    return session


def create_session_key(db, session_token: str, ttl_seconds: Optional[int] = None) -> str:
    """Store a one-time key pointing at session_token. Caller commits."""
    ttl = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else get_session_settings()["key_ttl_seconds"]
    session_key = str(uuid.uuid4())
    db.add(
        AuthSession(
            session_key=session_key,
            session_token=session_token,
            expires_at=datetime.utcnow() + timedelta(seconds=ttl),
        )
    )
    db.flush()
    return session_key


def redeem_session_key(db, session_key: str) -> str:
    """
    Exchange a one-time key for its session token. The lookup and delete run in
    one transaction and the delete's rowcount decides the winner, so a key is
    redeemed at most once.
    """
    if not session_key:
        raise InvalidOrExpiredKey("Invalid or expired session key")
    now = datetime.utcnow()
    token: Optional[str] = None
    deleted = 0
    try:
        purged = (
            db.query(AuthSession)
            .filter(AuthSession.expires_at <= now)
            .delete(synchronize_session=False)
        )
        if purged:
            logger.info("Purged %s expired session keys", purged)
        row = (
            db.query(AuthSession)
            .filter(AuthSession.session_key == session_key)
            .with_for_update()
            .one_or_none()
        )
        if row is not None:
            token = row.session_token
            deleted = (
                db.query(AuthSession)
                .filter(AuthSession.session_key == session_key)
                .delete(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if token is None or deleted != 1:
        logger.info("Session key %s... rejected", session_key[:8])
        raise InvalidOrExpiredKey("Invalid or expired session key")
    return token
