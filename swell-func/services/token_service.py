from __future__ import annotations

import logging
from datetime import datetime, timedelta
from types import ModuleType
from typing import Any, Optional

from services import oauth_service
from shared.db import HubSpotToken
from shared.errors import NoTokenFound, RefreshFailed
from utils.token_crypto import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

EXPIRY_SKEW = timedelta(seconds=60)


def _expires_at(expires_in: Any, now: Optional[datetime] = None) -> datetime:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = 1800
    return (now or datetime.utcnow()) + timedelta(seconds=max(0, seconds))


def store_token_pair(db, tenant_id: str, access_token: str, refresh_token: str, expires_in: Any) -> HubSpotToken:
    """Upsert the single token row of a tenant. Caller commits."""
    row = db.query(HubSpotToken).filter_by(tenant_id=tenant_id).one_or_none()
    if not row:
        row = HubSpotToken(tenant_id=tenant_id)
        db.add(row)
    row.access_token = encrypt_token(access_token)
    row.refresh_token = encrypt_token(refresh_token)
    row.expires_at = _expires_at(expires_in)
    db.flush()
    return row


def get_valid_access_token(
    db,
    tenant_id: str,
    *,
    oauth: Optional[ModuleType] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Return a usable bearer token for the tenant, refreshing it first when the
    stored expiry is within 60 seconds. A refreshed pair is committed before
    the token is returned.
    """
    oauth = oauth or oauth_service
    now = now or datetime.utcnow()
    row = db.query(HubSpotToken).filter_by(tenant_id=tenant_id).one_or_none()
    if not row:
        raise NoTokenFound(f"No HubSpot token stored for tenant {tenant_id}")

    if row.expires_at and row.expires_at - EXPIRY_SKEW > now:
        return decrypt_token(row.access_token)

    logger.info("HubSpot token for tenant %s expired at %s, refreshing", tenant_id, row.expires_at)
    try:
        refresh_token = decrypt_token(row.refresh_token)
    except ValueError as exc:
        raise RefreshFailed("Stored refresh token could not be decrypted") from exc

    refreshed = oauth.refresh_access_token(refresh_token)
    access_token = refreshed["access_token"]
    store_token_pair(
        db,
        tenant_id,
        access_token,
        refreshed.get("refresh_token") or refresh_token,
        refreshed.get("expires_in"),
    )
    db.commit()
    return access_token
