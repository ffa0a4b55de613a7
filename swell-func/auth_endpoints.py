import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlencode

import azure.functions as func

from function_app import app
from services.auth_channel import (
    allowed_origins,
    is_allowed_origin,
    message_from_params,
    origin_of,
    render_callback_page,
)
from services.hubspot_client import HubSpotClient
from services.oauth_service import build_authorize_url, exchange_code, get_access_token_info, get_account_name
from services.session_service import (
    check_session,
    create_session_key,
    extract_credential,
    issue_session_token,
    redeem_session_key,
)
from services.sync_service import sync_tenant
from services.token_service import store_token_pair
from shared.config import get_app_base_url, get_hubspot_oauth_settings, get_public_api_base, get_session_settings
from shared.db import OAuthState, SessionLocal, Tenant, User
from shared.errors import AppError, Forbidden, ValidationError
from utils.http import json_response, parse_body, redirect_response, run_handler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _callback_redirect(**params: Optional[str]) -> func.HttpResponse:
    query = urlencode({key: value for key, value in params.items() if value})
    return redirect_response(f"{get_public_api_base()}/api/hubspot-auth/callback?{query}")


def _consume_state(db, state: str) -> OAuthState:
    """Mark the state used exactly once. Raises AppError with the redirect error code."""
    now = datetime.utcnow()
    row = db.query(OAuthState).filter_by(state_value=state).one_or_none()
    if row is None or row.used:
        raise AppError("OAuth state unknown or already used", code="state_mismatch", status_code=400)
    if row.expires_at <= now:
        raise AppError("OAuth state expired", code="state_expired", status_code=400)
    updated = (
        db.query(OAuthState)
        .filter(OAuthState.id == row.id, OAuthState.used.is_(False), OAuthState.expires_at > now)
        .update({"used": True}, synchronize_session=False)
    )
    db.commit()
    if updated != 1:
        raise AppError("OAuth state already consumed", code="state_mismatch", status_code=400)
    return row


def _upsert_tenant(db, portal_id: str, company_name: str) -> Tenant:
    tenant = db.query(Tenant).filter_by(portal_id=portal_id).one_or_none()
    if tenant is None:
        tenant = Tenant(portal_id=portal_id, company_name=company_name)
        db.add(tenant)
        logger.info("Created tenant for portal %s", portal_id)
    else:
        tenant.company_name = company_name
    db.flush()
    return tenant


def _upsert_oauth_user(db, tenant: Tenant, hubspot_user_id: str, email: str) -> User:
    """The first user of a tenant becomes org_admin. An existing role is never overwritten."""
    user = (
        db.query(User).filter_by(tenant_id=tenant.id, hubspot_user_id=hubspot_user_id).one_or_none()
        or db.query(User).filter_by(tenant_id=tenant.id, email=email).one_or_none()
    )
    if user is None:
        has_users = db.query(User.id).filter_by(tenant_id=tenant.id).first() is not None
        user = User(
            tenant_id=tenant.id,
            email=email,
            hubspot_user_id=hubspot_user_id,
            role="sales_rep" if has_users else "org_admin",
            is_active=True,
        )
        db.add(user)
    else:
        user.hubspot_user_id = hubspot_user_id
        user.is_active = True
    db.flush()
    return user


def _session_cookie(token: str, max_age: int) -> str:
    settings = get_session_settings()
    parts = [
        f"{settings['cookie_name']}={token}",
        "Path=/",
        f"Max-Age={max_age}",
        "HttpOnly",
    ]
    if settings["cookie_secure"]:
        parts.extend(["Secure", "SameSite=None"])
    else:
        parts.append("SameSite=Lax")
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def handle_auth_start(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    frontend_url = (req.params.get("frontend_url") or parse_body(req).get("frontend_url") or get_app_base_url()).strip()
    if not is_allowed_origin(origin_of(frontend_url)):
        raise Forbidden("frontend_url is not an allowed origin", code="origin_not_allowed")

    settings = get_hubspot_oauth_settings()
    if not settings["client_id"] or not settings["client_secret"]:
        raise AppError("HubSpot OAuth env vars missing", code="server_configuration")

    state = secrets.token_urlsafe(24)
    db = SessionLocal()
    try:
        db.add(
            OAuthState(
                state_value=state,
                frontend_url=frontend_url,
                expires_at=datetime.utcnow() + timedelta(seconds=get_session_settings()["oauth_state_ttl_seconds"]),
            )
        )
        db.commit()
    finally:
        db.close()

    auth_url = build_authorize_url(state)
    if (req.params.get("mode") or "").lower() == "json":
        return json_response({"auth_url": auth_url, "state": state}, cors=cors)
    return redirect_response(auth_url, headers=cors)


def handle_oauth_exchange(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:  # pylint: disable=unused-argument
    code = (req.params.get("code") or "").strip()
    state = (req.params.get("state") or "").strip()
    if req.params.get("error"):
        return _callback_redirect(error="access_denied", state=state)
    if not code or not state:
        return _callback_redirect(error="missing_parameters", state=state)
    settings = get_hubspot_oauth_settings()
    if not settings["client_id"] or not settings["client_secret"]:
        return _callback_redirect(error="server_configuration", state=state)

    db = SessionLocal()
    try:
        _consume_state(db, state)

        tokens = exchange_code(code)
        access_token = tokens["access_token"]
        info = get_access_token_info(access_token)
        company_name = get_account_name(access_token, info["portal_id"])

        tenant = _upsert_tenant(db, info["portal_id"], company_name)
        user = _upsert_oauth_user(db, tenant, info["hubspot_user_id"], info["email"])
        store_token_pair(db, tenant.id, access_token, tokens.get("refresh_token") or "", tokens.get("expires_in"))
        db.commit()
        tenant_id, user_id, email = tenant.id, user.id, user.email

        try:
            sync_tenant(db, tenant_id, HubSpotClient(access_token))
        except Exception:  # pylint: disable=broad-except
            db.rollback()
            logger.exception("Initial sync for tenant %s failed", tenant_id)

        session_token = issue_session_token(tenant_id, user_id, email, get_session_settings()["ttl_seconds"])
        session_key = create_session_key(db, session_token)
        db.commit()
        logger.info("HubSpot login complete for user %s in tenant %s", user_id, tenant_id)
        return _callback_redirect(ok="1", session_key=session_key, state=state)
    except AppError as exc:
        db.rollback()
        logger.warning("HubSpot OAuth exchange failed: %s (%s)", exc.message, exc.code)
        return _callback_redirect(error=exc.code, state=state)
    except Exception:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("HubSpot OAuth exchange crashed")
        return _callback_redirect(error="unexpected_error", state=state)
    finally:
        db.close()


def handle_auth_callback(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:  # pylint: disable=unused-argument
    message = message_from_params(req.params)
    target = origin_of(get_app_base_url())
    state = req.params.get("state")
    if state:
        db = SessionLocal()
        try:
            row = db.query(OAuthState).filter_by(state_value=state).one_or_none()
            candidate = origin_of(row.frontend_url) if row else None
        finally:
            db.close()
        if candidate and is_allowed_origin(candidate):
            target = candidate
    if not target:
        target = allowed_origins()[0]
    page = render_callback_page(message, target)
    return func.HttpResponse(page, status_code=200, mimetype="text/html", headers={"Cache-Control": "no-store"})


def handle_exchange_session(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    session_key = (req.params.get("session_key") or parse_body(req).get("session_key") or "").strip()
    if not session_key:
        raise ValidationError("Missing session_key parameter")
    db = SessionLocal()
    try:
        token = redeem_session_key(db, session_key)
    finally:
        db.close()
    ttl = get_session_settings()["ttl_seconds"]
    return json_response(
        {"sessionToken": token},
        cors=cors,
        headers={
            "Set-Cookie": _session_cookie(token, ttl),
            "X-Session-Token": token,
            "Cache-Control": "no-store",
        },
    )


def handle_session_me(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        session = check_session(db, extract_credential(req))
    finally:
        db.close()
    return json_response(session.to_dict(), cors=cors, headers={"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.function_name(name="HubSpotAuthStart")
@app.route(route="hubspot-auth/start", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def hubspot_auth_start(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET", "POST", "OPTIONS"], handle_auth_start)


@app.function_name(name="HubSpotOAuthExchange")
@app.route(route="hubspot-oauth-exchange", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def hubspot_oauth_exchange(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET", "OPTIONS"], handle_oauth_exchange)


@app.function_name(name="HubSpotAuthCallback")
@app.route(route="hubspot-auth/callback", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def hubspot_auth_callback(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET"], handle_auth_callback)


@app.function_name(name="ExchangeSession")
@app.route(route="exchange-session", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def exchange_session(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET", "POST", "OPTIONS"], handle_exchange_session)


@app.function_name(name="SessionMe")
@app.route(route="session-me", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def session_me(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET", "OPTIONS"], handle_session_me)
