import hmac
import logging
from typing import Dict, Optional

import azure.functions as func

from function_app import app
from services.hubspot_client import HubSpotClient
from services.session_service import require_session
from services.sync_service import check_owner_matching, fix_owner_ids, sync_tenant, sync_tenant_names
from shared.config import get_int_setting, get_sync_api_key
from shared.db import SessionLocal
from shared.errors import AuthError, Forbidden, ValidationError
from utils.http import json_response, read_request_params, run_handler

logger = logging.getLogger(__name__)


def _has_sync_key(req: func.HttpRequest) -> bool:
    expected = get_sync_api_key()
    provided = str(req.headers.get("x-sync-key") or "").strip()
    return bool(expected) and bool(provided) and hmac.compare_digest(expected, provided)


def _authorize(db, req: func.HttpRequest, tenant_id: Optional[str]) -> str:
    """Allow the sync key or an org_admin session of the tenant. Returns the caller label for logs."""
    if _has_sync_key(req):
        return "sync-key"
    session = require_session(db, req, tenant_id)
    if session.role != "org_admin":
        raise Forbidden("Only org admins can run HubSpot maintenance")
    return f"user:{session.user_id}"


def _tenant_id(req: func.HttpRequest) -> str:
    tenant_id = read_request_params(req)["tenant_id"]
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    return tenant_id


def handle_sync_hubspot_data(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    tenant_id = _tenant_id(req)
    db = SessionLocal()
    try:
        caller = _authorize(db, req, tenant_id)
        logger.info("HubSpot sync for tenant %s requested by %s", tenant_id, caller)
        result = sync_tenant(db, tenant_id, HubSpotClient.for_tenant(db, tenant_id))
        return json_response(result, cors=cors)
    finally:
        db.close()


def handle_sync_tenant_names(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    if not _has_sync_key(req):
        raise AuthError("x-sync-key required", code="sync_key_required")
    db = SessionLocal()
    try:
        result = sync_tenant_names(db, HubSpotClient.for_tenant)
        return json_response(result, cors=cors)
    finally:
        db.close()


def handle_fix_owner_ids(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    tenant_id = _tenant_id(req)
    db = SessionLocal()
    try:
        caller = _authorize(db, req, tenant_id)
        logger.info("Owner id repair for tenant %s requested by %s", tenant_id, caller)
        result = fix_owner_ids(db, tenant_id, HubSpotClient.for_tenant(db, tenant_id))
        return json_response(result, cors=cors)
    finally:
        db.close()


def handle_debug_owners_check(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    tenant_id = _tenant_id(req)
    sample = req.params.get("sample")
    db = SessionLocal()
    try:
        _authorize(db, req, tenant_id)
        try:
            size = int(sample) if sample else get_int_setting("OWNER_CHECK_SAMPLE", 20)
        except ValueError as exc:
            raise ValidationError("sample must be an integer") from exc
        result = check_owner_matching(db, tenant_id, HubSpotClient.for_tenant(db, tenant_id), sample=size)
        return json_response(result, cors=cors)
    finally:
        db.close()


@app.function_name(name="SyncHubSpotData")
@app.route(route="sync-hubspot-data", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def sync_hubspot_data(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["POST", "OPTIONS"], handle_sync_hubspot_data)


@app.function_name(name="SyncTenantNames")
@app.route(route="sync-tenant-names", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def sync_tenant_names_api(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["POST", "OPTIONS"], handle_sync_tenant_names)


@app.function_name(name="MigrateFixOwnerIds")
@app.route(route="migrate-fix-owner-ids", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def migrate_fix_owner_ids(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["POST", "OPTIONS"], handle_fix_owner_ids)


@app.function_name(name="DebugOwnersCheck")
@app.route(route="debug-owners-check", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def debug_owners_check(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, ["GET", "OPTIONS"], handle_debug_owners_check)
