from typing import Any, Dict, Optional

import azure.functions as func

from function_app import app
from services.hubspot_client import HubSpotClient
from services.leaderboard_service import (
    Leaderboard,
    build_activity_leaderboard,
    build_deal_leaderboard,
    build_me_summary,
)
from services.session_service import SessionCheck, require_session
from shared.db import SessionLocal
from shared.errors import Forbidden, ValidationError
from utils.http import json_response, read_request_params, run_handler

METHODS = ["GET", "POST", "OPTIONS"]


def shape_leaderboard(board: Leaderboard, session: Optional[SessionCheck] = None) -> Dict[str, Any]:
    """JSON body shared by the leaderboards: podium, full list and the caller's own card."""
    full_list = [entry.to_dict() for entry in board.entries]
    payload: Dict[str, Any] = {
        "category": board.category,
        "top_3": full_list[:3],
        "full_list": full_list,
        "total_entries": len(full_list),
        "last_updated": board.generated_at.isoformat(),
    }
    if session is not None:
        payload["me"] = next((item for item in full_list if item["user_id"] == session.user_id), None)
    if board.window is not None:
        payload["week_start"] = board.window.start.isoformat()
        payload["week_end"] = board.window.end.isoformat()
    if board.partial:
        payload["partial"] = True
    return payload


def _require_tenant(params: Dict[str, Any]) -> str:
    if not params["tenant_id"]:
        raise ValidationError("tenant_id is required")
    return params["tenant_id"]


def handle_leaderboard(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    params = read_request_params(req)
    tenant_id = _require_tenant(params)
    db = SessionLocal()
    try:
        session = require_session(db, req, tenant_id)
        client = HubSpotClient.for_tenant(db, tenant_id) if params["refresh"] else None
        board = build_deal_leaderboard(
            db,
            tenant_id,
            client,
            team_id=params["team_id"],
            include_closed=params["include_closed"],
            refresh=params["refresh"],
        )
        return json_response(
            shape_leaderboard(board, session),
            cors=cors,
            headers={"Cache-Control": "private, no-store"},
        )
    finally:
        db.close()


def handle_activity_leaderboard(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    params = read_request_params(req)
    tenant_id = _require_tenant(params)
    db = SessionLocal()
    try:
        session = require_session(db, req, tenant_id)
        client = HubSpotClient.for_tenant(db, tenant_id)
        board = build_activity_leaderboard(
            db,
            tenant_id,
            client,
            team_id=params["team_id"],
            refresh=params["refresh"],
        )
        return json_response(
            shape_leaderboard(board, session),
            cors=cors,
            headers={"Cache-Control": "private, no-store"},
        )
    finally:
        db.close()


def handle_me_summary(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    params = read_request_params(req)
    tenant_id = _require_tenant(params)
    if not params["user_id"]:
        raise ValidationError("tenant_id and user_id are required")
    db = SessionLocal()
    try:
        session = require_session(db, req, tenant_id)
        if params["user_id"] != session.user_id and session.role != "org_admin":
            raise Forbidden("Only org admins can read another user's summary")
        client = HubSpotClient.for_tenant(db, tenant_id) if params["refresh"] else None
        summary = build_me_summary(db, tenant_id, params["user_id"], client, refresh=params["refresh"])
        return json_response(summary, cors=cors, headers={"Cache-Control": "private, no-store"})
    finally:
        db.close()


@app.function_name(name="Leaderboard")
@app.route(route="leaderboard", methods=METHODS, auth_level=func.AuthLevel.ANONYMOUS)
def leaderboard(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, METHODS, handle_leaderboard)


@app.function_name(name="ActivityLeaderboard")
@app.route(route="activity-leaderboard", methods=METHODS, auth_level=func.AuthLevel.ANONYMOUS)
def activity_leaderboard(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, METHODS, handle_activity_leaderboard)


@app.function_name(name="MeSummary")
@app.route(route="me-summary", methods=METHODS, auth_level=func.AuthLevel.ANONYMOUS)
def me_summary(req: func.HttpRequest) -> func.HttpResponse:
    return run_handler(req, METHODS, handle_me_summary)
