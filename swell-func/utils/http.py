from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

import azure.functions as func

from shared.errors import AppError
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

Handler = Callable[[func.HttpRequest, Dict[str, str]], func.HttpResponse]

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def json_response(
    data: Any,
    *,
    cors: Dict[str, str],
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> func.HttpResponse:
    merged = dict(cors)
    if headers:
        merged.update(headers)
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=merged,
    )


def error_response(exc: AppError, *, cors: Dict[str, str]) -> func.HttpResponse:
    return json_response(exc.to_payload(), cors=cors, status_code=exc.status_code)


def redirect_response(location: str, *, headers: Optional[Dict[str, str]] = None) -> func.HttpResponse:
    merged = {"Location": location}
    if headers:
        merged.update(headers)
    return func.HttpResponse("", status_code=302, headers=merged)


def parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    lowered = str(value).strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    return default


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def read_request_params(req: func.HttpRequest) -> Dict[str, Any]:
    """
    Read leaderboard parameters from a POST JSON body, falling back to the
    query string for GET requests.
    """
    body = parse_body(req) if req.method == "POST" else {}

    def pick(name: str) -> Any:
        if name in body:
            return body.get(name)
        return req.params.get(name)

    return {
        "tenant_id": _clean(pick("tenant_id")),
        "team_id": _clean(pick("team_id")),
        "user_id": _clean(pick("user_id")),
        "include_closed": parse_bool(pick("include_closed"), False),
        "refresh": parse_bool(pick("refresh"), True),
    }


def get_cookie(req: func.HttpRequest, name: str) -> Optional[str]:
    raw = req.headers.get("cookie") or req.headers.get("Cookie") or ""
    for part in raw.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key == name and value:
            return value
    return None


def run_handler(req: func.HttpRequest, methods: Iterable[str], handler: Handler) -> func.HttpResponse:
    """
    Build CORS headers, answer preflight requests and map raised errors to
    JSON responses. Unexpected exceptions become a 500 internal_error.
    """
    cors = build_cors_headers(req, methods)
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=200, headers=cors)
    try:
        return handler(req, cors)
    except AppError as exc:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s (%s)", req.method, req.url, exc.message, exc.code)
        return error_response(exc, cors=cors)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Unhandled error in %s %s", req.method, req.url)
        return json_response(
            {"error": "Internal server error", "code": "internal_error"},
            cors=cors,
            status_code=500,
        )
