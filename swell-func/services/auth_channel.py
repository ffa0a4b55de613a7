"""
Typed messages posted from the OAuth popup back to the window that opened it.

The popup never writes global state. It posts exactly one message to an
explicit, allowlisted target origin, and the receiving side validates the
origin and shape of whatever it gets before trusting it.
"""

from __future__ import annotations

import html
import json
import os
from dataclasses import dataclass
from string import Template
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from shared.config import get_app_base_url
from shared.errors import Forbidden, ValidationError
from utils import cors

MESSAGE_SOURCE = "hubspot"
SUCCESS_TYPE = "hubspot-auth-success"
ERROR_TYPE = "hubspot-auth-error"


@dataclass(frozen=True)
class AuthSuccessMessage:
    session_key: str
    state: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "source": MESSAGE_SOURCE,
            "type": SUCCESS_TYPE,
            "sessionKey": self.session_key,
            "state": self.state,
        }


@dataclass(frozen=True)
class AuthErrorMessage:
    error: str
    state: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "source": MESSAGE_SOURCE,
            "type": ERROR_TYPE,
            "error": self.error,
            "state": self.state,
        }


AuthMessage = Union[AuthSuccessMessage, AuthErrorMessage]


def origin_of(url: Optional[str]) -> Optional[str]:
    parsed = urlparse(str(url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def allowed_origins() -> List[str]:
    """
    AUTH_ALLOWED_ORIGINS when set, else the CORS allowlist. A CORS wildcard is
    never inherited; the app's own origin is always allowed.
    """
    raw = os.getenv("AUTH_ALLOWED_ORIGINS")
    entries = cors._parse_origins(raw) if raw else list(cors.ALLOWED_ORIGINS)
    entries = [entry for entry in entries if entry != "*"]
    app_origin = origin_of(get_app_base_url())
    if app_origin and app_origin not in entries:
        entries.append(app_origin)
    return entries


def is_allowed_origin(origin: Optional[str]) -> bool:
    return cors.origin_in_allow_list(origin, allowed_origins())


def message_from_params(params: Mapping[str, Any]) -> AuthMessage:
    """Build the message a callback URL describes (?ok=1&session_key=... or ?error=...)."""
    state = params.get("state") or None
    error = str(params.get("error") or "").strip()
    if error:
        return AuthErrorMessage(error=error, state=state)
    session_key = str(params.get("session_key") or "").strip()
    if params.get("ok") and session_key:
        return AuthSuccessMessage(session_key=session_key, state=state)
    return AuthErrorMessage(error="missing_session_key", state=state)


def parse_auth_message(payload: Any, origin: Optional[str]) -> AuthMessage:
    """Validate an inbound auth message. Disallowed origins and unknown shapes are rejected."""
    if not is_allowed_origin(origin):
        raise Forbidden(f"Auth message from disallowed origin {origin!r}", code="origin_not_allowed")
    if not isinstance(payload, dict) or payload.get("source") != MESSAGE_SOURCE:
        raise ValidationError("Not a HubSpot auth message", code="unknown_message")

    state = payload.get("state")
    if state is not None and not isinstance(state, str):
        raise ValidationError("Auth message state must be a string", code="unknown_message")

    kind = payload.get("type")
    if kind == SUCCESS_TYPE:
        session_key = payload.get("sessionKey")
        if not isinstance(session_key, str) or not session_key.strip():
            raise ValidationError("Success message without sessionKey", code="unknown_message")
        return AuthSuccessMessage(session_key=session_key.strip(), state=state)
    if kind == ERROR_TYPE:
        error = payload.get("error")
        if not isinstance(error, str) or not error.strip():
            raise ValidationError("Error message without error code", code="unknown_message")
        return AuthErrorMessage(error=error.strip(), state=state)
    raise ValidationError(f"Unknown auth message type {kind!r}", code="unknown_message")


_PAGE = Template(
    """<!DOCTYPE html>
<html lang="no">
<head>
<meta charset="utf-8">
<title>HubSpot</title>
</head>
<body style="display:flex;align-items:center;justify-content:center;height:100vh;font-family:system-ui,sans-serif;background:#f5f5f5">
<p>$status</p>
<script>
(function () {
  var message = $message;
  var targetOrigin = $target;
  if (window.opener) {
    window.opener.postMessage(message, targetOrigin);
  }
  setTimeout(function () { window.close(); }, 100);
})();
</script>
</body>
</html>
"""
)


def _script_json(value: Any) -> str:
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def render_callback_page(message: AuthMessage, target_origin: str) -> str:
    """HTML that posts exactly one message to target_origin and closes the popup."""
    if not is_allowed_origin(target_origin):
        raise Forbidden(f"Target origin {target_origin!r} is not allowed", code="origin_not_allowed")
    status = "Fullfører autentisering..." if isinstance(message, AuthSuccessMessage) else "Autentisering feilet."
    return _PAGE.substitute(
        status=html.escape(status),
        message=_script_json(message.to_payload()),
        target=_script_json(origin_of(target_origin) or target_origin),
    )
