from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from services.hubspot_client import HubSpotClient
from services.retry_policy import RetryPolicy
from shared.config import get_hubspot_oauth_settings, get_retry_settings
from shared.errors import AppError, AuthError, RefreshFailed, UpstreamError

logger = logging.getLogger(__name__)


def build_authorize_url(state: str) -> str:
    settings = get_hubspot_oauth_settings()
    query = urlencode(
        {
            "client_id": settings["client_id"],
            "redirect_uri": settings["redirect_uri"],
            "scope": settings["scopes"],
            "state": state,
        }
    )
    return f"{settings['authorize_url']}?{query}"


def _token_request(payload: Dict[str, Any], *, policy: Optional[RetryPolicy] = None) -> requests.Response:
    settings = get_hubspot_oauth_settings()
    url = f"{settings['api_base']}/oauth/v1/token"
    timeout = get_retry_settings()["timeout_seconds"]
    policy = policy or RetryPolicy.from_settings()

    def send() -> requests.Response:
        try:
            return requests.post(
                url,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"HubSpot token endpoint unreachable: {exc}") from exc

    return policy.execute(send, description="POST /oauth/v1/token")


def _token_payload(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict) or not data.get("access_token"):
        raise AuthError("HubSpot token response did not include an access token", code="token_exchange_failed")
    return data


def exchange_code(code: str, *, policy: Optional[RetryPolicy] = None) -> Dict[str, Any]:
    """Trade an authorization code for an access/refresh token pair."""
    settings = get_hubspot_oauth_settings()
    response = _token_request(
        {
            "grant_type": "authorization_code",
            "client_id": settings["client_id"],
            "client_secret": settings["client_secret"],
            "redirect_uri": settings["redirect_uri"],
            "code": code,
        },
        policy=policy,
    )
    if response.status_code != 200:
        logger.warning("HubSpot code exchange failed with %s: %s", response.status_code, response.text[:300])
        raise AuthError("HubSpot rejected the authorization code", code="token_exchange_failed")
    return _token_payload(response)


def refresh_access_token(refresh_token: str, *, policy: Optional[RetryPolicy] = None) -> Dict[str, Any]:
    """Run the refresh-token grant. Any rejection is fatal and raises RefreshFailed."""
    settings = get_hubspot_oauth_settings()
    try:
        response = _token_request(
            {
                "grant_type": "refresh_token",
                "client_id": settings["client_id"],
                "client_secret": settings["client_secret"],
                "refresh_token": refresh_token,
            },
            policy=policy,
        )
    except AppError as exc:
        raise RefreshFailed(f"HubSpot token refresh failed: {exc.message}") from exc
    if response.status_code != 200:
        logger.warning("HubSpot token refresh failed with %s: %s", response.status_code, response.text[:300])
        raise RefreshFailed("HubSpot rejected the refresh token")
    try:
        return _token_payload(response)
    except AuthError as exc:
        raise RefreshFailed(exc.message) from exc


def get_access_token_info(access_token: str) -> Dict[str, Any]:
    """
    Read portal id, HubSpot user id and user email behind an access token.
    The email falls back to user{id}@hubspot.local when HubSpot omits it.
    """
    settings = get_hubspot_oauth_settings()
    try:
        response = requests.get(
            f"{settings['api_base']}/oauth/v1/access-tokens/{access_token}",
            timeout=get_retry_settings()["timeout_seconds"],
        )
    except requests.RequestException as exc:
        raise UpstreamError(f"HubSpot token info unreachable: {exc}") from exc
    if response.status_code != 200:
        raise AuthError("HubSpot token info lookup failed", code="token_info_failed")
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict) or data.get("hub_id") is None or data.get("user_id") is None:
        raise AuthError("HubSpot token info is missing hub_id or user_id", code="token_info_failed")

    hubspot_user_id = str(data["user_id"])
    email = str(data.get("user") or "").strip().lower() or f"user{hubspot_user_id}@hubspot.local"
    return {
        "portal_id": str(data["hub_id"]),
        "hubspot_user_id": hubspot_user_id,
        "email": email,
        "scopes": data.get("scopes") or [],
    }


def get_account_name(access_token: str, portal_id: str, *, client: Optional[HubSpotClient] = None) -> str:
    """Portal display name, or 'HubSpot Portal <id>' when HubSpot does not provide one."""
    fallback = f"HubSpot Portal {portal_id}"
    client = client or HubSpotClient(access_token)
    try:
        details = client.get_account_details()
    except UpstreamError as exc:
        logger.warning("Account details unavailable for portal %s: %s", portal_id, exc.message)
        return fallback
    return str(details.get("portalName") or details.get("name") or "").strip() or fallback
