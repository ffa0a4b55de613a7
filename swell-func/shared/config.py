import os
from typing import List, Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_bool_setting(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "y"}:
        return True
    if lowered in {"0", "false", "no", "n"}:
        return False
    return default


def get_int_setting(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_float_setting(name: str, default: float) -> float:
    raw = str(os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/swell.db"


def get_hubspot_oauth_settings() -> dict:
    """
    Centralized helper for HubSpot OAuth env vars.
    """
    raw_scopes = os.getenv(
        "HUBSPOT_SCOPES",
        "oauth crm.objects.owners.read crm.objects.deals.read crm.objects.contacts.read",
    )
    scopes = [scope.strip() for scope in raw_scopes.split() if scope.strip()]
    return {
        "client_id": os.getenv("HUBSPOT_CLIENT_ID", ""),
        "client_secret": os.getenv("HUBSPOT_CLIENT_SECRET", ""),
        "redirect_uri": os.getenv("HUBSPOT_REDIRECT_URI") or f"{get_public_api_base()}/api/hubspot-oauth-exchange",
        "scopes": " ".join(scopes),
        "authorize_url": os.getenv("HUBSPOT_AUTHORIZE_URL", "https://app.hubspot.com/oauth/authorize"),
        "api_base": (os.getenv("HUBSPOT_API_BASE") or "https://api.hubapi.com").rstrip("/"),
    }


def get_public_api_base() -> str:
    """
    Base URL the OAuth provider redirects back to (no trailing slash).
    """
    return (os.getenv("API_PUBLIC_BASE_URL") or "http://localhost:7071").rstrip("/")


def get_session_settings() -> dict:
    """
    Session token settings. TTLs are clamped to [15 min, 30 days] for the
    session token and [30 s, 1 h] for the one-time key.
    """
    ttl = get_int_setting("AUTH_SESSION_TTL_SECONDS", 7 * 24 * 60 * 60)
    key_ttl = get_int_setting("AUTH_SESSION_KEY_TTL_SECONDS", 5 * 60)
    return {
        "ttl_seconds": max(15 * 60, min(30 * 24 * 60 * 60, ttl)),
        "key_ttl_seconds": max(30, min(60 * 60, key_ttl)),
        "cookie_name": os.getenv("AUTH_SESSION_COOKIE", "swell_session"),
        "cookie_secure": get_bool_setting("AUTH_SESSION_COOKIE_SECURE", True),
        "oauth_state_ttl_seconds": get_int_setting("OAUTH_STATE_TTL_SECONDS", 10 * 60),
    }


def get_session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "JWT_SECRET", "SECRET_KEY"):
        value = str(os.getenv(key) or "").strip()
        if value:
            return value
    return ""


def get_retry_settings() -> dict:
    """
    Rate-limit retry policy for HubSpot calls. When partial_on_exhaustion is
    set, paginated reads return the pages collected so far instead of raising.
    """
    return {
        "max_attempts": max(1, get_int_setting("HUBSPOT_MAX_ATTEMPTS", 3)),
        "backoff_seconds": max(0.0, get_float_setting("HUBSPOT_RETRY_BACKOFF_SECONDS", 5.0)),
        "max_backoff_seconds": max(0.0, get_float_setting("HUBSPOT_RETRY_MAX_BACKOFF_SECONDS", 30.0)),
        "partial_on_exhaustion": get_bool_setting("HUBSPOT_PARTIAL_ON_RATE_LIMIT", False),
        "timeout_seconds": max(1.0, get_float_setting("HUBSPOT_TIMEOUT_SECONDS", 15.0)),
        "page_size": max(1, min(100, get_int_setting("HUBSPOT_PAGE_SIZE", 100))),
    }


def get_leaderboard_settings() -> dict:
    return {
        "timezone": os.getenv("LEADERBOARD_TIMEZONE", "UTC"),
        "default_closed_stages": _split_csv(os.getenv("LEADERBOARD_CLOSED_STAGES", "closedwon,closedlost")),
        "fetch_workers": max(1, get_int_setting("LEADERBOARD_FETCH_WORKERS", 6)),
    }


def get_app_base_url() -> str:
    return (os.getenv("APP_BASE_URL") or "http://localhost:5173").rstrip("/")


def get_sync_api_key() -> str:
    return str(os.getenv("SYNC_API_KEY") or "").strip()


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in str(raw or "").split(",") if item.strip()]
