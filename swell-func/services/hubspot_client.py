from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import requests

from services.retry_policy import RetryPolicy
from shared.config import get_hubspot_oauth_settings, get_retry_settings
from shared.errors import UnrecognizedShape, UpstreamError, UpstreamRateLimited

logger = logging.getLogger(__name__)

DEAL_PROPERTIES = [
    "dealname",
    "amount",
    "pipeline",
    "dealstage",
    "closedate",
    "hs_lastmodifieddate",
    "hubspot_owner_id",
    "hs_is_closed",
]
ACTIVITY_PROPERTIES = ["hs_timestamp", "hs_createdate", "hubspot_owner_id"]
ACTIVITY_KINDS = ("meetings", "calls", "emails")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) of timezone-aware datetimes."""

    start: datetime
    end: datetime

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.start <= moment < self.end


@dataclass
class OwnerTeam:
    id: str
    name: str
    primary: bool = False


@dataclass
class CrmOwner:
    id: str
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_id: Optional[str] = None
    archived: bool = False
    teams: List[OwnerTeam] = field(default_factory=list)

    @property
    def full_name(self) -> Optional[str]:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or None


@dataclass
class CrmDeal:
    id: str
    name: Optional[str]
    amount: Optional[float]
    pipeline: Optional[str]
    stage: Optional[str]
    close_date: Optional[datetime]
    last_modified: Optional[datetime]
    owner_id: Optional[str]
    is_closed: Optional[bool] = None

    @property
    def reference_date(self) -> datetime:
        return self.close_date or self.last_modified or EPOCH


@dataclass
class ActivityRecord:
    kind: str
    hubspot_id: str
    timestamp: datetime
    owner_id: Optional[str]


def parse_hubspot_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_flag(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_object(raw: Any, what: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise UnrecognizedShape(f"Expected a {what} object, got {type(raw).__name__}")
    if raw.get("id") in (None, ""):
        raise UnrecognizedShape(f"{what.capitalize()} without an id")
    return raw


def _properties(raw: Dict[str, Any], what: str) -> Dict[str, Any]:
    props = raw.get("properties")
    if props is None:
        return {}
    if not isinstance(props, dict):
        raise UnrecognizedShape(f"{what.capitalize()} {raw.get('id')} has malformed properties")
    return props


def parse_owner(raw: Any) -> CrmOwner:
    item = _require_object(raw, "owner")
    teams_raw = item.get("teams") or []
    if not isinstance(teams_raw, list):
        raise UnrecognizedShape(f"Owner {item.get('id')} has malformed teams")
    teams = []
    for team in teams_raw:
        if not isinstance(team, dict) or team.get("id") in (None, ""):
            raise UnrecognizedShape(f"Owner {item.get('id')} has a malformed team entry")
        teams.append(
            OwnerTeam(
                id=str(team["id"]),
                name=str(team.get("name") or f"Team {team['id']}"),
                primary=bool(team.get("primary")),
            )
        )
    email = _optional_id(item.get("email"))
    return CrmOwner(
        id=str(item["id"]),
        email=email.lower() if email else None,
        first_name=_optional_id(item.get("firstName")),
        last_name=_optional_id(item.get("lastName")),
        user_id=_optional_id(item.get("userId")),
        archived=bool(item.get("archived")),
        teams=teams,
    )


def parse_deal(raw: Any) -> CrmDeal:
    item = _require_object(raw, "deal")
    props = _properties(item, "deal")
    return CrmDeal(
        id=str(item["id"]),
        name=_optional_id(props.get("dealname")),
        amount=_parse_amount(props.get("amount")),
        pipeline=_optional_id(props.get("pipeline")),
        stage=_optional_id(props.get("dealstage")),
        close_date=parse_hubspot_datetime(props.get("closedate")),
        last_modified=parse_hubspot_datetime(props.get("hs_lastmodifieddate")),
        owner_id=_optional_id(props.get("hubspot_owner_id")),
        is_closed=_parse_flag(props.get("hs_is_closed")),
    )


def activity_timestamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, dict):
        return None
    props = raw.get("properties")
    if not isinstance(props, dict):
        return None
    return parse_hubspot_datetime(props.get("hs_timestamp") or props.get("hs_createdate"))


def parse_activity(kind: str, raw: Any) -> ActivityRecord:
    item = _require_object(raw, "activity")
    props = _properties(item, "activity")
    timestamp = activity_timestamp(item)
    if timestamp is None:
        raise UnrecognizedShape(f"{kind} {item['id']} has no usable hs_timestamp")
    return ActivityRecord(
        kind=kind,
        hubspot_id=str(item["id"]),
        timestamp=timestamp,
        owner_id=_optional_id(props.get("hubspot_owner_id")),
    )


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "")[:500]
    if not isinstance(body, dict):
        return str(body)[:500]
    message = str(body.get("message") or "")
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        details = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
        message = f"{message} - {details}" if message else details
    return message or (response.text or "")[:500]


class HubSpotClient:
    """
    Thin HubSpot REST client bound to one access token.

    Every call goes through the injected RetryPolicy. A client may be shared
    by the worker threads of one request.
    """

    def __init__(
        self,
        access_token: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        http: Any = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
    ):
        settings = get_retry_settings()
        self.access_token = access_token
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.http = http or requests
        self.api_base = (api_base or get_hubspot_oauth_settings()["api_base"]).rstrip("/")
        self.timeout = timeout or settings["timeout_seconds"]
        self.page_size = page_size or settings["page_size"]
        self.partial_paths: Set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def for_tenant(cls, db, tenant_id: str, **kwargs) -> "HubSpotClient":
        from services.token_service import get_valid_access_token

        return cls(get_valid_access_token(db, tenant_id), **kwargs)

    @property
    def partial(self) -> bool:
        return bool(self.partial_paths)

    def request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}

        def send() -> requests.Response:
            try:
                return self.http.request(method, url, headers=headers, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.warning("HubSpot %s %s transport failure: %s", method, path, exc)
                raise UpstreamError(f"HubSpot request failed: {exc}") from exc

        response = self.retry_policy.execute(send, description=f"{method} {path}")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("HubSpot %s %s returned %s: %s", method, path, response.status_code, message)
            raise UpstreamError(
                f"HubSpot API error {response.status_code}: {message}",
                upstream_status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnrecognizedShape(f"HubSpot {path} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise UnrecognizedShape(f"HubSpot {path} returned {type(payload).__name__} instead of an object")
        return payload

    def paginate(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        window: Optional[TimeWindow] = None,
        timestamp_of: Optional[Callable[[Dict[str, Any]], Optional[datetime]]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Follow paging.next.after until HubSpot stops returning a cursor.

        When a window is given each page is filtered to the items whose
        timestamp (read by timestamp_of) falls inside it before accumulating.
        """
        if window is not None and timestamp_of is None:
            timestamp_of = activity_timestamp
        collected: List[Dict[str, Any]] = []
        after: Optional[str] = None
        pages = 0
        while True:
            query: Dict[str, Any] = {"limit": self.page_size}
            if params:
                query.update(params)
            if after:
                query["after"] = after
            try:
                data = self.request("GET", path, params=query)
            except UpstreamRateLimited:
                if not self.retry_policy.partial_on_exhaustion:
                    raise
                logger.warning(
                    "HubSpot %s rate limited after %s pages, returning %s partial results",
                    path,
                    pages,
                    len(collected),
                )
                with self._lock:
                    self.partial_paths.add(path)
                return collected

            results = data.get("results", [])
            if not isinstance(results, list):
                raise UnrecognizedShape(f"HubSpot {path} page has no results list")
            if window is not None:
                results = [item for item in results if window.contains(timestamp_of(item))]
            collected.extend(results)
            pages += 1

            paging = data.get("paging") or {}
            next_link = paging.get("next") if isinstance(paging, dict) else None
            after = next_link.get("after") if isinstance(next_link, dict) else None
            if not after:
                break

        if pages > 1:
            logger.info("HubSpot %s: fetched %s pages, %s results", path, pages, len(collected))
        return collected

    def list_owners(self, archived: bool = False) -> List[CrmOwner]:
        raw = self.paginate("/crm/v3/owners", params={"archived": "true" if archived else "false"})
        return [parse_owner(item) for item in raw]

    def list_deals(self) -> List[CrmDeal]:
        raw = self.paginate("/crm/v3/objects/deals", params={"properties": ",".join(DEAL_PROPERTIES)})
        return [parse_deal(item) for item in raw]

    def list_activities(self, kind: str, window: TimeWindow) -> List[ActivityRecord]:
        if kind not in ACTIVITY_KINDS:
            raise ValueError(f"Unknown activity kind: {kind}")
        raw = self.paginate(
            f"/crm/v3/objects/{kind}",
            params={"properties": ",".join(ACTIVITY_PROPERTIES)},
            window=window,
            timestamp_of=activity_timestamp,
        )
        return [parse_activity(kind, item) for item in raw]

    def get_account_details(self) -> Dict[str, Any]:
        return self.request("GET", "/account-info/v3/details")
