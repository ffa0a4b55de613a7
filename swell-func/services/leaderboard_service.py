from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from services.hubspot_client import ACTIVITY_KINDS, ActivityRecord, CrmDeal, HubSpotClient, TimeWindow
from shared.config import get_leaderboard_settings
from shared.db import Deal, OrgDefault, User, UserTeam
from shared.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

DEAL_CATEGORY = "Størst deal i pipeline"
ACTIVITY_CATEGORY = "Aktivitet denne uken"
CLOSED_STAGES_KEY = "closed_deal_stages"

T = TypeVar("T")


@dataclass
class ActiveUser:
    id: str
    email: str
    full_name: Optional[str]
    hs_owner_id: str

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


@dataclass
class DealEntry:
    user: ActiveUser
    largest_deal_amount: float = 0.0
    largest_deal_name: Optional[str] = None
    largest_deal_id: Optional[str] = None
    reference_date: Optional[datetime] = None
    total_pipeline: float = 0.0
    deal_count: int = 0
    rank: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user.id,
            "owner_id": self.user.hs_owner_id,
            "owner_name": self.user.display_name,
            "owner_email": self.user.email,
            "largest_deal_amount": self.largest_deal_amount,
            "largest_deal_name": self.largest_deal_name,
            "total_pipeline": self.total_pipeline,
            "deals_count": self.deal_count,
            "rank": self.rank,
        }


@dataclass
class ActivityEntry:
    user: ActiveUser
    this_week: Dict[str, int] = field(default_factory=lambda: {kind: 0 for kind in ACTIVITY_KINDS})
    last_week: Dict[str, int] = field(default_factory=lambda: {kind: 0 for kind in ACTIVITY_KINDS})
    open_deals: int = 0
    rank: int = 0

    @property
    def total_activities(self) -> int:
        return sum(self.this_week.values())

    @property
    def total_activities_last_week(self) -> int:
        return sum(self.last_week.values())

    @property
    def follow_up_rate(self) -> int:
        return follow_up_rate(self.total_activities, self.open_deals)

    @property
    def trend(self) -> str:
        if self.total_activities > self.total_activities_last_week:
            return "up"
        if self.total_activities < self.total_activities_last_week:
            return "down"
        return "flat"

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user.id,
            "owner_id": self.user.hs_owner_id,
            "owner_name": self.user.display_name,
            "owner_email": self.user.email,
            "meetings_this_week": self.this_week["meetings"],
            "calls_this_week": self.this_week["calls"],
            "emails_this_week": self.this_week["emails"],
            "total_activities": self.total_activities,
            "follow_up_rate": self.follow_up_rate,
            "meetings_last_week": self.last_week["meetings"],
            "calls_last_week": self.last_week["calls"],
            "emails_last_week": self.last_week["emails"],
            "total_activities_last_week": self.total_activities_last_week,
            "trend": self.trend,
            "rank": self.rank,
        }


@dataclass
class Leaderboard:
    category: str
    entries: list
    generated_at: datetime
    partial: bool = False
    window: Optional[TimeWindow] = None


def follow_up_rate(activities: int, open_deals: int) -> int:
    """Activities per open deal as a whole percentage, rounded half up. 0 without open deals."""
    if open_deals <= 0:
        return 0
    ratio = Decimal(activities) * 100 / Decimal(open_deals)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def assign_competition_ranks(entries: Sequence[T], metric: Callable[[T], float]) -> Sequence[T]:
    """
    Set .rank on entries already sorted by metric descending. Equal metrics share
    a rank and the next distinct value takes its 1-based position.
    """
    previous: Optional[float] = None
    rank = 0
    for position, entry in enumerate(entries, start=1):
        value = metric(entry)
        if previous is None or value != previous:
            rank = position
            previous = value
        entry.rank = rank
    return entries


def rank_entries(entries: List[T], metric: Callable[[T], float]) -> List[T]:
    # sorted() is stable, so ties keep the active-user order.
    ordered = sorted(entries, key=metric, reverse=True)
    assign_competition_ranks(ordered, metric)
    return ordered


def _owner_map(users: Sequence[ActiveUser]) -> Dict[str, ActiveUser]:
    return {user.hs_owner_id: user for user in users if user.hs_owner_id}


def aggregate_largest_deals(deals: Iterable[CrmDeal], users: Sequence[ActiveUser]) -> List[DealEntry]:
    """
    One candidate per active user holding the largest qualifying deal. On an
    exact amount tie the deal with the later reference date wins. A missing
    amount counts as 0. Users without a deal are dropped. Returned ranked.
    """
    owners = _owner_map(users)
    seeded: Dict[str, DealEntry] = {user.id: DealEntry(user=user) for user in users}
    for deal in deals:
        user = owners.get(deal.owner_id or "")
        if user is None:
            continue
        amount = deal.amount if deal.amount is not None else 0.0
        entry = seeded[user.id]
        entry.total_pipeline += amount
        entry.deal_count += 1
        reference = deal.reference_date
        if (
            entry.largest_deal_id is None
            or amount > entry.largest_deal_amount
            or (amount == entry.largest_deal_amount and reference > entry.reference_date)
        ):
            entry.largest_deal_amount = amount
            entry.largest_deal_name = deal.name
            entry.largest_deal_id = deal.id
            entry.reference_date = reference

    qualifying = [entry for entry in seeded.values() if entry.largest_deal_id is not None]
    return rank_entries(qualifying, lambda entry: entry.largest_deal_amount)


def aggregate_activity(
    this_week: Iterable[ActivityRecord],
    last_week: Iterable[ActivityRecord],
    users: Sequence[ActiveUser],
    open_deals_by_user: Optional[Mapping[str, int]] = None,
) -> List[ActivityEntry]:
    """Exactly one entry per active user, zero rows included. Returned ranked by this week's total."""
    owners = _owner_map(users)
    seeded: Dict[str, ActivityEntry] = {user.id: ActivityEntry(user=user) for user in users}
    for records, bucket in ((this_week, "this_week"), (last_week, "last_week")):
        for record in records:
            user = owners.get(record.owner_id or "")
            if user is None or record.kind not in ACTIVITY_KINDS:
                continue
            getattr(seeded[user.id], bucket)[record.kind] += 1
    for user_id, count in (open_deals_by_user or {}).items():
        if user_id in seeded:
            seeded[user_id].open_deals = count
    return rank_entries(list(seeded.values()), lambda entry: entry.total_activities)


def load_active_users(
    db,
    tenant_id: str,
    team_id: Optional[str] = None,
    owner_ids: Optional[Set[str]] = None,
) -> List[ActiveUser]:
    """
    Active users of the tenant with a CRM owner id, optionally limited to one
    team. When owner_ids is given only users whose owner id is still a current
    CRM owner are kept.
    """
    query = db.query(User).filter(
        User.tenant_id == tenant_id,
        User.is_active.is_(True),
        User.hs_owner_id.isnot(None),
    )
    if team_id:
        query = query.join(UserTeam, UserTeam.user_id == User.id).filter(UserTeam.team_id == team_id)
    users = []
    for row in query.order_by(User.created_at, User.email).all():
        if owner_ids is not None and row.hs_owner_id not in owner_ids:
            continue
        users.append(ActiveUser(id=row.id, email=row.email, full_name=row.full_name, hs_owner_id=row.hs_owner_id))
    return users


def get_closed_stages(db, tenant_id: str) -> List[str]:
    row = db.query(OrgDefault).filter_by(tenant_id=tenant_id, setting_key=CLOSED_STAGES_KEY).one_or_none()
    value = row.setting_value if row else None
    stages = value.get("stages") if isinstance(value, dict) else None
    if isinstance(stages, list) and stages:
        return [str(stage) for stage in stages if str(stage).strip()]
    return list(get_leaderboard_settings()["default_closed_stages"])


def is_closed_stage(stage: Optional[str], closed_stages: Sequence[str]) -> bool:
    lowered = (stage or "").lower()
    return any(closed.lower() in lowered for closed in closed_stages)


def _current_owner_ids(client: HubSpotClient) -> Optional[Set[str]]:
    owners = client.list_owners()
    if client.partial:
        logger.warning("Owner list is partial, leaderboard users are not filtered by current owners")
        return None
    return {owner.id for owner in owners}


def _deal_from_row(row: Deal) -> CrmDeal:
    return CrmDeal(
        id=row.hubspot_deal_id,
        name=row.dealname,
        amount=row.amount,
        pipeline=row.pipeline,
        stage=row.dealstage,
        close_date=row.closedate.replace(tzinfo=timezone.utc) if row.closedate else None,
        last_modified=row.hs_lastmodifieddate.replace(tzinfo=timezone.utc) if row.hs_lastmodifieddate else None,
        owner_id=row.hubspot_owner_id,
        is_closed=row.hs_is_closed,
    )


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def mirror_deals(
    db,
    tenant_id: str,
    deals: Sequence[CrmDeal],
    closed_stages: Sequence[str],
    *,
    prune: bool = False,
) -> int:
    """Upsert fetched deals into the deals table. With prune, rows HubSpot no longer returns are removed. Caller commits."""
    users_by_owner = {
        owner_id: user_id
        for user_id, owner_id in db.query(User.id, User.hs_owner_id)
        .filter(User.tenant_id == tenant_id, User.hs_owner_id.isnot(None))
        .all()
    }
    existing = {row.hubspot_deal_id: row for row in db.query(Deal).filter_by(tenant_id=tenant_id).all()}
    for deal in deals:
        row = existing.get(deal.id)
        if row is None:
            row = Deal(tenant_id=tenant_id, hubspot_deal_id=deal.id)
            db.add(row)
            existing[deal.id] = row
        row.owner_id = users_by_owner.get(deal.owner_id or "")
        row.hubspot_owner_id = deal.owner_id
        row.dealname = deal.name
        row.amount = deal.amount
        row.pipeline = deal.pipeline
        row.dealstage = deal.stage
        row.closedate = _naive_utc(deal.close_date)
        row.hs_lastmodifieddate = _naive_utc(deal.last_modified)
        row.hs_is_closed = deal.is_closed if deal.is_closed is not None else is_closed_stage(deal.stage, closed_stages)
    if prune:
        fetched = {deal.id for deal in deals}
        for hubspot_deal_id, row in existing.items():
            if hubspot_deal_id not in fetched:
                db.delete(row)
    db.flush()
    return len(deals)


def load_deals(db, tenant_id: str, client: Optional[HubSpotClient], *, refresh: bool) -> List[CrmDeal]:
    """Live deals mirrored into the database when refresh is set, otherwise the mirror."""
    if refresh:
        if client is None:
            raise ValidationError("A HubSpot client is required to refresh deals")
        deals = client.list_deals()
        mirror_deals(db, tenant_id, deals, get_closed_stages(db, tenant_id), prune=not client.partial)
        db.commit()
        return deals
    return [_deal_from_row(row) for row in db.query(Deal).filter_by(tenant_id=tenant_id).all()]


def build_deal_leaderboard(
    db,
    tenant_id: str,
    client: Optional[HubSpotClient],
    *,
    team_id: Optional[str] = None,
    include_closed: bool = False,
    refresh: bool = True,
) -> Leaderboard:
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    owner_ids = _current_owner_ids(client) if refresh else None
    users = load_active_users(db, tenant_id, team_id, owner_ids)
    generated_at = datetime.now(timezone.utc)
    if not users:
        logger.info("Deal leaderboard for tenant %s team %s has no active users", tenant_id, team_id)
        return Leaderboard(DEAL_CATEGORY, [], generated_at, partial=bool(client and client.partial))

    deals = load_deals(db, tenant_id, client, refresh=refresh)
    if not include_closed:
        closed_stages = get_closed_stages(db, tenant_id)
        deals = [deal for deal in deals if not is_closed_stage(deal.stage, closed_stages)]
    entries = aggregate_largest_deals(deals, users)
    logger.info(
        "Deal leaderboard for tenant %s: %s deals, %s users, %s entries",
        tenant_id,
        len(deals),
        len(users),
        len(entries),
    )
    return Leaderboard(DEAL_CATEGORY, entries, generated_at, partial=bool(client and client.partial))


def week_windows(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> Dict[str, TimeWindow]:
    """This week and last week, each starting Monday 00:00 in the leaderboard timezone."""
    name = tz_name or get_leaderboard_settings()["timezone"]
    try:
        tz = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown LEADERBOARD_TIMEZONE %r, falling back to UTC", name)
        tz = ZoneInfo("UTC")
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    monday = local_now.date() - timedelta(days=local_now.weekday())
    this_start = datetime(monday.year, monday.month, monday.day, tzinfo=tz)
    next_monday = monday + timedelta(days=7)
    last_monday = monday - timedelta(days=7)
    return {
        "this_week": TimeWindow(this_start, datetime(next_monday.year, next_monday.month, next_monday.day, tzinfo=tz)),
        "last_week": TimeWindow(datetime(last_monday.year, last_monday.month, last_monday.day, tzinfo=tz), this_start),
    }


def _open_deals_by_user(deals: Iterable[CrmDeal], users: Sequence[ActiveUser], closed_stages: Sequence[str]) -> Dict[str, int]:
    owners = _owner_map(users)
    counts: Dict[str, int] = {}
    for deal in deals:
        closed = deal.is_closed if deal.is_closed is not None else is_closed_stage(deal.stage, closed_stages)
        user = owners.get(deal.owner_id or "")
        if closed or user is None:
            continue
        counts[user.id] = counts.get(user.id, 0) + 1
    return counts


def build_activity_leaderboard(
    db,
    tenant_id: str,
    client: HubSpotClient,
    *,
    team_id: Optional[str] = None,
    now: Optional[datetime] = None,
    refresh: bool = True,
) -> Leaderboard:
    """
    Meetings, calls and emails per active user for this week and last week.
    The six activity reads run concurrently; each is independent and read-only.
    """
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    if client is None:
        raise ValidationError("A HubSpot client is required for activity data")
    users = load_active_users(db, tenant_id, team_id, _current_owner_ids(client))
    windows = week_windows(now)
    generated_at = datetime.now(timezone.utc)
    if not users:
        return Leaderboard(ACTIVITY_CATEGORY, [], generated_at, partial=client.partial, window=windows["this_week"])

    jobs = [(kind, label) for label in ("this_week", "last_week") for kind in ACTIVITY_KINDS]
    workers = min(len(jobs), get_leaderboard_settings()["fetch_workers"])
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hubspot-activity") as pool:
        futures = {
            (kind, label): pool.submit(client.list_activities, kind, windows[label])
            for kind, label in jobs
        }
        results = {job: future.result() for job, future in futures.items()}

    this_week = [record for (kind, label), records in results.items() if label == "this_week" for record in records]
    last_week = [record for (kind, label), records in results.items() if label == "last_week" for record in records]

    deals = load_deals(db, tenant_id, client, refresh=refresh)
    open_counts = _open_deals_by_user(deals, users, get_closed_stages(db, tenant_id))
    entries = aggregate_activity(this_week, last_week, users, open_counts)
    logger.info(
        "Activity leaderboard for tenant %s: %s this week, %s last week, %s entries",
        tenant_id,
        len(this_week),
        len(last_week),
        len(entries),
    )
    return Leaderboard(ACTIVITY_CATEGORY, entries, generated_at, partial=client.partial, window=windows["this_week"])


def build_me_summary(
    db,
    tenant_id: str,
    user_id: str,
    client: Optional[HubSpotClient],
    *,
    refresh: bool = True,
) -> Dict[str, object]:
    """The caller's position on the deal leaderboard with pipeline totals."""
    if not tenant_id or not user_id:
        raise ValidationError("tenant_id and user_id are required")
    user = db.query(User).filter_by(id=user_id, tenant_id=tenant_id).one_or_none()
    if not user:
        raise NotFound("User not found", code="user_not_found")

    board = build_deal_leaderboard(db, tenant_id, client, refresh=refresh)
    mine = next((entry for entry in board.entries if entry.user.id == user.id), None)
    if mine is None:
        return {
            "rank": None,
            "total_pipeline": 0,
            "largest_deal_amount": 0,
            "largest_deal_name": None,
            "total_entries": len(board.entries),
            "deals_count": 0,
            "message": "No deals found for your account",
        }
    return {
        "rank": mine.rank,
        "total_pipeline": mine.total_pipeline,
        "largest_deal_amount": mine.largest_deal_amount,
        "largest_deal_name": mine.largest_deal_name,
        "total_entries": len(board.entries),
        "deals_count": mine.deal_count,
    }
