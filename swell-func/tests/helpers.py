from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.hubspot_client import ActivityRecord, CrmDeal, CrmOwner, OwnerTeam, TimeWindow
from shared.db import Base, Team, Tenant, User, UserTeam, make_engine


def make_session_factory(url: str = "sqlite://"):
    if url == "sqlite://":
        engine = make_engine(url, poolclass=StaticPool)
    else:
        engine = make_engine(url)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False)


def add_tenant(db, portal_id: str = "1001", name: str = "Acme AS") -> Tenant:
    tenant = Tenant(portal_id=portal_id, company_name=name)
    db.add(tenant)
    db.flush()
    return tenant


def add_user(
    db,
    tenant: Tenant,
    number: int,
    *,
    role: str = "sales_rep",
    is_active: bool = True,
    owner_id: Optional[str] = "default",
    created_offset: int = 0,
) -> User:
    user = User(
        tenant_id=tenant.id,
        email=f"rep{number}@acme.test",
        full_name=f"Rep {number}",
        hubspot_user_id=f"hs-user-{number}",
        hs_owner_id=f"owner-{number}" if owner_id == "default" else owner_id,
        is_active=is_active,
        role=role,
        created_at=datetime(2024, 1, 1) + timedelta(minutes=number + created_offset),
    )
    db.add(user)
    db.flush()
    return user


def add_team(db, tenant: Tenant, name: str, members: Iterable[User] = ()) -> Team:
    team = Team(tenant_id=tenant.id, hubspot_team_id=f"hs-{name}", name=name)
    db.add(team)
    db.flush()
    for member in members:
        db.add(UserTeam(user_id=member.id, team_id=team.id))
    db.flush()
    return team


def owner(number: int, *, teams: Iterable[str] = (), archived: bool = False, email: Optional[str] = None) -> CrmOwner:
    return CrmOwner(
        id=f"owner-{number}",
        email=email or f"rep{number}@acme.test",
        first_name="Rep",
        last_name=str(number),
        user_id=f"hs-user-{number}",
        archived=archived,
        teams=[OwnerTeam(id=f"team-{name}", name=name) for name in teams],
    )


def deal(
    deal_id: str,
    owner_id: Optional[str],
    amount: Optional[float],
    *,
    stage: str = "appointmentscheduled",
    close_date: Optional[datetime] = None,
    last_modified: Optional[datetime] = None,
    is_closed: Optional[bool] = None,
) -> CrmDeal:
    return CrmDeal(
        id=deal_id,
        name=f"Deal {deal_id}",
        amount=amount,
        pipeline="default",
        stage=stage,
        close_date=close_date,
        last_modified=last_modified,
        owner_id=owner_id,
        is_closed=is_closed,
    )


class FakeHubSpotClient:
    """Stands in for HubSpotClient with canned CRM data."""

    def __init__(
        self,
        owners: Iterable[CrmOwner] = (),
        deals: Iterable[CrmDeal] = (),
        activities: Optional[Dict[str, List[ActivityRecord]]] = None,
        archived_owners: Iterable[CrmOwner] = (),
        account: Optional[dict] = None,
        deal_page: Optional[dict] = None,
        access_token: str = "access-token",
    ):
        self.owners = list(owners)
        self.archived_owners = list(archived_owners)
        self.deals = list(deals)
        self.activities = activities or {}
        self.account = account or {}
        self.deal_page = deal_page or {"results": []}
        self.access_token = access_token
        self.partial = False
        self.activity_calls: List[tuple] = []

    def list_owners(self, archived: bool = False) -> List[CrmOwner]:
        return list(self.archived_owners if archived else self.owners)

    def list_deals(self) -> List[CrmDeal]:
        return list(self.deals)

    def list_activities(self, kind: str, window: TimeWindow) -> List[ActivityRecord]:
        self.activity_calls.append((kind, window))
        return [record for record in self.activities.get(kind, []) if window.contains(record.timestamp)]

    def get_account_details(self) -> dict:
        return dict(self.account)

    def request(self, method: str, path: str, *, params=None) -> dict:
        return self.deal_page
