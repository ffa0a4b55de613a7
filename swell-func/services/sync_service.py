from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from services.hubspot_client import DEAL_PROPERTIES, CrmOwner, HubSpotClient, parse_deal
from services.leaderboard_service import get_closed_stages, mirror_deals
from services.oauth_service import get_account_name
from shared.db import HubSpotToken, Team, Tenant, User, UserTeam
from shared.errors import AppError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Any, str], HubSpotClient]


def _sync_teams(db, tenant_id: str, owners: List[CrmOwner]) -> Dict[str, str]:
    """Upsert every team referenced by an owner. Returns HubSpot team id -> local team id."""
    wanted: Dict[str, str] = {}
    for owner in owners:
        for team in owner.teams:
            wanted.setdefault(team.id, team.name)

    existing = {
        team.hubspot_team_id: team
        for team in db.query(Team).filter(Team.tenant_id == tenant_id, Team.hubspot_team_id.isnot(None)).all()
    }
    mapping: Dict[str, str] = {}
    for hubspot_team_id, name in wanted.items():
        team = existing.get(hubspot_team_id)
        if team is None:
            team = Team(tenant_id=tenant_id, hubspot_team_id=hubspot_team_id, name=name)
            db.add(team)
            db.flush()
        else:
            team.name = name
        mapping[hubspot_team_id] = team.id
    return mapping


def _match_user(users: List[User], owner: CrmOwner) -> Optional[User]:
    for user in users:
        if user.hs_owner_id == owner.id:
            return user
    if owner.user_id:
        for user in users:
            if user.hubspot_user_id == owner.user_id:
                return user
    if owner.email:
        for user in users:
            if (user.email or "").lower() == owner.email:
                return user
    return None


def sync_tenant(db, tenant_id: str, client: HubSpotClient) -> Dict[str, Any]:
    """
    Mirror owners, teams, memberships and deals of one tenant.

    New users start as sales_rep; existing roles are never touched. Users whose
    owner id is no longer a current owner are deactivated, unless the owner
    list came back partial.
    """
    owners = [owner for owner in client.list_owners() if owner.email]
    owners_partial = client.partial
    team_ids = _sync_teams(db, tenant_id, owners)

    users = db.query(User).filter(User.tenant_id == tenant_id).all()
    created = updated = 0
    current_owner_ids = set()
    for owner in owners:
        current_owner_ids.add(owner.id)
        user = _match_user(users, owner)
        if user is None:
            user = User(tenant_id=tenant_id, email=owner.email, role="sales_rep")
            db.add(user)
            users.append(user)
            created += 1
        else:
            updated += 1
        user.email = owner.email
        user.full_name = owner.full_name or owner.email
        user.hs_owner_id = owner.id
        if owner.user_id:
            user.hubspot_user_id = owner.user_id
        user.is_active = True
        db.flush()

        db.query(UserTeam).filter(UserTeam.user_id == user.id).delete(synchronize_session=False)
        for team in owner.teams:
            if team.id in team_ids:
                db.add(UserTeam(user_id=user.id, team_id=team_ids[team.id]))

    deactivated = 0
    if owners_partial:
        logger.warning("Owner list for tenant %s is partial, skipping deactivation", tenant_id)
    else:
        for user in users:
            if user.is_active and user.hs_owner_id and user.hs_owner_id not in current_owner_ids:
                user.is_active = False
                deactivated += 1
                logger.info("Deactivated user %s in tenant %s (owner %s gone)", user.id, tenant_id, user.hs_owner_id)

    deals = client.list_deals()
    mirror_deals(db, tenant_id, deals, get_closed_stages(db, tenant_id), prune=not client.partial)
    db.commit()

    result = {
        "tenant_id": tenant_id,
        "owners": len(owners),
        "teams": len(team_ids),
        "users_created": created,
        "users_updated": updated,
        "users_deactivated": deactivated,
        "deals": len(deals),
        "partial": client.partial,
    }
    logger.info("Synced tenant %s: %s", tenant_id, result)
    return result


def sync_tenant_names(
    db,
    client_factory: ClientFactory,
    *,
    delay_seconds: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Refresh company_name of every tenant holding a token. One result per tenant."""
    tenants = (
        db.query(Tenant)
        .join(HubSpotToken, HubSpotToken.tenant_id == Tenant.id)
        .order_by(Tenant.created_at)
        .all()
    )
    if not tenants:
        return {"message": "No tenants found to sync", "total": 0, "successful": 0, "failed": 0, "results": []}

    results: List[Dict[str, Any]] = []
    for index, tenant in enumerate(tenants):
        if index:
            sleep(delay_seconds)
        old_name = tenant.company_name
        try:
            client = client_factory(db, tenant.id)
            new_name = get_account_name(client.access_token, tenant.portal_id, client=client)
            tenant.company_name = new_name
            db.commit()
        except AppError as exc:
            db.rollback()
            logger.warning("Tenant name sync failed for %s: %s", tenant.id, exc.message)
            results.append({"tenant_id": tenant.id, "success": False, "error": exc.message})
            continue
        results.append({"tenant_id": tenant.id, "success": True, "old_name": old_name, "new_name": new_name})

    successful = sum(1 for item in results if item["success"])
    return {
        "message": "Sync completed",
        "total": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


def fix_owner_ids(db, tenant_id: str, client: HubSpotClient) -> Dict[str, Any]:
    """
    Repair users whose hs_owner_id is not a known owner, matching active and
    archived owners by HubSpot user id first and email second.
    """
    owners = client.list_owners() + client.list_owners(archived=True)
    valid_ids = set()
    by_user_id: Dict[str, str] = {}
    by_email: Dict[str, str] = {}
    for owner in owners:
        valid_ids.add(owner.id)
        if owner.user_id:
            by_user_id.setdefault(owner.user_id, owner.id)
        if owner.email:
            by_email.setdefault(owner.email, owner.id)

    users = db.query(User).filter(User.tenant_id == tenant_id).all()
    already_correct = fixed = could_not_fix = 0
    fixed_users: List[Dict[str, Any]] = []
    for user in users:
        if user.hs_owner_id and user.hs_owner_id in valid_ids:
            already_correct += 1
            continue
        new_owner_id = by_user_id.get(user.hubspot_user_id or "") or by_email.get((user.email or "").lower())
        if not new_owner_id:
            could_not_fix += 1
            logger.info("No owner id found for user %s", user.id)
            continue
        fixed_users.append({"email": user.email, "old_id": user.hs_owner_id, "new_id": new_owner_id})
        user.hs_owner_id = new_owner_id
        user.is_active = True
        fixed += 1
    db.commit()

    return {
        "success": True,
        "summary": {
            "total_users": len(users),
            "already_correct": already_correct,
            "fixed": fixed,
            "could_not_fix": could_not_fix,
        },
        "fixed_users": fixed_users,
    }


def check_owner_matching(db, tenant_id: str, client: HubSpotClient, sample: int = 20) -> Dict[str, Any]:
    """How many of a sample of deals carry an owner id that maps to an active user."""
    page = client.request(
        "GET",
        "/crm/v3/objects/deals",
        params={"limit": max(1, min(100, sample)), "properties": ",".join(DEAL_PROPERTIES)},
    )
    deals = [parse_deal(item) for item in page.get("results") or []]
    active_owner_ids = {
        owner_id
        for (owner_id,) in db.query(User.hs_owner_id)
        .filter(User.tenant_id == tenant_id, User.is_active.is_(True), User.hs_owner_id.isnot(None))
        .all()
    }
    matched = 0
    unmatched_owners: List[Dict[str, Any]] = []
    for deal in deals:
        if deal.owner_id and deal.owner_id in active_owner_ids:
            matched += 1
        else:
            unmatched_owners.append({"deal_id": deal.id, "deal_name": deal.name, "owner_id": deal.owner_id})
    return {
        "success": True,
        "total_deals_checked": len(deals),
        "matched": matched,
        "unmatched": len(deals) - matched,
        "unmatched_owners": unmatched_owners[:20],
        "active_owner_ids_count": len(active_owner_ids),
        "sample_active_owner_ids": sorted(active_owner_ids)[:10],
    }
