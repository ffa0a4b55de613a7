import unittest
from datetime import datetime
from unittest.mock import Mock

from helpers import FakeHubSpotClient, add_team, add_tenant, add_user, deal, make_session_factory, owner
from services.hubspot_client import CrmOwner, HubSpotClient
from services.retry_policy import RetryPolicy
from services.sync_service import check_owner_matching, fix_owner_ids, sync_tenant, sync_tenant_names
from services.token_service import store_token_pair
from shared.db import Deal, Team, Tenant, User, UserTeam
from shared.errors import NoTokenFound


class _SyncCase(unittest.TestCase):
    def setUp(self):
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.tenant = add_tenant(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _team_names(self, user):
        rows = (
            self.db.query(Team.name)
            .join(UserTeam, UserTeam.team_id == Team.id)
            .filter(UserTeam.user_id == user.id)
            .order_by(Team.name)
            .all()
        )
        return [name for (name,) in rows]


class SyncTenantTests(_SyncCase):
    def setUp(self):
        super().setUp()
        self.admin = add_user(self.db, self.tenant, 1, role="org_admin")
        self.by_user_id = add_user(self.db, self.tenant, 2, owner_id=None)
        self.by_email = add_user(self.db, self.tenant, 3, owner_id="stale-3")
        self.departed = add_user(self.db, self.tenant, 4)
        legacy = add_team(self.db, self.tenant, "Legacy", [self.admin])
        self.legacy_id = legacy.id
        self.db.commit()

        self.client = FakeHubSpotClient(
            owners=[
                owner(1, teams=["Oslo"]),
                owner(2, teams=["Oslo", "Bergen"]),
                CrmOwner(id="owner-30", email="rep3@acme.test", first_name="Kari", last_name="Nordmann"),
                owner(5),
                CrmOwner(id="owner-6", email=None),
            ],
            deals=[deal("d1", "owner-1", 100), deal("d2", "owner-5", 250)],
        )

    def test_sync_reports_counts(self):
        result = sync_tenant(self.db, self.tenant.id, self.client)
        self.assertEqual(
            result,
            {
                "tenant_id": self.tenant.id,
                "owners": 4,
                "teams": 2,
                "users_created": 1,
                "users_updated": 3,
                "users_deactivated": 1,
                "deals": 2,
                "partial": False,
            },
        )

    def test_matches_existing_users_and_keeps_roles(self):
        sync_tenant(self.db, self.tenant.id, self.client)

        self.db.refresh(self.admin)
        self.db.refresh(self.by_user_id)
        self.db.refresh(self.by_email)
        self.assertEqual(self.admin.role, "org_admin")
        self.assertEqual(self.by_user_id.hs_owner_id, "owner-2")
        self.assertEqual(self.by_email.hs_owner_id, "owner-30")
        self.assertEqual(self.by_email.full_name, "Kari Nordmann")
        self.assertTrue(self.by_email.is_active)

    def test_new_owner_becomes_sales_rep(self):
        sync_tenant(self.db, self.tenant.id, self.client)
        created = self.db.query(User).filter_by(tenant_id=self.tenant.id, hs_owner_id="owner-5").one()
        self.assertEqual(created.role, "sales_rep")
        self.assertEqual(created.email, "rep5@acme.test")
        self.assertTrue(created.is_active)

    def test_departed_owner_is_deactivated(self):
        sync_tenant(self.db, self.tenant.id, self.client)
        self.db.refresh(self.departed)
        self.assertFalse(self.departed.is_active)

    def test_team_memberships_are_replaced(self):
        sync_tenant(self.db, self.tenant.id, self.client)
        self.assertEqual(self._team_names(self.admin), ["Oslo"])
        self.assertEqual(self._team_names(self.by_user_id), ["Bergen", "Oslo"])
        self.assertEqual(self.db.query(Team).filter_by(tenant_id=self.tenant.id, hubspot_team_id="team-Oslo").count(), 1)

    def test_resync_is_stable(self):
        sync_tenant(self.db, self.tenant.id, self.client)
        second = sync_tenant(self.db, self.tenant.id, self.client)
        self.assertEqual(second["users_created"], 0)
        self.assertEqual(second["users_deactivated"], 0)
        self.assertEqual(self.db.query(Team).filter_by(tenant_id=self.tenant.id).count(), 3)

    def test_deals_are_mirrored_with_local_owner(self):
        sync_tenant(self.db, self.tenant.id, self.client)
        rows = {row.hubspot_deal_id: row for row in self.db.query(Deal).filter_by(tenant_id=self.tenant.id)}
        self.assertEqual(set(rows), {"d1", "d2"})
        self.assertEqual(rows["d1"].owner_id, self.admin.id)
        self.assertIsNotNone(rows["d2"].owner_id)


def _response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.headers = {}
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    return response


class RateLimitedOwnerSyncTests(_SyncCase):
    def setUp(self):
        super().setUp()
        self.rep1 = add_user(self.db, self.tenant, 1)
        self.rep2 = add_user(self.db, self.tenant, 2)
        self.db.commit()

        http = Mock()
        http.request.side_effect = [
            _response(
                200,
                {
                    "results": [{"id": "owner-1", "email": "rep1@acme.test", "userId": "hs-user-1"}],
                    "paging": {"next": {"after": "p2"}},
                },
            ),
            _response(429),
            _response(200, {"results": []}),
        ]
        self.client = HubSpotClient(
            "token-123",
            retry_policy=RetryPolicy(max_attempts=1, partial_on_exhaustion=True, sleep=Mock()),
            http=http,
            api_base="https://api.hubspot.test",
            page_size=1,
        )

    def test_owners_on_unfetched_pages_stay_active(self):
        result = sync_tenant(self.db, self.tenant.id, self.client)

        self.assertTrue(result["partial"])
        self.assertEqual(result["owners"], 1)
        self.assertEqual(result["users_deactivated"], 0)
        self.db.refresh(self.rep1)
        self.db.refresh(self.rep2)
        self.assertTrue(self.rep1.is_active)
        self.assertTrue(self.rep2.is_active)
        self.assertEqual(self.rep2.hs_owner_id, "owner-2")


class SyncTenantNamesTests(_SyncCase):
    def test_refreshes_names_of_connected_tenants(self):
        self.tenant.created_at = datetime(2024, 1, 1)
        broken = add_tenant(self.db, portal_id="2002", name="Broken AS")
        broken.created_at = datetime(2024, 1, 2)
        add_tenant(self.db, portal_id="3003", name="Not Connected AS")
        store_token_pair(self.db, self.tenant.id, "access-1", "refresh-1", 1800)
        store_token_pair(self.db, broken.id, "access-2", "refresh-2", 1800)
        self.db.commit()

        def factory(db, tenant_id):
            if tenant_id == broken.id:
                raise NoTokenFound("No HubSpot token for tenant")
            return FakeHubSpotClient(account={"portalName": "Acme Norge AS"})

        sleep = Mock()
        result = sync_tenant_names(self.db, factory, delay_seconds=0.2, sleep=sleep)

        self.assertEqual(result["total"], 2)
        self.assertEqual(result["successful"], 1)
        self.assertEqual(result["failed"], 1)
        self.assertEqual(
            result["results"][0],
            {"tenant_id": self.tenant.id, "success": True, "old_name": "Acme AS", "new_name": "Acme Norge AS"},
        )
        self.assertFalse(result["results"][1]["success"])
        sleep.assert_called_once_with(0.2)
        self.assertEqual(self.db.get(Tenant, self.tenant.id).company_name, "Acme Norge AS")

    def test_missing_portal_name_uses_fallback(self):
        store_token_pair(self.db, self.tenant.id, "access-1", "refresh-1", 1800)
        self.db.commit()
        result = sync_tenant_names(self.db, lambda db, tenant_id: FakeHubSpotClient(account={}), sleep=Mock())
        self.assertEqual(result["results"][0]["new_name"], "HubSpot Portal 1001")

    def test_no_connected_tenants(self):
        result = sync_tenant_names(self.db, Mock(), sleep=Mock())
        self.assertEqual(result["total"], 0)
        self.assertEqual(result["message"], "No tenants found to sync")


class OwnerRepairTests(_SyncCase):
    def setUp(self):
        super().setUp()
        self.correct = add_user(self.db, self.tenant, 1)
        self.stale = add_user(self.db, self.tenant, 2, owner_id="stale-2")
        self.missing = add_user(self.db, self.tenant, 3, owner_id=None)
        self.unknown = add_user(self.db, self.tenant, 4, owner_id="x", is_active=False)
        self.db.commit()

    def test_fix_owner_ids(self):
        client = FakeHubSpotClient(
            owners=[owner(1), CrmOwner(id="owner-33", email="rep3@acme.test")],
            archived_owners=[owner(2, archived=True)],
        )
        result = fix_owner_ids(self.db, self.tenant.id, client)

        self.assertTrue(result["success"])
        self.assertEqual(
            result["summary"],
            {"total_users": 4, "already_correct": 1, "fixed": 2, "could_not_fix": 1},
        )
        self.assertIn({"email": "rep2@acme.test", "old_id": "stale-2", "new_id": "owner-2"}, result["fixed_users"])
        self.db.refresh(self.missing)
        self.assertEqual(self.missing.hs_owner_id, "owner-33")
        self.db.refresh(self.unknown)
        self.assertEqual(self.unknown.hs_owner_id, "x")

    def test_check_owner_matching(self):
        client = FakeHubSpotClient(
            deal_page={
                "results": [
                    {"id": "1", "properties": {"dealname": "Matched", "hubspot_owner_id": "owner-1"}},
                    {"id": "2", "properties": {"dealname": "Inactive", "hubspot_owner_id": "x"}},
                    {"id": "3", "properties": {"dealname": "Unowned"}},
                ]
            }
        )
        result = check_owner_matching(self.db, self.tenant.id, client)

        self.assertEqual(result["total_deals_checked"], 3)
        self.assertEqual(result["matched"], 1)
        self.assertEqual(result["unmatched"], 2)
        self.assertEqual([item["deal_id"] for item in result["unmatched_owners"]], ["2", "3"])
        self.assertEqual(result["active_owner_ids_count"], 2)
        self.assertEqual(result["sample_active_owner_ids"], ["owner-1", "stale-2"])


if __name__ == "__main__":
    unittest.main()
