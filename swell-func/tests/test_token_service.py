import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock

from helpers import add_tenant, make_session_factory
from services.token_service import get_valid_access_token, store_token_pair
from shared.db import HubSpotToken
from shared.errors import NoTokenFound, RefreshFailed
from utils.token_crypto import decrypt_token, is_encrypted


class TokenServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.tenant = add_tenant(self.db)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _row(self) -> HubSpotToken:
        return self.db.query(HubSpotToken).filter_by(tenant_id=self.tenant.id).one()

    def test_store_encrypts_and_upserts_single_row(self):
        store_token_pair(self.db, self.tenant.id, "access-1", "refresh-1", 1800)
        store_token_pair(self.db, self.tenant.id, "access-2", "refresh-2", 1800)
        self.db.commit()

        rows = self.db.query(HubSpotToken).filter_by(tenant_id=self.tenant.id).all()
        self.assertEqual(len(rows), 1)
        self.assertTrue(is_encrypted(rows[0].access_token))
        self.assertEqual(decrypt_token(rows[0].access_token), "access-2")
        self.assertEqual(decrypt_token(rows[0].refresh_token), "refresh-2")

    def test_valid_token_is_returned_without_refresh(self):
        store_token_pair(self.db, self.tenant.id, "access-1", "refresh-1", 1800)
        self.db.commit()
        oauth = Mock()
        self.assertEqual(get_valid_access_token(self.db, self.tenant.id, oauth=oauth), "access-1")
        oauth.refresh_access_token.assert_not_called()

    def test_expired_token_is_refreshed_and_persisted(self):
        store_token_pair(self.db, self.tenant.id, "old-access", "refresh-1", 1800)
        self._row().expires_at = datetime.utcnow() - timedelta(minutes=5)
        self.db.commit()
        oauth = Mock()
        oauth.refresh_access_token.return_value = {
            "access_token": "new-access",
            "refresh_token": "refresh-2",
            "expires_in": 1800,
        }

        token = get_valid_access_token(self.db, self.tenant.id, oauth=oauth)

        self.assertEqual(token, "new-access")
        oauth.refresh_access_token.assert_called_once_with("refresh-1")
        row = self._row()
        self.assertEqual(decrypt_token(row.access_token), "new-access")
        self.assertEqual(decrypt_token(row.refresh_token), "refresh-2")
        self.assertGreater(row.expires_at, datetime.utcnow())

    def test_token_inside_skew_counts_as_expired(self):
        store_token_pair(self.db, self.tenant.id, "old-access", "refresh-1", 30)
        self.db.commit()
        oauth = Mock()
        oauth.refresh_access_token.return_value = {"access_token": "fresh", "expires_in": 1800}

        self.assertEqual(get_valid_access_token(self.db, self.tenant.id, oauth=oauth), "fresh")
        self.assertEqual(decrypt_token(self._row().refresh_token), "refresh-1")

    def test_missing_token_raises_no_token_found(self):
        with self.assertRaises(NoTokenFound) as ctx:
            get_valid_access_token(self.db, "unknown-tenant", oauth=Mock())
        self.assertEqual(ctx.exception.status_code, 404)

    def test_rejected_refresh_is_fatal(self):
        store_token_pair(self.db, self.tenant.id, "old-access", "refresh-1", 1800)
        self._row().expires_at = datetime.utcnow() - timedelta(hours=1)
        self.db.commit()
        oauth = Mock()
        oauth.refresh_access_token.side_effect = RefreshFailed("HubSpot rejected the refresh token")

        with self.assertRaises(RefreshFailed):
            get_valid_access_token(self.db, self.tenant.id, oauth=oauth)
        oauth.refresh_access_token.assert_called_once()


if __name__ == "__main__":
    unittest.main()
