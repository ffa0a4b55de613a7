import os
import tempfile

# Settings are read at import time by shared.db and utils.cors, so they must be
# in place before any test module imports application code.
_TMP_DIR = tempfile.mkdtemp(prefix="swell-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'swell.db')}"
os.environ["AUTH_SESSION_SECRET"] = "test-session-secret"
os.environ["HUBSPOT_TOKEN_ENC_KEY"] = "test-token-encryption-key"
os.environ["HUBSPOT_CLIENT_ID"] = "client-id"
os.environ["HUBSPOT_CLIENT_SECRET"] = "client-secret"
os.environ["API_PUBLIC_BASE_URL"] = "https://api.swell.test"
os.environ["APP_BASE_URL"] = "https://app.swell.test"
os.environ["ALLOWED_ORIGINS"] = "https://app.swell.test,https://*.swell.test"
os.environ["LEADERBOARD_TIMEZONE"] = "UTC"
os.environ.pop("AUTH_ALLOWED_ORIGINS", None)
os.environ.pop("SYNC_API_KEY", None)
