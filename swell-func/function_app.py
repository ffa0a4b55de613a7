import logging

import azure.functions as func
from dotenv import load_dotenv

# Load local .env for dev convenience (local.settings.json is handled by Functions host)
load_dotenv()

from shared.db import init_db  # noqa: E402

# Create tables and late-added columns once when the Functions host starts.
init_db()

logging.getLogger("urllib3").setLevel(logging.WARNING)

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import auth_endpoints  # noqa: E402,F401
import leaderboard_endpoints  # noqa: E402,F401
import sync_endpoints  # noqa: E402,F401
import health_endpoints  # noqa: E402,F401
