#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from dotenv import load_dotenv


def main() -> int:
    parser = argparse.ArgumentParser(description="Refresh tenant company names from HubSpot account details")
    parser.add_argument("--delay", type=float, default=0.2, help="Seconds to wait between tenants")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from services.hubspot_client import HubSpotClient
    from services.sync_service import sync_tenant_names
    from shared.db import SessionLocal, init_db

    init_db()
    db = SessionLocal()
    try:
        result = sync_tenant_names(db, HubSpotClient.for_tenant, delay_seconds=args.delay)
    finally:
        db.close()
    print(json.dumps(result, indent=2))
    return 0 if result["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
