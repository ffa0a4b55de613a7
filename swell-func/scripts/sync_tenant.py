#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv


def main() -> int:
    parser = argparse.ArgumentParser(description="Mirror HubSpot owners, teams and deals for one tenant")
    parser.add_argument("--tenant-id", required=True, help="Local tenant id")
    parser.add_argument("--fix-owner-ids", action="store_true", help="Repair stale hs_owner_id values first")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from services.hubspot_client import HubSpotClient
    from services.sync_service import fix_owner_ids, sync_tenant
    from shared.db import SessionLocal, init_db
    from shared.errors import AppError

    init_db()
    db = SessionLocal()
    try:
        client = HubSpotClient.for_tenant(db, args.tenant_id)
        if args.fix_owner_ids:
            print(json.dumps(fix_owner_ids(db, args.tenant_id, client)["summary"], indent=2))
        print(json.dumps(sync_tenant(db, args.tenant_id, client), indent=2))
        return 0
    except AppError as exc:
        print(f"Sync failed for tenant {args.tenant_id}: {exc.message} ({exc.code})", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
