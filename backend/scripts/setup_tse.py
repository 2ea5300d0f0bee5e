#!/usr/bin/env python3
"""
TSE Setup Script - Seed or update an organization's Fiskaly configuration.

Usage:
    python scripts/setup_tse.py --org 00000000-0000-0000-0000-000000000001 \\
        --api-key KEY --api-secret SECRET --tss-id TSS --client-id CLIENT --admin-pin PIN
    python scripts/setup_tse.py --org ORG --initialize

Credentials not given on the command line are read from FISKALY_API_KEY,
FISKALY_API_SECRET, FISKALY_TSS_ID, FISKALY_CLIENT_ID and FISKALY_ADMIN_PIN.
With --initialize the TSS is provisioned up to INITIALIZED afterwards.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chalk_pos.db.base import Base
from chalk_pos.db.session import SessionLocal, engine
from chalk_pos.services.tse import admin, config_store
from chalk_pos.services.tse.errors import TseError

DEMO_ORG_ID = "00000000-0000-0000-0000-000000000001"

ENV_FIELDS = {
    "api_key": "FISKALY_API_KEY",
    "api_secret": "FISKALY_API_SECRET",
    "tss_id": "FISKALY_TSS_ID",
    "client_id": "FISKALY_CLIENT_ID",
    "admin_pin": "FISKALY_ADMIN_PIN",
}


def collect_values(args) -> dict:
    values = {}
    for field, env_name in ENV_FIELDS.items():
        value = getattr(args, field) or os.environ.get(env_name)
        if value:
            values[field] = value
    environment = args.environment or os.environ.get("FISKALY_ENVIRONMENT")
    if environment:
        values["environment"] = environment
    values["is_active"] = True
    return values


def main():
    parser = argparse.ArgumentParser(description="Seed or update the Fiskaly TSE configuration")
    parser.add_argument("--org", default=DEMO_ORG_ID, help="Organization ID")
    parser.add_argument("--api-key", dest="api_key", help="Fiskaly API key")
    parser.add_argument("--api-secret", dest="api_secret", help="Fiskaly API secret")
    parser.add_argument("--tss-id", dest="tss_id", help="TSS ID")
    parser.add_argument("--client-id", dest="client_id", help="Client ID of this POS")
    parser.add_argument("--admin-pin", dest="admin_pin", help="TSS admin PIN")
    parser.add_argument("--environment", choices=["sandbox", "production"],
                        help="Fiskaly environment (new configurations default to sandbox)")
    parser.add_argument("--initialize", action="store_true", help="Provision the TSS after saving")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing = config_store.get_config(db, args.org)
        print("--- Verifying TSE Configuration ---")
        print("Existing configuration found, updating" if existing else "No configuration found, seeding")
        try:
            row = config_store.save_config(db, args.org, collect_values(args))
        except TseError as e:
            print(f"Failed to save TSE config: {e}")
            return 1
        print(f"Saved TSE configuration (tss={row.tss_id}, client={row.client_id}, env={row.environment})")
        config = config_store.require_active_config(db, args.org)
    finally:
        db.close()

    if not args.initialize:
        return 0

    print("--- Initializing TSS ---")
    run = asyncio.run(admin.initialize_tss(config))
    for line in run.logs:
        print(f"  {line}")
    print("TSS ready" if run.success else "TSS initialization failed")
    return 0 if run.success else 1


if __name__ == "__main__":
    sys.exit(main())
