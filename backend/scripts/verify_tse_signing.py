#!/usr/bin/env python3
"""
Verify TSE Signing - Initialize the TSE for an organization and sign a test sale.

Usage:
    python scripts/verify_tse_signing.py
    python scripts/verify_tse_signing.py --org ORG --amount 15.50
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chalk_pos.db.session import SessionLocal
from chalk_pos.services.tse.config_store import TseConfigStore
from chalk_pos.services.tse.fiskaly_client import SaleItem
from chalk_pos.services.tse.manager import TseManager

DEMO_ORG_ID = "00000000-0000-0000-0000-000000000001"


async def verify(organization_id: str, amount: float) -> bool:
    # A manager of our own, bypassing the registry cache
    manager = TseManager(organization_id, TseConfigStore(SessionLocal))
    try:
        if not await manager.initialize():
            print("Failed to initialize TSE manager")
            if manager.get_config() is None:
                print("  No active TSE configuration, run scripts/setup_tse.py first")
            elif manager.last_error is not None:
                print(f"  {manager.last_error}")
            return False

        print("TSE manager initialized")
        tx_id = f"test-{int(time.time() * 1000)}"
        result = await manager.try_sign(
            tx_id, amount, "cash", [SaleItem(name="Test Item", price=amount, quantity=1)]
        )
        if not result.ok:
            print(f"Signing failed: {result.error}")
            return False

        print("Transaction signed")
        for key, value in result.signature.to_dict().items():
            print(f"  {key:<22} {value}")
        return True
    finally:
        await manager.aclose()


def main():
    parser = argparse.ArgumentParser(description="Sign a test transaction through the TSE")
    parser.add_argument("--org", default=DEMO_ORG_ID, help="Organization ID")
    parser.add_argument("--amount", type=float, default=15.5, help="Amount of the test sale")
    args = parser.parse_args()
    return 0 if asyncio.run(verify(args.org, args.amount)) else 1


if __name__ == "__main__":
    sys.exit(main())
