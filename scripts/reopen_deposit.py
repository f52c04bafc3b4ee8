#!/usr/bin/env python3
"""Put a failed deposit back into confirmation tracking.

Use when a deposit timed out on a congested network but has since confirmed.
The next confirmation monitor tick re-checks its depth.

Usage:
    python scripts/reopen_deposit.py <tx_hash>
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv
load_dotenv()

from creditsync.ledger.database import close_db, get_db
from creditsync.ledger.repository import LedgerRepository


async def reopen(tx_hash: str) -> bool:
    async with get_db() as session:
        repo = LedgerRepository(session)
        deposit = await repo.get_deposit_by_txid(tx_hash)

        if not deposit:
            print(f"Deposit {tx_hash} not found")
            return False

        if not await repo.reopen_failed_deposit(tx_hash):
            print(f"Deposit {tx_hash} is {deposit.status}, only failed deposits can be reopened")
            return False

    print(f"Deposit {tx_hash} reopened ({deposit.amount} {deposit.asset}, user {deposit.user_id})")
    return True


async def main(tx_hash: str) -> int:
    try:
        return 0 if await reopen(tx_hash) else 1
    finally:
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python reopen_deposit.py <tx_hash>")
        sys.exit(1)

    sys.exit(asyncio.run(main(sys.argv[1])))
