#!/usr/bin/env python3
"""Deposit Reconciliation Script.

Runs one catch-up pass over deposits stuck in `confirmed` and reports
records that need operator attention (failed, or credited but not swept).

Usage:
    python scripts/reconcile.py [--dry-run]

Options:
    --dry-run  Show what would be done without making changes
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

load_dotenv()

from creditsync.chain.rpc import EthRpcClient
from creditsync.deposits import CatchUpReconciler, DepositSweeper, KeyProvider, SettlementProcessor
from creditsync.ledger.database import close_db, get_db, init_db
from creditsync.ledger.models import DepositStatus
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts, close_bot

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def report_attention_needed() -> None:
    """Log failed deposits and credited deposits whose sweep did not happen."""
    async with get_db() as session:
        repo = LedgerRepository(session)
        failed = await repo.list_deposits_by_status(DepositStatus.FAILED)
        credited = await repo.list_deposits_by_status(DepositStatus.CREDITED)
        pending = await repo.list_deposits_by_status(DepositStatus.PENDING_VALUATION)

    unswept = [d for d in credited if not d.sweep_tx_hash]

    logger.info(f"Failed deposits: {len(failed)}")
    for d in failed:
        logger.info(f"  {d.tx_hash} user={d.user_id} {d.amount} {d.asset} error={d.error}")

    logger.info(f"Credited but not swept: {len(unswept)}")
    for d in unswept:
        logger.info(f"  {d.tx_hash} user={d.user_id} {d.amount} {d.asset} sweep_error={d.sweep_error}")

    logger.info(f"Awaiting valuation: {len(pending)}")
    for d in pending:
        logger.info(f"  {d.tx_hash} user={d.user_id} {d.amount} {d.asset}")


async def main():
    parser = argparse.ArgumentParser(description="Deposit Reconciliation")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    args = parser.parse_args()

    # Initialize database
    await init_db()

    logger.info("=" * 60)
    logger.info("DEPOSIT RECONCILIATION")
    logger.info("=" * 60)

    rpc = EthRpcClient()
    alerts = OperatorAlerts()
    settlement = SettlementProcessor(
        sweeper=DepositSweeper(rpc),
        keys=KeyProvider(),
        alerts=alerts,
    )
    reconciler = CatchUpReconciler(settlement)

    try:
        stuck = await reconciler.find_stuck()
        logger.info(f"Confirmed deposits awaiting credit: {len(stuck)}")
        for tx_hash in stuck:
            logger.info(f"  {tx_hash}")

        if args.dry_run:
            logger.info("DRY RUN MODE - No changes will be made")
        elif stuck:
            credited = await reconciler.run_once()
            logger.info(f"Credited {credited} deposits")
            await alerts.drain()

        await report_attention_needed()
    finally:
        await rpc.close()
        await close_bot()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
