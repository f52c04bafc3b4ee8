"""Catch-up reconciler.

Re-runs settlement for every record left in `confirmed`, e.g. after a crash
between the confirmation and the credit.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditsync.deposits.settlement import SettlementProcessor
from creditsync.ledger.database import get_db
from creditsync.ledger.models import DepositStatus
from creditsync.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


class CatchUpReconciler:
    def __init__(
        self,
        settlement: SettlementProcessor,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.settlement = settlement
        self.session_factory = session_factory

    async def find_stuck(self) -> list[str]:
        """Transaction hashes of records still waiting for their credit."""
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            deposits = await repo.list_deposits_by_status(DepositStatus.CONFIRMED)
        return [d.tx_hash for d in deposits]

    async def run_once(self) -> int:
        """Settle every stuck record.

        Returns:
            Number of records credited by this pass
        """
        try:
            stuck = await self.find_stuck()
        except Exception as e:
            logger.error(f"Catch-up scan failed: {e}")
            return 0

        if not stuck:
            logger.debug("Catch-up: no confirmed deposits awaiting credit")
            return 0

        logger.info(f"Catch-up: re-settling {len(stuck)} confirmed deposits")
        results = await asyncio.gather(
            *(self.settlement.settle(tx_hash) for tx_hash in stuck),
            return_exceptions=True,
        )

        credited = 0
        for tx_hash, result in zip(stuck, results):
            if isinstance(result, Exception):
                logger.error(f"Catch-up settlement failed for {tx_hash}: {result}")
            elif result:
                credited += 1

        if credited:
            logger.info(f"Catch-up credited {credited} deposits")
        return credited
