"""In-memory set of monitored deposit addresses.

Readers always see one complete snapshot: a refresh builds a new frozenset
and swaps the reference in a single assignment.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditsync.chain.erc20 import is_valid_address, normalize_address
from creditsync.ledger.database import get_db
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts

logger = logging.getLogger(__name__)


class AddressRegistry:
    """Snapshot of active deposit addresses."""

    def __init__(
        self,
        alerts: OperatorAlerts,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.alerts = alerts
        self.session_factory = session_factory
        self._addresses: frozenset[str] = frozenset()

    def contains(self, address: Optional[str]) -> bool:
        if not address:
            return False
        return normalize_address(address) in self._addresses

    def snapshot(self) -> frozenset[str]:
        return self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    async def refresh(self) -> bool:
        """Reload addresses from the store.

        On store failure the previous snapshot is kept.

        Returns:
            True if the monitored set changed
        """
        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                records = await repo.list_active_addresses()
        except Exception as e:
            logger.error(f"Failed to refresh deposit addresses: {e}")
            self.alerts.alert("Deposit Address Refresh Failed", e)
            return False

        fresh = set()
        for record in records:
            if not is_valid_address(record.address):
                logger.warning(
                    f"Skipping invalid deposit address {record.address!r} for user {record.user_id}"
                )
                continue
            fresh.add(normalize_address(record.address))

        new_snapshot = frozenset(fresh)
        changed = new_snapshot != self._addresses
        self._addresses = new_snapshot

        if changed:
            logger.info(f"Monitoring {len(new_snapshot)} deposit addresses")
        else:
            logger.debug(f"Deposit addresses unchanged ({len(new_snapshot)})")
        return changed
