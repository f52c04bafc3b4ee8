"""Settlement processor: credit once, then sweep.

`settle()` may be called any number of times, from any number of concurrent
callers, for the same transaction. The balance is incremented only by the
caller whose conditional `confirmed -> credited` update matches the row.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditsync.config import get_settings
from creditsync.deposits.keys import KeyProvider
from creditsync.deposits.sweeper import DepositSweeper, SweepResult
from creditsync.ledger.database import get_db
from creditsync.ledger.models import (
    TERMINAL_DEPOSIT_STATUSES,
    Deposit,
    DepositAddress,
    DepositStatus,
)
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts

logger = logging.getLogger(__name__)


class SettlementProcessor:
    """Credits confirmed deposits and sweeps the funds to custody."""

    def __init__(
        self,
        sweeper: DepositSweeper,
        keys: KeyProvider,
        alerts: OperatorAlerts,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        admin_wallet_address: Optional[str] = None,
        history_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.sweeper = sweeper
        self.keys = keys
        self.alerts = alerts
        self.session_factory = session_factory
        self.admin_wallet_address = admin_wallet_address or settings.admin_wallet_address
        self.history_limit = history_limit or settings.credits_history_limit

    async def settle(self, tx_hash: str) -> bool:
        """Credit and sweep a confirmed deposit.

        Returns:
            True if this call applied the credit
        """
        try:
            credited = await self._credit(tx_hash)
        except Exception as e:
            logger.error(f"Failed to credit deposit {tx_hash}: {e}")
            self.alerts.alert(
                "Deposit Confirmation Processing Error",
                e,
                context=f"Tx: {tx_hash} left unsettled; the catch-up pass will retry it.",
            )
            return False

        if credited is None:
            return False
        deposit, address_record = credited

        logger.info(
            f"Credited ${deposit.usd_value} to user {deposit.user_id} "
            f"for {deposit.amount.normalize():f} {deposit.asset} (Tx: {tx_hash[:16]}...)"
        )

        await self._sweep(deposit, address_record)
        return True

    async def _credit(self, tx_hash: str) -> Optional[tuple[Deposit, Optional[DepositAddress]]]:
        """Apply the credit in one transaction, or return None if not ours to apply."""
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)

            current = await repo.get_deposit_by_txid(tx_hash)
            if current is None:
                logger.error(f"Settlement requested for unknown deposit {tx_hash}")
                self.alerts.alert(
                    "Deposit Record Missing", context=f"Settlement requested for Tx: {tx_hash}"
                )
                return None
            if current.status in TERMINAL_DEPOSIT_STATUSES:
                logger.debug(f"Deposit {tx_hash[:16]}... already {current.status}")
                return None
            if current.status != DepositStatus.CONFIRMED:
                logger.debug(f"Deposit {tx_hash[:16]}... is {current.status}, not settling")
                return None

            deposit = await repo.credit_deposit(tx_hash)
            if deposit is None:
                logger.debug(f"Deposit {tx_hash[:16]}... credited by another caller")
                return None

            await repo.trim_credit_history(deposit.user_id, self.history_limit)
            address_record = await repo.get_deposit_address_record(deposit.to_address)

        return deposit, address_record

    async def _sweep(self, deposit: Deposit, address_record) -> None:
        """Move the deposited funds to custody. Never undoes the credit."""
        if not self.admin_wallet_address:
            logger.error(f"Custodial address not configured; cannot sweep {deposit.tx_hash}")
            self.alerts.alert(
                "Admin Wallet Not Configured",
                context=(
                    f"User {deposit.user_id} credited for {deposit.asset} "
                    f"(Tx: {deposit.tx_hash}) but funds cannot be swept."
                ),
            )
            return

        private_key = self.keys.private_key_for(address_record)
        if not private_key:
            logger.error(f"Signing key unavailable for {deposit.to_address}")
            self.alerts.alert(
                "User Private Key Missing",
                context=(
                    f"User {deposit.user_id} credited for {deposit.asset} "
                    f"(Tx: {deposit.tx_hash}) but no key for {deposit.to_address}. "
                    f"Sweep manually."
                ),
            )
            return

        try:
            result = await self.sweeper.sweep(
                private_key, self.admin_wallet_address, deposit.asset
            )
        except Exception as e:
            result = SweepResult(False, reason=f"sweep_execution_error: {e}")

        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                if result.success:
                    await repo.record_sweep_result(deposit.tx_hash, sweep_tx_hash=result.tx_hash)
                else:
                    await repo.record_sweep_result(deposit.tx_hash, sweep_error=result.reason)
        except Exception as e:
            logger.error(f"Failed to record sweep result for {deposit.tx_hash}: {e}")
            self.alerts.alert(
                "Sweep Result Not Recorded",
                e,
                context=f"Tx: {deposit.tx_hash}, sweep: {result}",
            )

        if result.success:
            logger.info(f"Swept {deposit.asset} for {deposit.tx_hash[:16]}... in {result.tx_hash}")
            return

        logger.warning(f"Sweep failed for {deposit.tx_hash}: {result.reason}")
        context = (
            f"User {deposit.user_id} received ${deposit.usd_value} credits for {deposit.asset} "
            f"Tx: {deposit.tx_hash}, but sweep failed: {result.reason}. "
            f"Admin must manually sweep!"
        )
        if result.reason == "insufficient_eth_for_gas":
            self.alerts.alert(f"{deposit.asset} Sweep Requires Gas (Post-Credit)", context=context)
        else:
            self.alerts.alert("Deposit Sweep Failed (Post-Credit)", context=context)
