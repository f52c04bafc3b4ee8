"""Confirmation monitor.

Each tick loads every open record and checks them concurrently:
`unconfirmed` records wait for confirmation depth, `confirmed` ones are
re-dispatched to settlement and `pending_valuation` ones are re-priced.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditsync.chain.rpc import EthRpcClient
from creditsync.config import get_settings
from creditsync.deposits.settlement import SettlementProcessor
from creditsync.exceptions import PriceUnavailableError
from creditsync.ledger.database import get_db
from creditsync.ledger.models import Deposit, DepositStatus
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts
from creditsync.pricing.oracle import PriceOracle
from creditsync.utils.tasks import TaskSet

logger = logging.getLogger(__name__)

OPEN_STATUSES = (
    DepositStatus.PENDING_VALUATION,
    DepositStatus.UNCONFIRMED,
    DepositStatus.CONFIRMED,
)


class ConfirmationMonitor:
    """Advances open deposit records through the confirmation lifecycle."""

    def __init__(
        self,
        rpc: EthRpcClient,
        settlement: SettlementProcessor,
        oracle: PriceOracle,
        alerts: OperatorAlerts,
        tasks: TaskSet,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        confirmations_required: Optional[int] = None,
        confirmation_timeout: Optional[float] = None,
        min_deposit_usd: Optional[Decimal] = None,
    ):
        settings = get_settings()
        self.rpc = rpc
        self.settlement = settlement
        self.oracle = oracle
        self.alerts = alerts
        self.tasks = tasks
        self.session_factory = session_factory
        self.confirmations_required = confirmations_required or settings.confirmations_required
        self.confirmation_timeout = confirmation_timeout or settings.confirmation_timeout
        self.min_deposit_usd = (
            min_deposit_usd if min_deposit_usd is not None else settings.min_deposit_usd
        )
        # Records with a check in progress, possibly from an earlier tick
        self._in_flight: set[str] = set()

    async def tick(self) -> None:
        """Run one pass over all open records."""
        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                deposits = await repo.list_deposits_by_status(*OPEN_STATUSES)
        except Exception as e:
            logger.error(f"Failed to load open deposits: {e}")
            return

        pending = [d for d in deposits if d.tx_hash not in self._in_flight]
        if not pending:
            return
        # Claimed before any check is scheduled so an overlapping tick skips them
        self._in_flight.update(d.tx_hash for d in pending)

        logger.debug(f"Checking {len(pending)} open deposits")
        try:
            await asyncio.gather(
                *(self._check(deposit) for deposit in pending), return_exceptions=True
            )
        finally:
            self._in_flight.difference_update(d.tx_hash for d in pending)

    async def _check(self, deposit: Deposit) -> None:
        try:
            if deposit.status == DepositStatus.UNCONFIRMED:
                await self._check_confirmations(deposit)
            elif deposit.status == DepositStatus.CONFIRMED:
                self._dispatch_settlement(deposit.tx_hash)
            elif deposit.status == DepositStatus.PENDING_VALUATION:
                await self._revalue(deposit)
        except Exception as e:
            logger.error(f"Error checking deposit {deposit.tx_hash}: {e}")
        finally:
            self._in_flight.discard(deposit.tx_hash)

    @property
    def in_flight(self) -> frozenset[str]:
        """Transaction hashes with a check currently running."""
        return frozenset(self._in_flight)

    def _dispatch_settlement(self, tx_hash: str) -> None:
        self.tasks.spawn(self.settlement.settle(tx_hash), name=f"settle:{tx_hash[:10]}")

    async def _mark_failed(self, deposit: Deposit, expected: DepositStatus, note: str) -> bool:
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            return await repo.set_status_if_current(
                deposit.tx_hash, expected, DepositStatus.FAILED, error=note
            )

    async def _check_confirmations(self, deposit: Deposit) -> None:
        receipt = await self.rpc.wait_for_confirmations(
            deposit.tx_hash, self.confirmations_required, self.confirmation_timeout
        )

        if receipt is None:
            note = (
                f"Confirmation timeout after {int(self.confirmation_timeout)}s "
                f"or transaction not found"
            )
            if await self._mark_failed(deposit, DepositStatus.UNCONFIRMED, note):
                logger.warning(f"Deposit {deposit.tx_hash} failed: {note}")
                self.alerts.alert(
                    "Deposit Confirmation Timeout",
                    context=(
                        f"User {deposit.user_id}: {deposit.amount.normalize():f} {deposit.asset} "
                        f"(Tx: {deposit.tx_hash}) marked failed. Reconcile manually if it confirms."
                    ),
                )
            return

        if receipt.get("status") is not None and int(receipt["status"], 16) == 0:
            if await self._mark_failed(deposit, DepositStatus.UNCONFIRMED, "transaction reverted"):
                logger.warning(f"Deposit {deposit.tx_hash} reverted on chain")
            return

        block_number = int(receipt["blockNumber"], 16)
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            confirmed = await repo.set_status_if_current(
                deposit.tx_hash,
                DepositStatus.UNCONFIRMED,
                DepositStatus.CONFIRMED,
                block_number=block_number,
                confirmed_at=datetime.now(timezone.utc),
            )

        if not confirmed:
            logger.debug(f"Deposit {deposit.tx_hash[:16]}... advanced by another caller")
            return

        logger.info(
            f"Deposit {deposit.tx_hash[:16]}... reached {receipt['confirmations']} confirmations"
        )
        self._dispatch_settlement(deposit.tx_hash)

    async def _revalue(self, deposit: Deposit) -> None:
        try:
            usd_value = await self.oracle.usd_value(deposit.asset, deposit.amount)
        except PriceUnavailableError as e:
            logger.debug(f"Still no price for {deposit.tx_hash[:16]}...: {e}")
            return

        if usd_value < self.min_deposit_usd:
            note = f"Below minimum deposit value (${usd_value} < ${self.min_deposit_usd})"
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                changed = await repo.set_status_if_current(
                    deposit.tx_hash,
                    DepositStatus.PENDING_VALUATION,
                    DepositStatus.FAILED,
                    usd_value=usd_value,
                    error=note,
                )
            if changed:
                logger.info(f"Deposit {deposit.tx_hash[:16]}... failed: {note}")
            return

        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            changed = await repo.set_status_if_current(
                deposit.tx_hash,
                DepositStatus.PENDING_VALUATION,
                DepositStatus.UNCONFIRMED,
                usd_value=usd_value,
                error=None,
            )
        if changed:
            logger.info(f"Deposit {deposit.tx_hash[:16]}... valued at ${usd_value}")
