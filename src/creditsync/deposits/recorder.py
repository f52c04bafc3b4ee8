"""Deposit recorder: dedup, valuation, minimum filter, persistence."""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditsync.chain.erc20 import to_units
from creditsync.config import get_settings
from creditsync.exceptions import PriceUnavailableError
from creditsync.ledger.database import get_db
from creditsync.ledger.models import Deposit, DepositStatus
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts
from creditsync.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)


class DepositRecorder:
    """Turns a detected transfer into an `unconfirmed` deposit record."""

    def __init__(
        self,
        oracle: PriceOracle,
        alerts: OperatorAlerts,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        min_deposit_usd: Optional[Decimal] = None,
    ):
        settings = get_settings()
        self.oracle = oracle
        self.alerts = alerts
        self.session_factory = session_factory
        self.min_deposit_usd = (
            min_deposit_usd if min_deposit_usd is not None else settings.min_deposit_usd
        )
        self.settings = settings

    async def record(
        self,
        tx_hash: str,
        asset: str,
        raw_amount: int,
        from_address: Optional[str],
        to_address: str,
        block_number: Optional[int],
    ) -> Optional[Deposit]:
        """Record a transfer to a monitored address.

        Safe to call any number of times for the same transaction.

        Returns:
            The new record, or None if it was a duplicate, orphaned or dust
        """
        asset = asset.upper()
        amount = to_units(raw_amount, self.settings.decimals_for(asset))

        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)

            if await repo.get_deposit_by_txid(tx_hash):
                logger.debug(f"Deposit {tx_hash[:16]}... already recorded")
                return None

            user = await repo.find_user_by_address(to_address)
            if not user:
                logger.warning(f"No account owns deposit address {to_address} (tx {tx_hash})")
                self.alerts.alert(
                    "Deposit to Unassigned Address",
                    context=(
                        f"{amount} {asset} received at {to_address} "
                        f"(Tx: {tx_hash}) but no account owns this address."
                    ),
                )
                return None

            status = DepositStatus.UNCONFIRMED
            error = None
            try:
                usd_value = await self.oracle.usd_value(asset, amount)
            except PriceUnavailableError as e:
                logger.error(f"Price unavailable for {asset} deposit {tx_hash}: {e}")
                usd_value = Decimal("0")
                status = DepositStatus.PENDING_VALUATION
                error = f"valuation pending: {e}"
                self.alerts.alert(
                    "Deposit Valuation Pending",
                    e,
                    context=f"User {user.id}: {amount} {asset} (Tx: {tx_hash}) held for valuation.",
                )
            else:
                if usd_value < self.min_deposit_usd:
                    logger.info(
                        f"Ignoring {amount} {asset} deposit {tx_hash[:16]}... "
                        f"worth ${usd_value} (minimum ${self.min_deposit_usd})"
                    )
                    return None

            try:
                deposit = await repo.create_deposit(
                    user_id=user.id,
                    tx_hash=tx_hash,
                    asset=asset,
                    amount=amount,
                    raw_amount=raw_amount,
                    usd_value=usd_value,
                    to_address=to_address,
                    from_address=from_address,
                    block_number=block_number,
                    status=status,
                    error=error,
                )
            except IntegrityError:
                # Lost a race with another recorder for the same tx
                await session.rollback()
                logger.debug(f"Deposit {tx_hash[:16]}... recorded concurrently")
                return None

        logger.info(
            f"Recorded {status.value} deposit {tx_hash[:16]}...: {amount} {asset} "
            f"(${usd_value}) for user {user.id}"
        )
        return deposit
