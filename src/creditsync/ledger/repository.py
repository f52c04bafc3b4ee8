"""Repository for ledger operations.

All balance and status mutations are single conditional statements
(compare-and-set on status, atomic increment on credits). Never read a value,
change it in Python and write it back.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.exceptions import DepositNotFoundError
from creditsync.ledger.models import (
    CreditHistory,
    CreditHistoryType,
    Deposit,
    DepositAddress,
    DepositStatus,
    User,
)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # User operations
    async def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        """Create a new account with a zero balance."""
        user = User(username=username, email=email, is_active=is_active, credits=Decimal("0"))
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        stmt = select(User).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_credits(self, user_id: int) -> Decimal:
        """Read the live credit balance straight from the store."""
        stmt = select(User.credits).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or Decimal("0")

    # Deposit address operations
    async def add_deposit_address(
        self,
        user_id: int,
        address: str,
        derivation_index: Optional[int] = None,
    ) -> DepositAddress:
        """Register a monitored address for a user."""
        addr = DepositAddress(
            user_id=user_id,
            address=address.lower(),
            derivation_index=derivation_index,
        )
        self.session.add(addr)
        await self.session.flush()
        return addr

    async def get_deposit_address_record(self, address: str) -> Optional[DepositAddress]:
        """Get deposit address record by address string."""
        stmt = select(DepositAddress).where(DepositAddress.address == address.lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_by_address(self, address: str) -> Optional[User]:
        """Find the user owning a monitored address."""
        stmt = (
            select(User)
            .join(DepositAddress)
            .where(DepositAddress.address == address.lower())
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_addresses(self) -> list[DepositAddress]:
        """Get active deposit addresses of active users.

        Used by the address registry to build the monitored set.
        """
        stmt = (
            select(DepositAddress)
            .join(User)
            .where(User.is_active.is_(True), DepositAddress.status == "active")
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Deposit operations
    async def create_deposit(
        self,
        user_id: int,
        tx_hash: str,
        asset: str,
        amount: Decimal,
        raw_amount: int,
        usd_value: Decimal,
        to_address: str,
        from_address: Optional[str] = None,
        block_number: Optional[int] = None,
        status: DepositStatus = DepositStatus.UNCONFIRMED,
        error: Optional[str] = None,
    ) -> Deposit:
        """Create a new deposit record.

        Raises IntegrityError on flush if the transaction hash already exists.
        """
        deposit = Deposit(
            user_id=user_id,
            tx_hash=tx_hash,
            asset=asset.upper(),
            amount=amount,
            raw_amount=str(raw_amount),
            usd_value=usd_value,
            to_address=to_address.lower(),
            from_address=from_address.lower() if from_address else None,
            block_number=block_number,
            status=status.value,
            error=error,
            detected_at=utcnow(),
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def get_deposit_by_txid(self, tx_hash: str) -> Optional[Deposit]:
        """Get deposit by transaction hash (idempotent check)."""
        stmt = select(Deposit).where(Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_deposits_by_status(self, *statuses: DepositStatus) -> list[Deposit]:
        """Get all deposits in any of the given statuses, oldest first."""
        stmt = (
            select(Deposit)
            .where(Deposit.status.in_([s.value for s in statuses]))
            .order_by(Deposit.detected_at, Deposit.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_user_deposits(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[Deposit]:
        """Get deposit history for a user."""
        stmt = (
            select(Deposit)
            .where(Deposit.user_id == user_id)
            .order_by(Deposit.detected_at.desc(), Deposit.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def set_status_if_current(
        self,
        tx_hash: str,
        expected: DepositStatus,
        new_status: DepositStatus,
        **fields,
    ) -> bool:
        """Move a deposit to a new status only if it is still in `expected`.

        Returns False when another writer got there first.
        """
        stmt = (
            update(Deposit)
            .where(Deposit.tx_hash == tx_hash, Deposit.status == expected.value)
            .values(status=new_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def credit_deposit(self, tx_hash: str) -> Optional[Deposit]:
        """Credit a confirmed deposit to its owner exactly once.

        Flips confirmed -> credited, increments the balance and appends a
        history entry in the current transaction. Returns None if the deposit
        was not in `confirmed` any more (another caller already credited it).
        """
        deposit = await self.get_deposit_by_txid(tx_hash)
        if deposit is None:
            raise DepositNotFoundError(f"Deposit {tx_hash} not found")

        credited = await self.set_status_if_current(
            tx_hash,
            DepositStatus.CONFIRMED,
            DepositStatus.CREDITED,
            credited_at=utcnow(),
        )
        if not credited:
            return None

        await self.adjust_credits(
            user_id=deposit.user_id,
            delta=deposit.usd_value,
            entry_type=CreditHistoryType.DEPOSIT,
            reason=(
                f"Deposit of {deposit.amount.normalize():f} {deposit.asset} "
                f"(Tx: {tx_hash})"
            ),
            reference=tx_hash,
        )
        await self.session.refresh(deposit)
        return deposit

    async def record_sweep_result(
        self,
        tx_hash: str,
        sweep_tx_hash: Optional[str] = None,
        sweep_error: Optional[str] = None,
    ) -> None:
        """Store the outcome of a sweep on the deposit record."""
        values: dict = {"sweep_tx_hash": sweep_tx_hash, "sweep_error": sweep_error}
        if sweep_tx_hash:
            values["swept_at"] = utcnow()
        stmt = (
            update(Deposit)
            .where(Deposit.tx_hash == tx_hash)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def reopen_failed_deposit(self, tx_hash: str) -> bool:
        """Operator action: put a failed deposit back into confirmation tracking."""
        return await self.set_status_if_current(
            tx_hash,
            DepositStatus.FAILED,
            DepositStatus.UNCONFIRMED,
            error=None,
        )

    # Credit balance operations
    async def adjust_credits(
        self,
        user_id: int,
        delta: Decimal,
        entry_type: CreditHistoryType,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> CreditHistory:
        """Atomically add `delta` to the balance and append a history entry."""
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + delta)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

        entry = CreditHistory(
            user_id=user_id,
            type=entry_type.value,
            amount=delta,
            reason=reason,
            reference=reference,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_credit_history(
        self, user_id: int, limit: Optional[int] = None
    ) -> list[CreditHistory]:
        """Get credit history for a user, oldest first."""
        stmt = (
            select(CreditHistory)
            .where(CreditHistory.user_id == user_id)
            .order_by(CreditHistory.created_at, CreditHistory.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_history_entries_for_reference(self, reference: str) -> list[CreditHistory]:
        """Get history entries pointing at a transaction hash."""
        stmt = select(CreditHistory).where(CreditHistory.reference == reference)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def trim_credit_history(self, user_id: int, limit: int) -> int:
        """Drop the oldest history entries beyond the rolling window.

        The live balance is not touched. Returns number of entries removed.
        """
        keep = (
            select(CreditHistory.id)
            .where(CreditHistory.user_id == user_id)
            .order_by(CreditHistory.created_at.desc(), CreditHistory.id.desc())
            .limit(limit)
        )
        stmt = (
            delete(CreditHistory)
            .where(CreditHistory.user_id == user_id, CreditHistory.id.not_in(keep))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
