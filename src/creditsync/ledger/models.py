"""SQLAlchemy models for the ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit.

    pending_valuation -> unconfirmed | failed
    unconfirmed -> confirmed | failed
    confirmed -> credited
    """

    PENDING_VALUATION = "pending_valuation"  # Price oracle was down at detection
    UNCONFIRMED = "unconfirmed"              # Seen on chain, waiting for depth
    CONFIRMED = "confirmed"                  # Depth reached, not yet credited
    CREDITED = "credited"                    # Balance applied (terminal)
    FAILED = "failed"                        # Timed out, reverted or dust (terminal)


TERMINAL_DEPOSIT_STATUSES = (DepositStatus.CREDITED, DepositStatus.FAILED)


class CreditHistoryType(str, Enum):
    """Type tag of a credit history entry."""

    DEPOSIT = "deposit"
    REWARD = "reward"
    REFERRAL = "referral"
    WITHDRAWAL = "withdrawal"
    STAKE = "stake"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    WITHDRAWAL_REFUND = "withdrawal_refund"


class User(Base):
    """Account holding a USD credit balance."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    credits: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    deposit_addresses: Mapped[list["DepositAddress"]] = relationship(
        back_populates="user", lazy="selectin"
    )
    deposits: Mapped[list["Deposit"]] = relationship(back_populates="user", lazy="raise")


class DepositAddress(Base):
    """Monitored address owned by a user.

    Addresses are stored lower-case. The derivation index locates the signing
    key used to sweep the address.
    """

    __tablename__ = "deposit_addresses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    derivation_index: Mapped[Optional[int]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, retired
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="deposit_addresses")


class Deposit(Base):
    """Record of one inbound transfer, keyed by transaction hash.

    Never deleted; mutated in place through its status lifecycle.
    """

    __tablename__ = "deposits"
    __table_args__ = (Index("ix_deposits_status", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    raw_amount: Mapped[str] = mapped_column(String(80), nullable=False)  # Smallest units
    usd_value: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"))
    from_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(nullable=True)
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.UNCONFIRMED, nullable=False
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sweep_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sweep_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    swept_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="deposits")


class CreditHistory(Base):
    """Signed adjustment to a user's credit balance.

    Append-only; capped to a rolling window per user.
    """

    __tablename__ = "credit_history"
    __table_args__ = (Index("ix_credit_history_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[CreditHistoryType] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
