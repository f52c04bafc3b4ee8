"""Ledger module for accounts, deposit records and credit history."""

from creditsync.ledger.database import get_db, init_db
from creditsync.ledger.models import (
    CreditHistory,
    CreditHistoryType,
    Deposit,
    DepositAddress,
    DepositStatus,
    User,
)
from creditsync.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "User",
    "Deposit",
    "DepositAddress",
    "CreditHistory",
    # Enums
    "DepositStatus",
    "CreditHistoryType",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
]
