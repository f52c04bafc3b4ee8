"""Deposit detection, confirmation and settlement pipeline."""

from creditsync.deposits.keys import KeyProvider
from creditsync.deposits.listener import ChainEventListener
from creditsync.deposits.monitor import ConfirmationMonitor
from creditsync.deposits.reconciler import CatchUpReconciler
from creditsync.deposits.recorder import DepositRecorder
from creditsync.deposits.registry import AddressRegistry
from creditsync.deposits.settlement import SettlementProcessor
from creditsync.deposits.supervisor import ConnectionState, ConnectionSupervisor
from creditsync.deposits.sweeper import DepositSweeper, SweepResult

__all__ = [
    "AddressRegistry",
    "CatchUpReconciler",
    "ChainEventListener",
    "ConfirmationMonitor",
    "ConnectionState",
    "ConnectionSupervisor",
    "DepositRecorder",
    "DepositSweeper",
    "KeyProvider",
    "SettlementProcessor",
    "SweepResult",
]
