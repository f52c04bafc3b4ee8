"""Main entry point - runs the deposit pipeline."""

import asyncio
import logging
import signal

from creditsync.chain.rpc import EthRpcClient
from creditsync.chain.stream import ChainStream
from creditsync.config import get_settings
from creditsync.deposits import (
    AddressRegistry,
    CatchUpReconciler,
    ChainEventListener,
    ConfirmationMonitor,
    ConnectionSupervisor,
    DepositRecorder,
    DepositSweeper,
    KeyProvider,
    SettlementProcessor,
)
from creditsync.ledger.database import close_db, init_db
from creditsync.notifications.telegram import OperatorAlerts, close_bot
from creditsync.pricing.oracle import PriceOracle
from creditsync.utils.tasks import IntervalTimer, TaskSet

logger = logging.getLogger(__name__)


class Application:
    """Wires the pipeline together and runs it until a shutdown signal."""

    def __init__(self):
        self.settings = get_settings()
        self.tasks = TaskSet("pipeline")
        self.alerts = OperatorAlerts(tasks=self.tasks)
        self.rpc = EthRpcClient()
        self.oracle = PriceOracle()
        self.stream = ChainStream()

        self.registry = AddressRegistry(self.alerts)
        self.recorder = DepositRecorder(self.oracle, self.alerts)
        self.settlement = SettlementProcessor(
            sweeper=DepositSweeper(self.rpc),
            keys=KeyProvider(),
            alerts=self.alerts,
        )
        self.monitor = ConfirmationMonitor(
            rpc=self.rpc,
            settlement=self.settlement,
            oracle=self.oracle,
            alerts=self.alerts,
            tasks=self.tasks,
        )
        self.listener = ChainEventListener(
            self.stream, self.registry, self.recorder, self.alerts, self.tasks
        )
        self.supervisor = ConnectionSupervisor(
            stream=self.stream,
            registry=self.registry,
            listener=self.listener,
            monitor=self.monitor,
            alerts=self.alerts,
            tasks=self.tasks,
        )
        self.reconciler = CatchUpReconciler(self.settlement)
        self.catchup_timer = IntervalTimer(
            self.settings.catchup_interval,
            self.reconciler.run_once,
            self.tasks,
            name="catch-up",
        )
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting CreditSync deposit pipeline...")
        logger.info(f"Settings: {self.settings.get_safe_dict()}")

        # Store failures at startup are fatal
        await init_db()
        logger.info("Database initialized")

        if not self.settings.admin_wallet_address:
            logger.warning("ADMIN_WALLET_ADDRESS not set - deposits will be credited but not swept")

        supervisor_task = asyncio.create_task(self.supervisor.run(), name="supervisor")
        self.catchup_timer.start()

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        await self.catchup_timer.stop()
        supervisor_task.cancel()
        await asyncio.gather(supervisor_task, return_exceptions=True)

        await self._cleanup()

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")

        await self.supervisor.stop()
        # Let in-flight settlements and alerts finish
        try:
            await asyncio.wait_for(self.tasks.wait(), timeout=30)
        except asyncio.TimeoutError:
            logger.warning(f"Cancelling {len(self.tasks)} unfinished tasks")
            await self.tasks.cancel_all()

        await self.rpc.close()
        await close_bot()
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
