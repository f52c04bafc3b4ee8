"""Connection supervisor.

Owns every connection-scoped resource: the stream, the listener
subscriptions, the address refresh timer and the confirmation monitor timer.
A connection attempt either reaches CONNECTED and runs until the stream
drops, or fails; both paths end in a single teardown before the backoff.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from creditsync.chain.stream import ChainStream
from creditsync.config import get_settings
from creditsync.deposits.listener import ChainEventListener
from creditsync.deposits.monitor import ConfirmationMonitor
from creditsync.deposits.registry import AddressRegistry
from creditsync.exceptions import ConfigurationError, StreamClosedError
from creditsync.notifications.telegram import OperatorAlerts
from creditsync.utils.tasks import IntervalTimer, TaskSet

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionSupervisor:
    """Keeps exactly one live listener connection, reconnecting after a fixed delay."""

    def __init__(
        self,
        stream: ChainStream,
        registry: AddressRegistry,
        listener: ChainEventListener,
        monitor: ConfirmationMonitor,
        alerts: OperatorAlerts,
        tasks: TaskSet,
        refresh_interval: Optional[float] = None,
        monitor_interval: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self.stream = stream
        self.registry = registry
        self.listener = listener
        self.monitor = monitor
        self.alerts = alerts
        self.tasks = tasks
        self.refresh_interval = refresh_interval or settings.address_refresh_interval
        self.monitor_interval = monitor_interval or settings.confirmation_check_interval
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.reconnect_delay
        )
        self.network = settings.blockchain_network

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self._timers: list[IntervalTimer] = []
        self._stopping = False

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.info(f"Connection {self.state.value} -> {state.value}")
            self.state = state

    @property
    def timers(self) -> list[IntervalTimer]:
        return list(self._timers)

    async def run(self) -> None:
        """Supervise the connection until stop() is called or the task is cancelled."""
        while not self._stopping:
            try:
                await self._connect_and_listen()
            except ConfigurationError as e:
                logger.error(f"Deposit listener cannot start: {e}")
                self.alerts.alert("Deposit Listener Startup Failed", e, context=str(e))
            except StreamClosedError as e:
                logger.error(f"Stream connection lost: {e}")
                self.alerts.alert(
                    "WebSocket Provider Connection Error",
                    e,
                    context=f"Network: {self.network}. Reconnecting in {self.reconnect_delay}s.",
                )
            except Exception as e:
                logger.error(f"Deposit listener failed: {e}")
                self.alerts.alert(
                    "Deposit Listener Error",
                    e,
                    context=f"Network: {self.network}. Reconnecting in {self.reconnect_delay}s.",
                )
            finally:
                await self._teardown()

            if self._stopping:
                break
            logger.info(f"Reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_listen(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self.attempts += 1

        if not self.stream.url:
            raise ConfigurationError(
                "No WebSocket provider URL configured "
                "(ALCHEMY_WEBSOCKET_URL or INFURA_WEBSOCKET_URL)"
            )

        await self.registry.refresh()
        await self.stream.connect()
        self._arm_timers()
        await self.listener.start()

        self._set_state(ConnectionState.CONNECTED)
        await self.stream.run()

    def _arm_timers(self) -> None:
        self._timers = [
            IntervalTimer(
                self.refresh_interval, self._refresh_addresses, self.tasks, name="address-refresh"
            ),
            IntervalTimer(
                self.monitor_interval, self.monitor.tick, self.tasks, name="confirmation-monitor"
            ),
        ]
        for timer in self._timers:
            timer.start()

    async def _refresh_addresses(self) -> None:
        if not await self.registry.refresh():
            return
        if self.state != ConnectionState.CONNECTED:
            return
        try:
            await self.listener.refresh_token_filter()
        except Exception as e:
            logger.error(f"Failed to update token transfer filter: {e}")

    async def _teardown(self) -> None:
        """Release every connection-scoped resource."""
        for timer in self._timers:
            await timer.stop()
        self._timers = []

        await self.listener.stop()
        await self.stream.unsubscribe_all()
        await self.stream.close()
        self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._stopping = True
        await self._teardown()
