"""Chain event listener.

Subscribes to new heads and to ERC20 Transfer logs addressed to monitored
addresses, and hands every matching transfer to the deposit recorder.
Notification handlers only schedule work; they never await.
"""

import logging
from typing import Optional

from creditsync.chain.erc20 import TRANSFER_TOPIC, address_topic, decode_transfer_log
from creditsync.chain.stream import ChainStream
from creditsync.config import get_settings
from creditsync.deposits.recorder import DepositRecorder
from creditsync.deposits.registry import AddressRegistry
from creditsync.notifications.telegram import OperatorAlerts
from creditsync.utils.tasks import TaskSet

logger = logging.getLogger(__name__)


class ChainEventListener:
    """Turns stream notifications into recorder calls."""

    def __init__(
        self,
        stream: ChainStream,
        registry: AddressRegistry,
        recorder: DepositRecorder,
        alerts: OperatorAlerts,
        tasks: TaskSet,
        token_contracts: Optional[dict[str, str]] = None,
    ):
        self.stream = stream
        self.registry = registry
        self.recorder = recorder
        self.alerts = alerts
        self.tasks = tasks
        contracts = token_contracts if token_contracts is not None else get_settings().token_contracts
        # contract (lower-case) -> asset symbol
        self.token_assets = {addr.lower(): symbol.upper() for symbol, addr in contracts.items()}

        self._block_tasks = TaskSet("blocks")
        self._head_subscription: Optional[str] = None
        self._token_subscription: Optional[str] = None

    @property
    def token_subscription(self) -> Optional[str]:
        return self._token_subscription

    async def start(self) -> None:
        """Subscribe to heads and token transfers on the current connection."""
        self._head_subscription = await self.stream.subscribe(["newHeads"], self.on_new_head)
        logger.info("Listening for new blocks")
        await self.subscribe_token_transfers()

    async def subscribe_token_transfers(self) -> None:
        if not self.token_assets:
            return

        addresses = sorted(self.registry.snapshot())
        if not addresses:
            logger.warning("No deposit addresses to monitor; skipping token transfer filter")
            return

        params = [
            "logs",
            {
                "address": list(self.token_assets),
                "topics": [TRANSFER_TOPIC, None, [address_topic(a) for a in addresses]],
            },
        ]
        self._token_subscription = await self.stream.subscribe(params, self.on_transfer_log)
        logger.info(
            f"Listening for {', '.join(self.token_assets.values())} transfers "
            f"to {len(addresses)} addresses"
        )

    async def refresh_token_filter(self) -> None:
        """Re-subscribe the token filter with the current registry snapshot."""
        if self._token_subscription:
            old, self._token_subscription = self._token_subscription, None
            await self.stream.unsubscribe(old)
        await self.subscribe_token_transfers()

    async def stop(self) -> None:
        """Drop connection-scoped state. Subscriptions die with the socket."""
        self._head_subscription = None
        self._token_subscription = None
        await self._block_tasks.cancel_all()

    def on_new_head(self, head: dict) -> None:
        number = (head or {}).get("number")
        if number is None:
            return
        block_number = int(number, 16)
        self._block_tasks.spawn(self.process_block(block_number), name=f"block:{block_number}")

    async def process_block(self, block_number: int) -> None:
        """Scan one block for native transfers to monitored addresses."""
        try:
            block = await self.stream.request("eth_getBlockByNumber", [hex(block_number), True])
        except Exception as e:
            logger.error(f"Failed to fetch block {block_number}: {e}")
            self.alerts.alert(
                "Deposit Listener Block Processing Error",
                e,
                context=f"Block {block_number} was not scanned for native deposits.",
            )
            return
        if not block:
            logger.debug(f"Block {block_number} not available yet")
            return

        for tx in block.get("transactions") or []:
            to_address = tx.get("to")
            if not self.registry.contains(to_address):
                continue
            value = int(tx.get("value") or "0x0", 16)
            if value <= 0:
                continue

            logger.info(f"Detected ETH transfer {tx['hash'][:16]}... to {to_address} in block {block_number}")
            self.tasks.spawn(
                self.recorder.record(
                    tx_hash=tx["hash"],
                    asset="ETH",
                    raw_amount=value,
                    from_address=tx.get("from"),
                    to_address=to_address,
                    block_number=block_number,
                ),
                name=f"record:{tx['hash'][:10]}",
            )

    def on_transfer_log(self, log: dict) -> None:
        transfer = decode_transfer_log(log or {})
        if transfer is None:
            return

        asset = self.token_assets.get(transfer["contract"])
        if asset is None or not self.registry.contains(transfer["to"]):
            return
        if transfer["value"] <= 0:
            return

        logger.info(
            f"Detected {asset} transfer {transfer['tx_hash'][:16]}... to {transfer['to']}"
        )
        self.tasks.spawn(
            self.recorder.record(
                tx_hash=transfer["tx_hash"],
                asset=asset,
                raw_amount=transfer["value"],
                from_address=transfer["from"],
                to_address=transfer["to"],
                block_number=transfer["block_number"],
            ),
            name=f"record:{transfer['tx_hash'][:10]}",
        )
