"""Streaming JSON-RPC connection (eth_subscribe over WebSocket).

A single reader task owns the socket. Request responses are matched to
waiting futures by id; subscription notifications are routed to their
registered handler, which must not block.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from creditsync.config import get_settings
from creditsync.exceptions import ConfigurationError, RpcError, StreamClosedError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Any], None]


class ChainStream:
    """One WebSocket connection to the node plus its subscriptions."""

    def __init__(
        self,
        url: Optional[str] = None,
        request_timeout: Optional[float] = None,
        connector: Optional[Callable] = None,
    ):
        settings = get_settings()
        self.url = url if url is not None else settings.websocket_url
        self.request_timeout = request_timeout or settings.rpc_timeout
        self._connector = connector or websockets.connect

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._handlers: dict[str, NotificationHandler] = {}
        self._next_id = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    @property
    def subscriptions(self) -> list[str]:
        return list(self._handlers)

    async def connect(self) -> None:
        """Open the socket and start the reader task."""
        if not self.url:
            raise ConfigurationError("No WebSocket URL configured")

        self._ws = await self._connector(self.url, ping_interval=20, ping_timeout=10)
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Stream connected")

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON stream frame: {str(raw)[:80]}")
                    continue
                self._dispatch(message)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(StreamClosedError("Stream closed"))
            self._pending.clear()

    def _dispatch(self, message: dict) -> None:
        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            handler = self._handlers.get(params.get("subscription"))
            if handler is None:
                return
            try:
                handler(params.get("result"))
            except Exception as e:
                logger.error(f"Subscription handler failed: {e}")
            return

        future = self._pending.pop(message.get("id"), None)
        if future is None or future.done():
            return
        if message.get("error"):
            error = message["error"]
            text = error.get("message", error) if isinstance(error, dict) else error
            future.set_exception(RpcError(str(text)))
        else:
            future.set_result(message.get("result"))

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """Send a JSON-RPC request over the stream and await its result."""
        if self._ws is None:
            raise StreamClosedError("Stream not connected")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, self.request_timeout)
        except ConnectionClosed as e:
            raise StreamClosedError(f"Stream closed during {method}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RpcError(f"{method} timed out after {self.request_timeout}s") from e
        finally:
            self._pending.pop(request_id, None)

    async def subscribe(self, params: list, handler: NotificationHandler) -> str:
        """Create a subscription and route its notifications to `handler`."""
        subscription_id = await self.request("eth_subscribe", params)
        self._handlers[subscription_id] = handler
        logger.debug(f"Subscribed {params[0]} as {subscription_id}")
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Drop a subscription. Node-side failures are logged, not raised."""
        self._handlers.pop(subscription_id, None)
        if not self.is_connected:
            return False
        try:
            return bool(await self.request("eth_unsubscribe", [subscription_id]))
        except RpcError as e:
            logger.warning(f"Failed to unsubscribe {subscription_id}: {e}")
            return False

    async def unsubscribe_all(self) -> None:
        for subscription_id in list(self._handlers):
            await self.unsubscribe(subscription_id)

    async def run(self) -> None:
        """Wait on the reader until the connection drops.

        Raises:
            StreamClosedError: always, once the socket is gone
        """
        if self._reader is None:
            raise StreamClosedError("Stream not connected")
        try:
            await self._reader
        except ConnectionClosed as e:
            raise StreamClosedError(f"Stream closed: {e}") from e
        raise StreamClosedError("Stream closed by remote")

    async def close(self) -> None:
        """Stop the reader and close the socket."""
        self._handlers.clear()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except ConnectionClosed:
                pass
            self._ws = None
