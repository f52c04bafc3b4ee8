"""HTTP JSON-RPC client for the Ethereum node.

Covers the reads the pipeline needs (heads, blocks, receipts, balances) and
the calls a sweep needs (fee data, nonce, raw transaction broadcast).
"""

import asyncio
import logging
import time
from typing import Any, Optional, Union

import httpx

from creditsync.chain.erc20 import encode_balance_of
from creditsync.config import get_settings
from creditsync.exceptions import RpcError

logger = logging.getLogger(__name__)

# Default tip when the node has no eth_maxPriorityFeePerGas
DEFAULT_PRIORITY_FEE_WEI = 1_000_000_000


def _to_int(value: Optional[str]) -> int:
    if value is None or value == "0x":
        return 0
    return int(value, 16)


class EthRpcClient:
    """Async JSON-RPC client over httpx."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[float] = None,
        fee_cache_ttl: Optional[float] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.rpc_url = rpc_url or settings.eth_rpc_url
        self.timeout = timeout or settings.rpc_timeout
        self.fee_cache_ttl = (
            fee_cache_ttl if fee_cache_ttl is not None else settings.gas_price_cache_ttl
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.confirmation_poll_interval
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0
        self._fee_cache: Optional[dict] = None
        self._fee_cache_time = 0.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Make a JSON-RPC call and return its result.

        Raises:
            RpcError: on transport failure or a JSON-RPC error object
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._request_id,
        }

        try:
            response = await self._get_client().post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RpcError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise RpcError(f"{method} returned invalid JSON") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(f"{method} error: {message}")

        return data.get("result")

    async def block_number(self) -> int:
        """Get the current head block number."""
        return _to_int(await self.call("eth_blockNumber"))

    async def get_block(
        self, number: Union[int, str] = "latest", full: bool = False
    ) -> Optional[dict]:
        """Get a block by number, optionally with full transaction objects."""
        tag = hex(number) if isinstance(number, int) else number
        return await self.call("eth_getBlockByNumber", [tag, full])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Get a transaction receipt (None while pending or unknown)."""
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def wait_for_confirmations(
        self,
        tx_hash: str,
        depth: int,
        timeout: float,
    ) -> Optional[dict]:
        """Poll until a transaction is `depth` blocks deep.

        Confirmations count the containing block, so a transaction in the
        head block has one confirmation.

        Returns:
            The receipt with an added `confirmations` key, or None if the
            depth was not reached before the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt and receipt.get("blockNumber"):
                head = await self.block_number()
                confirmations = head - _to_int(receipt["blockNumber"]) + 1
                if confirmations >= depth:
                    return {**receipt, "confirmations": confirmations}
                logger.debug(f"{tx_hash[:10]}... at {confirmations}/{depth} confirmations")

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def get_balance(self, address: str) -> int:
        """Get native balance in wei."""
        return _to_int(await self.call("eth_getBalance", [address, "latest"]))

    async def get_token_balance(self, contract: str, address: str) -> int:
        """Get ERC20 balance in smallest units."""
        result = await self.call(
            "eth_call",
            [{"to": contract, "data": encode_balance_of(address)}, "latest"],
        )
        return _to_int(result)

    async def get_nonce(self, address: str) -> int:
        """Get transaction count including pending transactions."""
        return _to_int(await self.call("eth_getTransactionCount", [address, "pending"]))

    async def send_raw_transaction(self, raw_tx: str) -> str:
        """Broadcast a signed transaction and return its hash."""
        return await self.call("eth_sendRawTransaction", [raw_tx])

    async def get_fee_data(self) -> dict:
        """Get current fee parameters.

        Returns a type 2 dict (maxFeePerGas, maxPriorityFeePerGas) when the
        head block carries a base fee, otherwise a type 0 dict (gasPrice).
        Cached for `fee_cache_ttl` seconds; a stale value is served if the
        node cannot be reached.
        """
        now = time.monotonic()
        if self._fee_cache and now - self._fee_cache_time < self.fee_cache_ttl:
            return self._fee_cache

        try:
            block = await self.get_block("latest")
            base_fee = (block or {}).get("baseFeePerGas")

            if base_fee:
                try:
                    priority = _to_int(await self.call("eth_maxPriorityFeePerGas"))
                except RpcError:
                    priority = DEFAULT_PRIORITY_FEE_WEI
                fee_data = {
                    "type": 2,
                    "maxPriorityFeePerGas": priority,
                    "maxFeePerGas": _to_int(base_fee) * 2 + priority,
                }
            else:
                logger.warning("EIP-1559 fee data not available, using legacy gas price")
                fee_data = {"type": 0, "gasPrice": _to_int(await self.call("eth_gasPrice"))}

        except RpcError as e:
            if self._fee_cache:
                logger.warning(f"Using stale fee data: {e}")
                return self._fee_cache
            raise

        self._fee_cache = fee_data
        self._fee_cache_time = now
        return fee_data
