"""External ledger access: HTTP JSON-RPC, streaming subscriptions, ERC20 helpers."""

from creditsync.chain.rpc import EthRpcClient
from creditsync.chain.stream import ChainStream

__all__ = ["EthRpcClient", "ChainStream"]
