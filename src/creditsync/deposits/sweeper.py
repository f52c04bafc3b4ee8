"""Deposit sweeper - transfers funds from deposit addresses to the custodial wallet."""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_account import Account

from creditsync.chain.erc20 import checksum, encode_transfer, is_valid_address, to_units
from creditsync.chain.rpc import EthRpcClient
from creditsync.config import get_settings

logger = logging.getLogger(__name__)

ETH_TRANSFER_GAS = 21000
TOKEN_TRANSFER_GAS = 65000


@dataclass
class SweepResult:
    """Outcome of a sweep attempt."""

    success: bool
    tx_hash: Optional[str] = None
    reason: Optional[str] = None


def gas_cost(fee_data: dict, gas_limit: int) -> int:
    """Worst-case fee for a transaction in wei."""
    if fee_data.get("type") == 2:
        return gas_limit * fee_data["maxFeePerGas"]
    return gas_limit * fee_data["gasPrice"]


def _fee_fields(fee_data: dict) -> dict:
    if fee_data.get("type") == 2:
        return {
            "type": 2,
            "maxFeePerGas": fee_data["maxFeePerGas"],
            "maxPriorityFeePerGas": fee_data["maxPriorityFeePerGas"],
        }
    return {"gasPrice": fee_data["gasPrice"]}


class DepositSweeper:
    """Moves the full balance of a deposit address to a destination.

    Failures are reported through SweepResult.reason, never raised.
    """

    def __init__(
        self,
        rpc: EthRpcClient,
        token_contracts: Optional[dict[str, str]] = None,
        chain_id: Optional[int] = None,
    ):
        settings = get_settings()
        self.rpc = rpc
        self.token_contracts = {
            k.upper(): v for k, v in (token_contracts or settings.token_contracts).items()
        }
        self.chain_id = chain_id or settings.chain_id
        self.settings = settings

    async def sweep(self, private_key: str, to_address: str, asset: str) -> SweepResult:
        """Sweep all of `asset` held by the key's address to `to_address`."""
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid private key for sweep: {e}")
            return SweepResult(False, reason="invalid_private_key")

        if not is_valid_address(to_address):
            logger.error(f"Invalid destination address for sweep: {to_address}")
            return SweepResult(False, reason="invalid_destination_address")

        asset = asset.upper()
        try:
            if asset == "ETH":
                return await self._sweep_native(account, to_address)
            contract = self.token_contracts.get(asset)
            if not contract:
                logger.error(f"Unsupported asset for sweeping: {asset}")
                return SweepResult(False, reason=f"unsupported_asset_{asset}")
            return await self._sweep_token(account, to_address, asset, contract)
        except Exception as e:
            logger.error(f"Sweep execution failed for {asset} from {account.address}: {e}")
            if "insufficient funds" in str(e).lower():
                return SweepResult(False, reason="insufficient_funds_for_tx")
            return SweepResult(False, reason=f"sweep_execution_error: {e}")

    async def _sweep_native(self, account, to_address: str) -> SweepResult:
        balance = await self.rpc.get_balance(account.address)
        fee_data = await self.rpc.get_fee_data()
        max_gas_cost = gas_cost(fee_data, ETH_TRANSFER_GAS)

        if balance <= max_gas_cost:
            logger.warning(
                f"Sweep ETH for {account.address}: balance {to_units(balance, 18)} ETH "
                f"does not cover gas {to_units(max_gas_cost, 18)} ETH"
            )
            return SweepResult(False, reason="insufficient_for_gas")

        amount = balance - max_gas_cost
        tx = {
            "to": checksum(to_address),
            "value": amount,
            "gas": ETH_TRANSFER_GAS,
            **_fee_fields(fee_data),
        }
        logger.info(
            f"Sweeping {to_units(amount, 18)} ETH from {account.address} to {to_address}"
        )
        return await self._send(account, tx)

    async def _sweep_token(
        self, account, to_address: str, asset: str, contract: str
    ) -> SweepResult:
        token_balance = await self.rpc.get_token_balance(contract, account.address)
        if token_balance == 0:
            logger.warning(f"Sweep {asset} for {account.address}: zero token balance")
            return SweepResult(False, reason="zero_token_balance")

        eth_balance = await self.rpc.get_balance(account.address)
        fee_data = await self.rpc.get_fee_data()
        max_gas_cost = gas_cost(fee_data, TOKEN_TRANSFER_GAS)

        if eth_balance < max_gas_cost:
            logger.warning(
                f"Sweep {asset} for {account.address}: need {to_units(max_gas_cost, 18)} ETH "
                f"for gas, have {to_units(eth_balance, 18)} ETH"
            )
            return SweepResult(False, reason="insufficient_eth_for_gas")

        tx = {
            "to": checksum(contract),
            "value": 0,
            "data": encode_transfer(to_address, token_balance),
            "gas": TOKEN_TRANSFER_GAS,
            **_fee_fields(fee_data),
        }
        amount = to_units(token_balance, self.settings.decimals_for(asset))
        logger.info(f"Sweeping {amount} {asset} from {account.address} to {to_address}")
        return await self._send(account, tx)

    async def _send(self, account, tx: dict) -> SweepResult:
        tx["nonce"] = await self.rpc.get_nonce(account.address)
        tx["chainId"] = self.chain_id

        signed = account.sign_transaction(tx)
        raw_tx = signed.raw_transaction.hex()
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx

        tx_hash = await self.rpc.send_raw_transaction(raw_tx)
        logger.info(f"Sweep tx sent: {tx_hash}")
        return SweepResult(True, tx_hash=tx_hash)
