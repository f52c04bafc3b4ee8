"""ERC20 call encoding and Transfer log decoding."""

from decimal import Decimal
from typing import Optional

from eth_utils import is_address, to_checksum_address

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# ERC20 transfer(address,uint256) method signature
TRANSFER_SIGNATURE = "0xa9059cbb"

# ERC20 balanceOf(address) method signature
BALANCE_OF_SIGNATURE = "0x70a08231"


def is_valid_address(address: Optional[str]) -> bool:
    """Check that a value is a well-formed hex address."""
    return bool(address) and isinstance(address, str) and is_address(address)


def normalize_address(address: str) -> str:
    """Lower-case form used for registry and store lookups."""
    return address.lower()


def checksum(address: str) -> str:
    """EIP-55 form used when building transactions."""
    return to_checksum_address(address)


def _pad_address(address: str) -> str:
    return address.lower().replace("0x", "").zfill(64)


def encode_balance_of(address: str) -> str:
    """Build calldata for balanceOf(address)."""
    return f"{BALANCE_OF_SIGNATURE}{_pad_address(address)}"


def encode_transfer(to_address: str, amount: int) -> str:
    """Build calldata for transfer(address,uint256)."""
    amount_hex = hex(amount)[2:].zfill(64)
    return f"{TRANSFER_SIGNATURE}{_pad_address(to_address)}{amount_hex}"


def address_topic(address: str) -> str:
    """Encode an address as an indexed log topic."""
    return "0x" + _pad_address(address)


def topic_to_address(topic: str) -> str:
    """Decode an indexed address topic back to a lower-case address."""
    return "0x" + topic[-40:].lower()


def decode_transfer_log(log: dict) -> Optional[dict]:
    """Decode a Transfer event log.

    Returns None for anything that is not a standard Transfer
    (wrong topic, missing indexed fields, removed by a reorg).
    """
    topics = log.get("topics") or []
    if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
        return None
    if log.get("removed"):
        return None

    data = log.get("data") or "0x"
    value = int(data, 16) if data not in ("0x", "") else 0
    block = log.get("blockNumber")

    return {
        "contract": (log.get("address") or "").lower(),
        "from": topic_to_address(topics[1]),
        "to": topic_to_address(topics[2]),
        "value": value,
        "tx_hash": log.get("transactionHash"),
        "block_number": int(block, 16) if isinstance(block, str) else block,
    }


def to_units(raw: int, decimals: int) -> Decimal:
    """Convert smallest units to a Decimal amount."""
    return Decimal(raw) / Decimal(10**decimals)
