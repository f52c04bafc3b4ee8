"""Signing key material for monitored addresses.

Deposit addresses are BIP-44 Ethereum children of the wallet seed; the
derivation index is stored on the address record.
"""

import logging
from typing import Optional

from bip_utils import Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_account import Account

from creditsync.config import get_settings
from creditsync.ledger.models import DepositAddress

logger = logging.getLogger(__name__)


def derive_private_key(seed_phrase: str, index: int) -> str:
    """Derive the hex private key at m/44'/60'/0'/0/index."""
    seed_bytes = Bip39SeedGenerator(seed_phrase).Generate()
    bip44 = Bip44.FromSeed(seed_bytes, Bip44Coins.ETHEREUM)
    account = bip44.Purpose().Coin().Account(0).Change(Bip44Changes.CHAIN_EXT).AddressIndex(index)
    return account.PrivateKey().Raw().ToHex()


class KeyProvider:
    """Resolves the private key controlling a monitored address."""

    def __init__(self, seed_phrase: Optional[str] = None):
        self._seed_phrase = seed_phrase if seed_phrase is not None else get_settings().wallet_seed_phrase

    def private_key_for(self, address_record: Optional[DepositAddress]) -> Optional[str]:
        """Return the key for an address, or None when it cannot be recovered."""
        if address_record is None:
            return None
        if not self._seed_phrase:
            logger.error("No seed phrase configured")
            return None
        if address_record.derivation_index is None:
            logger.error(f"No derivation index stored for {address_record.address}")
            return None

        try:
            private_key = derive_private_key(self._seed_phrase, address_record.derivation_index)
        except Exception as e:
            logger.error(f"Failed to derive private key: {e}")
            return None

        derived = Account.from_key(private_key).address.lower()
        if derived != address_record.address.lower():
            logger.error(
                f"Derived address {derived} does not match {address_record.address} "
                f"at index {address_record.derivation_index}"
            )
            return None
        return private_key
