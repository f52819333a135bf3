"""HD Wallet module for deterministic address generation."""

from custody.hdwallet.base import AddressInfo, HDWalletProvider
from custody.hdwallet.keys import SecretKey
from custody.hdwallet.service import KeyDerivationService

__all__ = [
    "AddressInfo",
    "HDWalletProvider",
    "KeyDerivationService",
    "SecretKey",
]
