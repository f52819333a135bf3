"""TRON HD Wallet using SLIP-44.

Derivation path: m/44'/195'/0'/0/index
Address format: T... (base58check)

A TRON address is the Ethereum-style keccak public key hash prefixed with
the version byte 0x41, followed by the first 4 bytes of a double SHA-256
of that payload, base58 encoded.
"""

import hashlib

import base58
from bip_utils import Bip44Coins
from eth_utils import keccak

from custody.hdwallet.base import HDWalletProvider

TRON_ADDRESS_PREFIX = b"\x41"


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def encode_tron_address(public_key_uncompressed: bytes) -> str:
    """Encode a 65-byte uncompressed secp256k1 public key as a T-address."""
    if len(public_key_uncompressed) != 65 or public_key_uncompressed[0] != 0x04:
        raise ValueError("Expected a 65-byte uncompressed public key")

    key_hash = keccak(public_key_uncompressed[1:])[-20:]
    payload = TRON_ADDRESS_PREFIX + key_hash
    return base58.b58encode(payload + _checksum(payload)).decode()


def tron_address_to_bytes(address: str) -> bytes:
    """Decode a T-address into its 21-byte payload (0x41 + hash).

    Raises:
        ValueError: If the checksum or version byte is wrong
    """
    raw = base58.b58decode(address)
    if len(raw) != 25:
        raise ValueError(f"Invalid TRON address length: {address}")

    payload, checksum = raw[:21], raw[21:]
    if _checksum(payload) != checksum:
        raise ValueError(f"Invalid TRON address checksum: {address}")
    if payload[:1] != TRON_ADDRESS_PREFIX:
        raise ValueError(f"Invalid TRON address version byte: {address}")
    return payload


def tron_address_to_hex(address: str) -> str:
    """Convert a T-address to the 41-prefixed hex form used by TronGrid."""
    return tron_address_to_bytes(address).hex()


def is_valid_tron_address(address: str) -> bool:
    try:
        tron_address_to_bytes(address)
    except ValueError:
        return False
    return True


class TronHDWallet(HDWalletProvider):
    """TRON HD Wallet.

    Example:
        wallet = TronHDWallet(seed_bytes, Network.TRC20)
        wallet.derive_address(7).address  # 'T...'
    """

    bip44_coin = Bip44Coins.TRON

    @property
    def coin_type(self) -> int:
        return 195  # SLIP-44 for TRON

    def encode_address(self, public_key_uncompressed: bytes) -> str:
        return encode_tron_address(public_key_uncompressed)
