"""EVM HD Wallet implementation using BIP44.

Derivation path: m/44'/60'/0'/0/index
Address format: 0x... (EIP-55 checksum encoded)

ERC20 (Ethereum) and BEP20 (BSC) share coin type 60, so the same index
yields the same address on both networks.
"""

from bip_utils import Bip44Coins, EthAddrEncoder
from eth_utils import to_checksum_address

from custody.hdwallet.base import HDWalletProvider


class EVMHDWallet(HDWalletProvider):
    """EVM HD Wallet (Ethereum, BSC).

    Example:
        wallet = EVMHDWallet(seed_bytes, Network.BEP20)
        wallet.derive_address(0).address
        # '0x9858EfFD232B4033E47d90003D41EC34EcaEda94' for the all-abandon seed
    """

    bip44_coin = Bip44Coins.ETHEREUM

    @property
    def coin_type(self) -> int:
        return 60  # ETH coin type for all EVM chains

    def encode_address(self, public_key_uncompressed: bytes) -> str:
        # keccak256 of pubkey[1:], last 20 bytes
        address = EthAddrEncoder.EncodeKey(public_key_uncompressed)
        return to_checksum_address(address)
