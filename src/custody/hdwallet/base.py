"""HD Wallet base interface.

Each network family derives deposit addresses from the master BIP39 seed
using a BIP44 path m/44'/coin_type'/0'/0/index.

Security: private keys are derived on demand and handed out only as
SecretKey instances. Nothing here caches a child private key.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from bip_utils import Bip44, Bip44Changes, Bip44Coins

from custody.chains import Network
from custody.hdwallet.keys import SecretKey


@dataclass
class AddressInfo:
    """Information about a derived address."""

    address: str
    network: Network
    derivation_path: str
    index: int


class HDWalletProvider(ABC):
    """Abstract base class for seed-backed HD wallet providers.

    The account-level external chain context (m/44'/coin'/0'/0) is built once
    from the seed; each call derives the child at the requested index.

    Usage:
        wallet = EVMHDWallet(seed_bytes, Network.ERC20)
        info = wallet.derive_address(index=7)
    """

    bip44_coin: Bip44Coins

    def __init__(self, seed_bytes: bytes, network: Network):
        """Initialize HD wallet from BIP39 seed bytes.

        Args:
            seed_bytes: 64-byte BIP39 seed
            network: Network the addresses are derived for
        """
        self.network = network
        self._chain_ctx = (
            Bip44.FromSeed(seed_bytes, self.bip44_coin)
            .Purpose()
            .Coin()
            .Account(0)
            .Change(Bip44Changes.CHAIN_EXT)
        )

    @property
    @abstractmethod
    def coin_type(self) -> int:
        """BIP44 coin type number."""
        pass

    @property
    def purpose(self) -> int:
        return 44

    @abstractmethod
    def encode_address(self, public_key_uncompressed: bytes) -> str:
        """Encode a 65-byte uncompressed public key as a chain address."""
        pass

    def get_derivation_path(self, index: int) -> str:
        """Get the full derivation path for an index.

        Format: m/purpose'/coin_type'/0'/0/index
        """
        return f"m/{self.purpose}'/{self.coin_type}'/0'/0/{index}"

    def derive_address(self, index: int) -> AddressInfo:
        """Derive the receiving address at the given index.

        Args:
            index: Non-negative child index

        Returns:
            AddressInfo with the encoded address and derivation path
        """
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")

        child = self._chain_ctx.AddressIndex(index)
        pubkey = child.PublicKey().RawUncompressed().ToBytes()

        return AddressInfo(
            address=self.encode_address(pubkey),
            network=self.network,
            derivation_path=self.get_derivation_path(index),
            index=index,
        )

    def derive_private_key(self, index: int) -> SecretKey:
        """Derive the signing key for the address at the given index."""
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")

        child = self._chain_ctx.AddressIndex(index)
        return SecretKey(
            child.PrivateKey().Raw().ToBytes(),
            label=f"{self.network.value}:{self.get_derivation_path(index)}",
        )
