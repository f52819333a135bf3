"""Key derivation service.

Maps (seed, network, index) to deposit addresses and, for the sweep path
only, to signing keys. Every derivation is a pure function of its inputs.
"""

import logging
from typing import Optional

from bip_utils import Bip39SeedGenerator

from custody.chains import ChainFamily, Network, get_network_spec, parse_network
from custody.config import Settings, get_settings
from custody.exceptions import ConfigurationError
from custody.hdwallet.base import AddressInfo, HDWalletProvider
from custody.hdwallet.eth import EVMHDWallet
from custody.hdwallet.keys import SecretKey
from custody.hdwallet.tron import TronHDWallet

logger = logging.getLogger(__name__)

# Wallet class per client family
WALLET_CLASSES: dict[ChainFamily, type[HDWalletProvider]] = {
    ChainFamily.EVM: EVMHDWallet,
    ChainFamily.TRON: TronHDWallet,
}

# Order of entries returned by derive_all_addresses
ALL_NETWORKS_ORDER = (Network.TRC20, Network.ERC20, Network.BEP20)


class KeyDerivationService:
    """Deterministic address and key derivation from one BIP39 seed.

    Usage:
        service = KeyDerivationService()
        for info in service.derive_all_addresses(7):
            print(info.network, info.address)
    """

    def __init__(self, seed_phrase: Optional[str] = None, settings: Optional[Settings] = None):
        """Initialize from a seed phrase.

        Args:
            seed_phrase: BIP39 mnemonic. Read from settings when omitted.
            settings: Settings instance (defaults to get_settings())

        Raises:
            ConfigurationError: If no valid seed phrase is available
        """
        if seed_phrase is None:
            seed_phrase = (settings or get_settings()).get_seed_phrase()

        if not seed_phrase or len(seed_phrase.split()) < 12:
            raise ConfigurationError("A BIP39 seed phrase of at least 12 words is required")

        try:
            seed_bytes = Bip39SeedGenerator(seed_phrase.strip()).Generate()
        except Exception as e:
            # bip_utils messages can echo words back; keep only the type
            raise ConfigurationError(f"Invalid BIP39 seed phrase ({type(e).__name__})") from None

        self._wallets: dict[Network, HDWalletProvider] = {}
        for network in Network:
            spec = get_network_spec(network)
            self._wallets[network] = WALLET_CLASSES[spec.family](seed_bytes, network)

        logger.info(f"HD key derivation initialized for {len(self._wallets)} networks")

    def _wallet(self, network: "str | Network") -> HDWalletProvider:
        return self._wallets[parse_network(network)]

    def get_derivation_path(self, network: "str | Network", index: int) -> str:
        return self._wallet(network).get_derivation_path(index)

    def derive_address(self, network: "str | Network", index: int) -> str:
        """Derive the deposit address for a network at an index."""
        return self._wallet(network).derive_address(index).address

    def derive_all_addresses(self, index: int) -> list[AddressInfo]:
        """Derive the TRC20, ERC20 and BEP20 addresses for one index.

        ERC20 and BEP20 entries carry the same address.
        """
        return [self._wallet(network).derive_address(index) for network in ALL_NETWORKS_ORDER]

    def derive_private_key(self, network: "str | Network", index: int) -> SecretKey:
        """Derive the signing key for a deposit address.

        Privileged: only the sweep path calls this. The caller owns the
        returned key and must clear it (use it as a context manager).
        """
        key = self._wallet(network).derive_private_key(index)
        logger.debug(f"Derived signing key for {key.label}")
        return key

    def validate_address(self, address: str, network: "str | Network", index: int) -> bool:
        """Check that an address matches the derivation at the given index.

        EVM addresses compare case-insensitively (EIP-55 casing is only a
        checksum). Base58 TRON addresses must match exactly.
        """
        try:
            expected = self.derive_address(network, index)
        except ValueError:
            return False
        address = address.strip()
        if get_network_spec(network).is_evm:
            return expected.lower() == address.lower()
        return expected == address
