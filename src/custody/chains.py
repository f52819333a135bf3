"""Supported deposit networks and their static parameters.

Three USDT networks are supported:
- ERC20 (Ethereum) and BEP20 (BSC): EVM family, BIP44 coin type 60, one shared address
- TRC20 (TRON): coin type 195, base58check addresses starting with T
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class Network(str, Enum):
    """Deposit network identifier."""

    ERC20 = "ERC20"
    BEP20 = "BEP20"
    TRC20 = "TRC20"


class ChainFamily(str, Enum):
    """Client implementation family, selected once per network."""

    EVM = "evm"
    TRON = "tron"


@dataclass(frozen=True)
class NetworkSpec:
    """Static parameters for a deposit network."""

    network: Network
    name: str
    family: ChainFamily
    coin_type: int  # BIP44 coin type (SLIP-44)
    required_confirmations: int
    native_symbol: str
    token_decimals: int = 6  # USDT contract decimals; EVM clients also read decimals() on chain
    min_deposit: Decimal = Decimal("10")
    network_fee: Decimal = Decimal("0")

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM


NETWORKS: dict[Network, NetworkSpec] = {
    Network.ERC20: NetworkSpec(
        network=Network.ERC20,
        name="Ethereum",
        family=ChainFamily.EVM,
        coin_type=60,
        required_confirmations=12,
        native_symbol="ETH",
        min_deposit=Decimal("50"),
        network_fee=Decimal("15"),
    ),
    Network.BEP20: NetworkSpec(
        network=Network.BEP20,
        name="BNB Smart Chain",
        family=ChainFamily.EVM,
        coin_type=60,  # Same as ETH
        required_confirmations=15,
        native_symbol="BNB",
        token_decimals=18,
        min_deposit=Decimal("10"),
        network_fee=Decimal("0.5"),
    ),
    Network.TRC20: NetworkSpec(
        network=Network.TRC20,
        name="TRON",
        family=ChainFamily.TRON,
        coin_type=195,
        required_confirmations=20,
        native_symbol="TRX",
        min_deposit=Decimal("10"),
        network_fee=Decimal("1"),
    ),
}


def parse_network(value: "str | Network") -> Network:
    """Parse a network identifier (case-insensitive).

    Raises:
        ValueError: If the network is not supported
    """
    if isinstance(value, Network):
        return value
    try:
        return Network(value.strip().upper())
    except ValueError:
        raise ValueError(
            f"Unsupported network: {value}. Expected one of {[n.value for n in Network]}"
        )


def get_network_spec(network: "str | Network") -> NetworkSpec:
    """Get static parameters for a network."""
    return NETWORKS[parse_network(network)]


def required_confirmations(network: "str | Network") -> int:
    """Confirmations needed before a deposit on this network is credited."""
    return get_network_spec(network).required_confirmations

