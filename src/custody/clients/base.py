"""Chain client capability interface.

One client per network, selected once by chain family. Scanners, the
confirmation tracker and the sweeper only talk to chains through this
interface, so tests can swap in an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from custody.chains import Network
from custody.hdwallet.keys import SecretKey


@dataclass
class TokenTransfer:
    """An inbound token transfer seen on chain."""

    tx_hash: str
    to_address: str
    amount: Decimal
    from_address: Optional[str] = None
    block_number: Optional[int] = None  # None until resolved (TRON history)


@dataclass
class SignedTransfer:
    """A signed transaction ready for broadcast."""

    network: Network
    tx_hash: str
    payload: Any  # EVM: 0x raw hex; TRON: signed transaction dict

    def __repr__(self) -> str:
        return f"SignedTransfer({self.network.value}, {self.tx_hash})"


class ChainClient(ABC):
    """Abstract base class for per-network chain access.

    Every method raises UpstreamUnavailable when the node or API cannot be
    reached or answers with an error.
    """

    def __init__(
        self,
        network: Network,
        base_url: str,
        token_contract: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            network: Network served by this client
            base_url: JSON-RPC URL (EVM) or TronGrid base URL (TRON)
            token_contract: USDT contract address
            timeout: Per-call HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.network = network
        self.base_url = base_url.rstrip("/")
        self.token_contract = token_contract
        self.timeout = timeout
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    async def head(self) -> int:
        """Get the current block height."""
        pass

    @abstractmethod
    async def query_transfers(
        self,
        addresses: list[str],
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> list[TokenTransfer]:
        """Get inbound token transfers to any of the addresses.

        Block bounds are inclusive and only honoured by log-based clients.
        """
        pass

    @abstractmethod
    async def block_number_of(self, tx_hash: str) -> Optional[int]:
        """Get the block a transaction was included in (None if unknown yet)."""
        pass

    @abstractmethod
    async def balance_of(self, address: str) -> Decimal:
        """Get the token balance of an address in whole tokens."""
        pass

    @abstractmethod
    async def native_balance(self, address: str) -> int:
        """Get the native coin balance in base units (wei / sun)."""
        pass

    @abstractmethod
    async def fee_price(self) -> int:
        """Get the current fee price (wei per gas / sun per energy)."""
        pass

    @abstractmethod
    def required_fee_funds(self, fee_price: int) -> int:
        """Native balance a sweep transfer needs at the given fee price."""
        pass

    @abstractmethod
    async def build_and_sign_transfer(
        self,
        key: SecretKey,
        from_address: str,
        to_address: str,
        amount: Decimal,
        fee_price: int,
    ) -> SignedTransfer:
        """Build and sign a full token transfer.

        Raises:
            SigningFailure: If building or signing fails (no key material in message)
        """
        pass

    @abstractmethod
    async def broadcast(self, signed: SignedTransfer) -> str:
        """Broadcast a signed transfer and return its transaction hash.

        Raises:
            BroadcastRejected: If the node refuses the transaction
        """
        pass
