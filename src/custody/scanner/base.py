"""Base interface for chain scanners.

A scanner turns on-chain token transfers to active deposit addresses into
TransferEvents that are not yet recorded as deposit orders. It never
writes to the ledger; persistence is left to the deposit service.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from custody.chains import Network
from custody.clients.base import ChainClient, TokenTransfer
from custody.ledger.database import SessionScope, get_db
from custody.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


@dataclass
class TransferEvent:
    """A candidate deposit on a known deposit address."""

    user_id: str
    address: str
    network: Network
    tx_hash: str
    amount: Decimal
    block_number: int
    from_address: Optional[str] = None


@dataclass
class ScanResult:
    """Events found by one scan and the cursor to persist afterwards.

    next_cursor is None for scanners that keep no watermark.
    """

    events: list[TransferEvent] = field(default_factory=list)
    next_cursor: Optional[int] = None


@dataclass
class WatchedAddress:
    user_id: str
    address: str


class ChainScanner(ABC):
    """Abstract base class for per-network deposit scanners."""

    def __init__(self, network: Network, client: ChainClient, db: SessionScope = get_db):
        """Initialize scanner.

        Args:
            network: Network to scan
            client: Chain client for that network
            db: Session scope used for read-only lookups
        """
        self.network = network
        self.client = client
        self.db = db

    @abstractmethod
    async def scan(self, cursor: Optional[int] = None) -> ScanResult:
        """Run one scan.

        Args:
            cursor: Last fully scanned block (None on first run)

        Raises:
            UpstreamUnavailable: If the chain cannot be queried
        """
        pass

    async def get_watched_addresses(self) -> dict[str, WatchedAddress]:
        """Active deposit addresses on this network keyed by lowercase address."""
        async with self.db() as session:
            repo = LedgerRepository(session)
            rows = await repo.get_all_active_deposit_addresses(self.network.value)
            return {
                row.address.lower(): WatchedAddress(user_id=row.user_id, address=row.address)
                for row in rows
            }

    async def filter_unrecorded(self, transfers: list[TokenTransfer]) -> list[TokenTransfer]:
        """Drop transfers whose (tx_hash, network) is already an order.

        Duplicates within the batch keep their first occurrence.
        """
        if not transfers:
            return []

        async with self.db() as session:
            repo = LedgerRepository(session)
            recorded = await repo.get_recorded_tx_hashes(
                self.network.value, list({t.tx_hash for t in transfers})
            )

        seen: set[str] = set(recorded)
        fresh = []
        for transfer in transfers:
            if transfer.tx_hash in seen:
                continue
            seen.add(transfer.tx_hash)
            fresh.append(transfer)
        return fresh

    def to_event(
        self, transfer: TokenTransfer, watched: dict[str, WatchedAddress]
    ) -> Optional[TransferEvent]:
        """Attach the owning user to a transfer (None for unknown recipients)."""
        owner = watched.get(transfer.to_address.lower())
        if owner is None or transfer.block_number is None:
            return None
        if transfer.amount <= 0:
            return None

        return TransferEvent(
            user_id=owner.user_id,
            address=owner.address,
            network=self.network,
            tx_hash=transfer.tx_hash,
            amount=transfer.amount,
            block_number=transfer.block_number,
            from_address=transfer.from_address,
        )
