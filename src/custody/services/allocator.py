"""Deposit address allocation.

Each user gets one wallet bound to one HD derivation index and one deposit
address per network, all derived from that index.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from custody.chains import Network, get_network_spec, parse_network
from custody.config import get_settings
from custody.hdwallet.service import KeyDerivationService
from custody.ledger.database import SessionScope, get_db
from custody.ledger.models import DepositAddress, Wallet
from custody.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


class AddressAllocator:
    """Hands out wallets and deposit addresses.

    Index allocation goes through the atomic derivation counter, so two
    users can never be given the same index.
    """

    def __init__(
        self,
        keys: KeyDerivationService,
        db: SessionScope = get_db,
        start_index: Optional[int] = None,
    ):
        """Initialize allocator.

        Args:
            keys: Derivation service for the master seed
            db: Session scope for ledger access
            start_index: First index handed out if the derivation counter row
                does not exist yet. Ignored once the counter is seeded
                (init_db seeds it from DERIVATION_START_INDEX).
        """
        self.keys = keys
        self.db = db
        self.start_index = (
            start_index if start_index is not None else get_settings().derivation_start_index
        )

    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        async with self.db() as session:
            return await LedgerRepository(session).get_wallet(user_id)

    async def get_or_create_wallet(self, user_id: str) -> Wallet:
        """Return the user's wallet, creating it with its addresses if needed.

        An existing wallet is returned unchanged.
        """
        wallet = await self.get_wallet(user_id)
        if wallet is not None:
            return wallet
        return await self._create_wallet(user_id)

    async def _create_wallet(self, user_id: str) -> Wallet:
        """Allocate an index and persist the wallet and its addresses atomically.

        A concurrent creator for the same user loses on the unique user_id
        constraint; its transaction rolls back and the winner's wallet is
        returned.
        """
        try:
            async with self.db() as session:
                repo = LedgerRepository(session)
                index = await repo.allocate_derivation_index(self.start_index)
                await repo.create_wallet(user_id, index)

                for info in self.keys.derive_all_addresses(index):
                    await repo.create_deposit_address(
                        user_id=user_id,
                        network=info.network.value,
                        address=info.address,
                        derivation_index=index,
                        derivation_path=info.derivation_path,
                    )
        except IntegrityError:
            logger.info(f"Wallet for user {user_id} was created concurrently")
            wallet = await self.get_wallet(user_id)
            if wallet is None:
                raise
            return wallet

        logger.info(f"Created wallet for user {user_id} at derivation index {index}")
        # Reload so the address relationship is populated
        return await self.get_wallet(user_id)

    async def get_deposit_addresses(self, user_id: str) -> dict[str, dict]:
        """Active deposit addresses for a user keyed by network.

        Creates the wallet on first use. Each entry carries the network's
        minimum deposit, indicative network fee and confirmation count.
        """
        wallet = await self.get_or_create_wallet(user_id)

        async with self.db() as session:
            rows = await LedgerRepository(session).get_user_deposit_addresses(wallet.user_id)

        addresses = {}
        for row in rows:
            spec = get_network_spec(row.network)
            addresses[row.network] = {
                "network": row.network,
                "address": row.address,
                "derivation_path": row.derivation_path,
                "min_deposit": spec.min_deposit,
                "network_fee": spec.network_fee,
                "required_confirmations": spec.required_confirmations,
            }
        return addresses

    async def get_deposit_address(
        self, user_id: str, network: "str | Network"
    ) -> Optional[DepositAddress]:
        async with self.db() as session:
            return await LedgerRepository(session).get_deposit_address(
                user_id, parse_network(network).value
            )

    async def deactivate_address(self, user_id: str, network: "str | Network") -> bool:
        """Stop scanning and sweeping an address. Rows are never deleted."""
        network = parse_network(network)
        async with self.db() as session:
            updated = await LedgerRepository(session).set_address_active(
                user_id, network.value, False
            )
        if updated:
            logger.info(f"Deactivated {network.value} deposit address of user {user_id}")
        return updated
