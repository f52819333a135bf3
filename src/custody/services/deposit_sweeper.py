"""Deposit sweeper - moves collected USDT from deposit addresses to hot wallets."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from custody.chains import Network, parse_network
from custody.clients.base import ChainClient
from custody.config import Settings, get_settings
from custody.exceptions import (
    ConfigurationError,
    FeeCeilingExceeded,
    InsufficientBalance,
    UpstreamUnavailable,
)
from custody.hdwallet.service import KeyDerivationService
from custody.ledger.database import SessionScope, get_db
from custody.ledger.models import AuditAction, DepositAddress
from custody.ledger.repository import LedgerRepository
from custody.notifications.events import (
    DepositEvent,
    DepositEventSink,
    DepositEventType,
    LoggingEventSink,
    publish_safely,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of sweeping one deposit address."""

    address: str
    network: str
    amount: Decimal = Decimal("0")
    tx_hash: Optional[str] = None
    success: bool = False
    error: Optional[str] = None
    skipped: bool = False  # benign skip (below minimum, fee ceiling, no gas)


class SweepEngine:
    """Sweeps token balances from deposit addresses into per-network hot wallets.

    Every address is swept independently: a failure on one address is
    recorded in its SweepResult and never stops the others.

    Usage:
        engine = SweepEngine(keys, clients)
        results = await engine.sweep_all()
    """

    def __init__(
        self,
        keys: KeyDerivationService,
        clients: dict[Network, ChainClient],
        db: SessionScope = get_db,
        sink: Optional[DepositEventSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.keys = keys
        self.clients = clients
        self.db = db
        self.sink = sink if sink is not None else LoggingEventSink()
        self.settings = settings or get_settings()

    def is_enabled(self, network: "str | Network") -> bool:
        """Sweeping needs a client, a token contract and a hot wallet."""
        network = parse_network(network)
        return (
            network in self.clients
            and bool(self.settings.get_token_contract(network))
            and bool(self.settings.get_hot_wallet(network))
        )

    async def get_sweep_candidates(self, network: "str | Network") -> list[tuple[DepositAddress, Decimal]]:
        """Active addresses whose on-chain token balance reaches the sweep minimum.

        Returns:
            List of (deposit address, balance) pairs
        """
        network = parse_network(network)
        client = self.clients[network]
        minimum = self.settings.get_sweep_minimum(network)

        async with self.db() as session:
            addresses = await LedgerRepository(session).get_all_active_deposit_addresses(
                network.value
            )

        candidates = []
        for address in addresses:
            try:
                balance = await client.balance_of(address.address)
            except UpstreamUnavailable as e:
                logger.warning(f"Could not read balance of {address.address}: {e}")
                continue
            if balance >= minimum:
                candidates.append((address, balance))
        return candidates

    async def sweep_address(self, deposit_address: DepositAddress) -> SweepResult:
        """Sweep the full token balance of one address to the hot wallet.

        Never raises; the outcome is reported in the returned SweepResult.
        """
        network = parse_network(deposit_address.network)
        address = deposit_address.address
        result = SweepResult(address=address, network=network.value)

        try:
            if not self.is_enabled(network):
                raise ConfigurationError(f"Sweeping is not configured for {network.value}")
            client = self.clients[network]
            hot_wallet = self.settings.get_hot_wallet(network)

            # Balance may have changed since the candidate scan
            amount = await client.balance_of(address)
            result.amount = amount
            minimum = self.settings.get_sweep_minimum(network)
            if amount < minimum:
                raise InsufficientBalance(f"{amount} USDT at {address} is below minimum {minimum}")

            fee_price = await client.fee_price()
            ceiling = self.settings.get_fee_ceiling(network)
            if fee_price > ceiling:
                raise FeeCeilingExceeded(network.value, fee_price, ceiling)

            needed = client.required_fee_funds(fee_price)
            if needed:
                native = await client.native_balance(address)
                if native < needed:
                    raise InsufficientBalance(
                        f"{address} holds {native} native units, needs {needed} for fees"
                    )

            with self.keys.derive_private_key(network, deposit_address.derivation_index) as key:
                signed = await client.build_and_sign_transfer(
                    key, address, hot_wallet, amount, fee_price
                )
            result.tx_hash = await client.broadcast(signed)
            result.success = True

        except (InsufficientBalance, FeeCeilingExceeded) as e:
            result.skipped = True
            result.error = str(e)
            logger.info(f"Skipping sweep of {address} on {network.value}: {e}")
            return result
        except Exception as e:
            result.error = str(e)
            logger.error(f"Sweep failed for {address} on {network.value}: {e}")
            await self._record_sweep(deposit_address, result)
            return result

        logger.info(f"Swept {result.amount} USDT from {address} on {network.value}: {result.tx_hash}")
        await self._record_sweep(deposit_address, result)
        return result

    async def _record_sweep(self, deposit_address: DepositAddress, result: SweepResult) -> None:
        """Write sweep aggregates, the audit row and the event.

        The transfer is already broadcast when this runs, so a ledger error
        is logged but does not turn a sent sweep into a failed one.
        """
        action = AuditAction.SWEEP_COMPLETED if result.success else AuditAction.SWEEP_FAILED
        try:
            async with self.db() as session:
                repo = LedgerRepository(session)
                if result.success:
                    await repo.record_address_sweep(deposit_address.id, result.amount)
                await repo.add_audit_log(
                    action,
                    user_id=deposit_address.user_id,
                    network=result.network,
                    amount=result.amount,
                    source="sweeper",
                    details={
                        "address": result.address,
                        "tx_hash": result.tx_hash,
                        "error": result.error,
                    },
                )
        except Exception as e:
            logger.error(f"Failed to record sweep of {result.address} ({result.tx_hash}): {e}")

        await publish_safely(
            self.sink,
            DepositEvent(
                event_type=(
                    DepositEventType.SWEEP_COMPLETED
                    if result.success
                    else DepositEventType.SWEEP_FAILED
                ),
                user_id=deposit_address.user_id,
                network=result.network,
                amount=result.amount,
                tx_hash=result.tx_hash,
                address=result.address,
                message=result.error,
            ),
        )

    async def sweep_network(self, network: "str | Network") -> list[SweepResult]:
        """Sweep every candidate address on one network."""
        network = parse_network(network)
        if not self.is_enabled(network):
            logger.debug(f"Sweeping disabled for {network.value}")
            return []

        candidates = await self.get_sweep_candidates(network)
        if not candidates:
            logger.debug(f"No {network.value} addresses to sweep")
            return []

        logger.info(f"Found {len(candidates)} {network.value} address(es) to sweep")

        results = []
        for i, (address, _) in enumerate(candidates):
            if i and self.settings.sweep_delay_seconds > 0:
                await asyncio.sleep(self.settings.sweep_delay_seconds)
            results.append(await self.sweep_address(address))
        return results

    async def sweep_all(self) -> dict[str, list[SweepResult]]:
        """Sweep all enabled networks.

        Returns:
            Dict with results: {network: [SweepResult, ...]}
        """
        results = {}
        for network in self.clients:
            try:
                network_results = await self.sweep_network(network)
            except Exception as e:
                logger.error(f"Sweep of {network.value} failed: {e}")
                continue
            if network_results:
                results[network.value] = network_results

        swept = sum(1 for rs in results.values() for r in rs if r.success)
        if swept:
            logger.info(f"Swept {swept} deposit address(es)")
        return results

    async def get_sweep_stats(self) -> dict[str, dict]:
        """Per-network totals: active addresses, pending sweeps and swept amount."""
        stats = {}
        for network in self.clients:
            async with self.db() as session:
                count, total_swept = await LedgerRepository(session).get_sweep_totals(
                    network.value
                )

            entry = {
                "total_addresses": count,
                "needs_sweep": 0,
                "pending_amount": Decimal("0"),
                "total_swept": total_swept,
            }
            if self.is_enabled(network):
                candidates = await self.get_sweep_candidates(network)
                entry["needs_sweep"] = len(candidates)
                entry["pending_amount"] = sum((b for _, b in candidates), Decimal("0"))
            stats[network.value] = entry
        return stats
