"""TRC20 account-history scanner.

TronGrid serves a bounded per-address history, so every cycle re-reads the
latest transfers of each active address and relies on the recorded
(tx_hash, network) set for idempotency. There is no watermark.
"""

import logging
from typing import Optional

from custody.exceptions import UpstreamUnavailable
from custody.scanner.base import ChainScanner, ScanResult

logger = logging.getLogger(__name__)


class TronHistoryScanner(ChainScanner):
    """Per-address history scanner for TRC20 USDT."""

    async def scan(self, cursor: Optional[int] = None) -> ScanResult:
        watched = await self.get_watched_addresses()
        if not watched:
            logger.debug(f"No active {self.network.value} addresses to scan")
            return ScanResult(events=[], next_cursor=None)

        transfers = await self.client.query_transfers([w.address for w in watched.values()])
        fresh = await self.filter_unrecorded(transfers)

        events = []
        for transfer in fresh:
            if transfer.block_number is None:
                try:
                    transfer.block_number = await self.client.block_number_of(transfer.tx_hash)
                except UpstreamUnavailable as e:
                    logger.warning(f"Could not resolve block for {transfer.tx_hash}: {e}")
                    continue

            if transfer.block_number is None:
                # Not yet in a solid block; seen again next cycle
                logger.debug(f"Transfer {transfer.tx_hash} has no block number yet")
                continue

            event = self.to_event(transfer, watched)
            if event:
                events.append(event)

        if events:
            logger.info(f"{self.network.value}: {len(events)} new transfers")
        return ScanResult(events=events, next_cursor=None)
