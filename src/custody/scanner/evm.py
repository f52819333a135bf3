"""EVM Transfer-log scanner (ERC20, BEP20).

Each scan covers the block range (cursor, head] and returns head as the
next cursor, whether or not anything was found.
"""

import logging
from typing import Optional

from custody.scanner.base import ChainScanner, ScanResult

logger = logging.getLogger(__name__)


class EVMTransferScanner(ChainScanner):
    """Watermark-based scanner over ERC-20 Transfer logs."""

    async def scan(self, cursor: Optional[int] = None) -> ScanResult:
        head = await self.client.head()

        if cursor is None:
            # First run: start at the current head, no historical backfill
            logger.info(f"{self.network.value}: no scan cursor, starting at block {head}")
            return ScanResult(events=[], next_cursor=head)

        if cursor >= head:
            return ScanResult(events=[], next_cursor=cursor)

        watched = await self.get_watched_addresses()
        if not watched:
            logger.debug(f"No active {self.network.value} addresses to scan")
            return ScanResult(events=[], next_cursor=head)

        transfers = await self.client.query_transfers(
            [w.address for w in watched.values()], from_block=cursor + 1, to_block=head
        )
        fresh = await self.filter_unrecorded(transfers)

        events = []
        for transfer in fresh:
            event = self.to_event(transfer, watched)
            if event:
                events.append(event)

        if events:
            logger.info(
                f"{self.network.value}: {len(events)} new transfers in blocks {cursor + 1}-{head}"
            )
        return ScanResult(events=events, next_cursor=head)
