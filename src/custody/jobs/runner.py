"""Background job runner for the deposit pipeline.

Runs four independent cycles: scan for new deposits, track confirmations,
sweep deposit addresses and expire stale orders. A cycle whose previous run
is still in progress skips its tick.

Usage:
    python -m custody.jobs.runner              # run all cycles forever
    python -m custody.jobs.runner --once scan  # run one cycle and exit

Environment variables:
    See custody.config.Settings (WALLET_SEED_PHRASE, ETH_RPC_URL, ...)
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Awaitable, Callable, Optional

from custody.clients.factory import get_clients
from custody.config import Settings, get_settings
from custody.exceptions import ConfigurationError
from custody.hdwallet.service import KeyDerivationService
from custody.ledger.database import close_db, init_db
from custody.notifications.events import DepositEventSink, LoggingEventSink
from custody.services.deposit_ledger import DepositService
from custody.services.deposit_sweeper import SweepEngine
from custody.utils.locks import CycleGuard

logger = logging.getLogger(__name__)

CYCLES = ("scan", "confirm", "sweep", "expire")


class DepositJobRunner:
    """Schedules the deposit pipeline cycles."""

    def __init__(
        self,
        deposits: DepositService,
        sweeper: Optional[SweepEngine] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize runner.

        Args:
            deposits: Deposit service driving scan, confirm and expire
            sweeper: Sweep engine (sweep cycle is a no-op without one)
            settings: Settings instance (defaults to get_settings())
        """
        self.deposits = deposits
        self.sweeper = sweeper
        self.settings = settings or get_settings()
        self._shutdown_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, sink: Optional[DepositEventSink] = None
    ) -> "DepositJobRunner":
        """Build the runner and its services from configuration.

        Raises:
            ConfigurationError: If the seed or an enabled network is misconfigured
        """
        settings = settings or get_settings()
        settings.validate_runtime()

        sink = sink or LoggingEventSink()
        keys = KeyDerivationService(settings=settings)
        clients = get_clients(settings.networks)

        return cls(
            deposits=DepositService(clients, sink=sink, settings=settings),
            sweeper=SweepEngine(keys, clients, sink=sink, settings=settings),
            settings=settings,
        )

    def _cycle(self, name: str) -> Callable[[], Awaitable[Any]]:
        if name == "scan":
            return self.deposits.process_new_deposits
        if name == "confirm":
            return self.deposits.confirm_pending_deposits
        if name == "expire":
            return self.deposits.expire_pending_orders
        if name == "sweep":
            return self._sweep
        raise ValueError(f"Unknown cycle: {name}")

    async def _sweep(self) -> dict:
        if self.sweeper is None:
            return {}
        return await self.sweeper.sweep_all()

    def interval(self, name: str) -> int:
        return {
            "scan": self.settings.scan_interval,
            "confirm": self.settings.confirm_interval,
            "sweep": self.settings.sweep_interval,
            "expire": self.settings.expire_interval,
        }[name]

    async def run_cycle(self, name: str) -> Optional[Any]:
        """Run one cycle unless the same cycle is already running.

        Returns:
            The cycle's result, or None if the tick was skipped
        """
        cycle = self._cycle(name)
        async with CycleGuard(name) as guard:
            if not guard.acquired:
                logger.info(f"Previous {name} cycle still running, skipping tick")
                return None
            return await cycle()

    async def _loop(self, name: str) -> None:
        interval = self.interval(name)
        logger.info(f"Starting {name} cycle (interval: {interval}s)")

        while not self._shutdown_event.is_set():
            try:
                await self.run_cycle(name)
            except Exception as e:
                logger.error(f"{name} cycle error: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        """Run all cycles until shutdown() is called."""
        tasks = [asyncio.create_task(self._loop(name)) for name in CYCLES]
        await self._shutdown_event.wait()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job runner stopped")

    def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def format_result(name: str, result: Any) -> str:
    if result is None:
        return f"Previous {name} cycle still running, skipped"
    if name == "sweep":
        swept = sum(1 for rs in result.values() for r in rs if r.success)
        failed = sum(1 for rs in result.values() for r in rs if not r.success and not r.skipped)
        return f"Swept {swept} address(es), {failed} failed"
    labels = {"scan": "Created", "confirm": "Completed", "expire": "Expired"}
    return f"{labels[name]} {result} deposit order(s)"


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the USDT deposit pipeline")
    parser.add_argument(
        "--once",
        choices=CYCLES,
        help="Run a single cycle and exit",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        runner = DepositJobRunner.from_settings(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    await init_db()
    try:
        if args.once:
            result = await runner.run_cycle(args.once)
            print(format_result(args.once, result))
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, runner.shutdown)
            logger.info(f"Networks: {', '.join(n.value for n in settings.networks)}")
            await runner.run()
    finally:
        await close_db()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
