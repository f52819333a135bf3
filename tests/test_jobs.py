"""Tests for cycle guards, the job runner and event delivery."""

import asyncio
from decimal import Decimal

import pytest

from custody.chains import Network
from custody.jobs.runner import DepositJobRunner, format_result
from custody.notifications.events import (
    DepositEvent,
    DepositEventSink,
    DepositEventType,
    LoggingEventSink,
    publish_safely,
)
from custody.services.allocator import AddressAllocator
from custody.services.deposit_ledger import DepositService
from custody.services.deposit_sweeper import SweepEngine, SweepResult
from custody.utils.locks import CycleGuard, is_cycle_running


class TestCycleGuard:
    """Tests for the non-blocking per-cycle guard."""

    @pytest.mark.asyncio
    async def test_second_entry_is_skipped(self):
        async with CycleGuard("scan") as outer:
            assert outer.acquired
            assert is_cycle_running("scan")
            async with CycleGuard("scan") as inner:
                assert not inner.acquired
        assert not is_cycle_running("scan")

    @pytest.mark.asyncio
    async def test_cycles_are_independent(self):
        async with CycleGuard("scan") as scan:
            async with CycleGuard("sweep") as sweep:
                assert scan.acquired and sweep.acquired

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        with pytest.raises(RuntimeError):
            async with CycleGuard("confirm"):
                raise RuntimeError("boom")
        assert not is_cycle_running("confirm")


class TestDepositJobRunner:
    """Tests for cycle scheduling."""

    def _runner(self, db, keys, clients, sink, settings) -> DepositJobRunner:
        return DepositJobRunner(
            deposits=DepositService(clients, db=db, sink=sink, settings=settings),
            sweeper=SweepEngine(keys, clients, db=db, sink=sink, settings=settings),
            settings=settings,
        )

    @pytest.mark.asyncio
    async def test_scan_then_confirm(self, db, keys, clients, sink, settings):
        addresses = await AddressAllocator(keys, db=db, start_index=1).get_deposit_addresses("u1")
        tron = clients[Network.TRC20]
        tron.add_transfer("tx-r", addresses["TRC20"]["address"], "33", block_number=10)
        tron.head_block = 30

        runner = self._runner(db, keys, clients, sink, settings)

        assert await runner.run_cycle("scan") == 1
        assert await runner.run_cycle("confirm") == 1
        assert await runner.run_cycle("expire") == 0
        assert len(sink.of_type(DepositEventType.DEPOSIT_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, db, keys, clients, sink, settings):
        runner = self._runner(db, keys, clients, sink, settings)
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow_sweep():
            calls.append(1)
            started.set()
            await release.wait()
            return {}

        runner._sweep = slow_sweep

        first = asyncio.create_task(runner.run_cycle("sweep"))
        await started.wait()
        assert await runner.run_cycle("sweep") is None
        release.set()
        assert await first == {}
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_unknown_cycle(self, db, keys, clients, sink, settings):
        runner = self._runner(db, keys, clients, sink, settings)
        with pytest.raises(ValueError):
            await runner.run_cycle("withdraw")

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(self, file_db, keys, clients, sink, settings):
        runner = self._runner(file_db, keys, clients, sink, settings)

        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.05)
        runner.shutdown()
        await asyncio.wait_for(task, timeout=5)

    def test_intervals_from_settings(self, settings):
        settings.scan_interval = 5
        runner = DepositJobRunner(deposits=None, settings=settings)
        assert runner.interval("scan") == 5
        assert runner.interval("sweep") == 3600

    def test_format_result(self):
        results = {
            "TRC20": [
                SweepResult("T1", "TRC20", Decimal("10"), "0x1", success=True),
                SweepResult("T2", "TRC20", error="rejected"),
                SweepResult("T3", "TRC20", error="fee", skipped=True),
            ]
        }
        assert format_result("sweep", results) == "Swept 1 address(es), 1 failed"
        assert format_result("confirm", 2) == "Completed 2 deposit order(s)"


class TestEventSinks:
    """Tests for event delivery."""

    @pytest.mark.asyncio
    async def test_logging_sink(self, caplog):
        event = DepositEvent(
            event_type=DepositEventType.DEPOSIT_COMPLETED,
            user_id="u1",
            network="TRC20",
            amount=Decimal("120.5"),
            order_no="DEP1",
        )
        with caplog.at_level("INFO"):
            assert await publish_safely(LoggingEventSink(), event)
        assert "deposit_completed" in caplog.text
        assert "120.5 USDT on TRC20" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_sink_is_contained(self):
        class Broken(DepositEventSink):
            async def publish(self, event):
                raise ConnectionError("webhook down")

        event = DepositEvent(DepositEventType.SWEEP_FAILED, None, "ERC20", Decimal("1"))
        assert await publish_safely(Broken(), event) is False
        assert await publish_safely(None, event) is False
