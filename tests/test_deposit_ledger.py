"""Tests for deposit order ingestion, confirmation and crediting.

These tests ensure that:
1. Each on-chain transfer becomes at most one order
2. An order is credited exactly once, at exactly the required confirmations
3. A failed credit leaves no partial state behind
4. Only forward status transitions are possible
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from custody.chains import Network
from custody.exceptions import (
    CustodyError,
    DuplicateEvent,
    InvalidStateTransition,
    LedgerCreditFailure,
    OrderNotFound,
)
from custody.ledger.models import AuditAction, DepositOrder, DerivationCounter, OrderStatus
from custody.ledger.repository import LedgerRepository, utcnow
from custody.notifications.events import DepositEventSink, DepositEventType
from custody.scanner.base import TransferEvent
from custody.services.allocator import AddressAllocator
from custody.services.deposit_ledger import DepositService, generate_order_no


async def make_user(db, keys, user_id: str = "user-1") -> dict[str, str]:
    allocator = AddressAllocator(keys, db=db)
    addresses = await allocator.get_deposit_addresses(user_id)
    return {network: entry["address"] for network, entry in addresses.items()}


async def seed_counter(db, next_index: int) -> None:
    async with db() as session:
        await session.execute(update(DerivationCounter).values(next_index=next_index))


async def get_balance(db, user_id: str) -> Decimal:
    async with db() as session:
        wallet = await LedgerRepository(session).get_wallet(user_id)
        return wallet.balance


async def get_orders(db, status=OrderStatus.CONFIRMING) -> list[DepositOrder]:
    async with db() as session:
        return await LedgerRepository(session).get_orders_by_status(status)


def make_service(clients, db, sink, settings) -> DepositService:
    return DepositService(clients, db=db, sink=sink, settings=settings)


def test_order_no_format():
    order_no = generate_order_no()
    assert order_no.startswith("DEP")
    assert order_no == order_no.upper()
    assert len(order_no) <= 32
    assert generate_order_no() != order_no


class TestDepositIngestion:
    """Tests for turning scanned transfers into orders."""

    @pytest.mark.asyncio
    async def test_worked_example_tron(self, db, keys, clients, sink, settings):
        """Index 7 receives 120.5 USDT in abc123 at block 1000; head 1020 credits it."""
        await seed_counter(db, 7)
        address = (await make_user(db, keys, "user-7"))["TRC20"]
        assert address == keys.derive_address(Network.TRC20, 7)

        tron = clients[Network.TRC20]
        tron.add_transfer("abc123", address, "120.5")
        tron.tx_blocks["abc123"] = 1000
        tron.head_block = 1005

        service = make_service(clients, db, sink, settings)
        assert await service.process_new_deposits() == 1

        orders = await get_orders(db)
        assert len(orders) == 1
        order = orders[0]
        assert order.user_id == "user-7"
        assert order.network == "TRC20"
        assert order.tx_hash == "abc123"
        assert order.block_number == 1000
        assert order.amount == Decimal("120.5")
        assert order.net_amount == Decimal("120.5")
        assert order.fee == Decimal("0")

        tron.head_block = 1020
        assert await service.confirm_pending_deposits() == 1

        assert await get_balance(db, "user-7") == Decimal("120.5")
        async with db() as session:
            repo = LedgerRepository(session)
            completed = await repo.get_order_by_no(order.order_no)
            assert completed.status == OrderStatus.COMPLETED.value
            assert completed.confirmations == 20
            assert completed.completed_at is not None

            row = await repo.get_deposit_address("user-7", "TRC20")
            assert row.total_received == Decimal("120.5")
            assert row.total_transactions == 1

        assert len(sink.of_type(DepositEventType.DEPOSIT_DETECTED)) == 1
        assert len(sink.of_type(DepositEventType.DEPOSIT_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_same_transfer_twice_creates_one_order(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        tron = clients[Network.TRC20]
        tron.add_transfer("tx-1", address, "50", block_number=10)

        service = make_service(clients, db, sink, settings)
        assert await service.process_new_deposits() == 1
        assert await service.process_new_deposits() == 0

        assert len(await get_orders(db)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_rejected(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        event = TransferEvent(
            user_id="user-1",
            address=address,
            network=Network.TRC20,
            tx_hash="tx-dup",
            amount=Decimal("25"),
            block_number=10,
        )
        service = make_service(clients, db, sink, settings)

        await service.create_crypto_deposit_order(event)
        with pytest.raises(DuplicateEvent):
            await service.create_crypto_deposit_order(event)

        assert len(await get_orders(db)) == 1

    @pytest.mark.asyncio
    async def test_order_creation_is_audited(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        service = make_service(clients, db, sink, settings)
        order = await service.create_crypto_deposit_order(
            TransferEvent("user-1", address, Network.TRC20, "tx-a", Decimal("30"), 10)
        )

        async with db() as session:
            logs = await LedgerRepository(session).get_audit_logs(order_id=order.id)
        assert [log.action for log in logs] == [AuditAction.ORDER_CREATED.value]
        assert logs[0].source == "scanner"
        assert logs[0].new_status == "confirming"

    @pytest.mark.asyncio
    async def test_inactive_address_rejected(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        await AddressAllocator(keys, db=db).deactivate_address("user-1", Network.TRC20)

        service = make_service(clients, db, sink, settings)
        with pytest.raises(CustodyError, match="No active TRC20 deposit address"):
            await service.create_crypto_deposit_order(
                TransferEvent("user-1", address, Network.TRC20, "tx-b", Decimal("30"), 10)
            )

    @pytest.mark.asyncio
    async def test_evm_cursor_is_persisted(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["ERC20"]
        eth = clients[Network.ERC20]
        eth.head_block = 100

        service = make_service(clients, db, sink, settings)
        assert await service.process_new_deposits() == 0

        async with db() as session:
            assert await LedgerRepository(session).get_scan_cursor("ERC20") == 100

        eth.add_transfer("0xeth1", address, "75", block_number=101)
        eth.head_block = 105
        assert await service.process_new_deposits() == 1

        async with db() as session:
            assert await LedgerRepository(session).get_scan_cursor("ERC20") == 105

    @pytest.mark.asyncio
    async def test_cursor_advances_past_rejected_event(
        self, db, keys, clients, sink, settings, monkeypatch
    ):
        """An unrecordable transfer is audited for replay; the watermark still moves."""
        address = (await make_user(db, keys))["ERC20"]
        eth = clients[Network.ERC20]
        eth.head_block = 100

        service = make_service(clients, db, sink, settings)
        await service.process_new_deposits()

        async def broken_create_order(self, **kwargs):
            raise RuntimeError("disk I/O error")

        eth.add_transfer("0xeth-bad", address, "75", block_number=102)
        eth.head_block = 110
        with monkeypatch.context() as m:
            m.setattr(LedgerRepository, "create_order", broken_create_order)
            assert await service.process_new_deposits() == 0

        async with db() as session:
            repo = LedgerRepository(session)
            assert await repo.get_scan_cursor("ERC20") == 110
            rejected = await repo.get_audit_logs(action=AuditAction.EVENT_REJECTED)

        assert len(rejected) == 1
        assert rejected[0].amount == Decimal("75")
        assert rejected[0].source == "scanner"
        assert "0xeth-bad" in rejected[0].details
        assert "disk I/O error" in rejected[0].details
        assert await get_orders(db) == []

    @pytest.mark.asyncio
    async def test_failing_network_does_not_block_others(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        clients[Network.ERC20].unavailable = True
        clients[Network.TRC20].add_transfer("tx-ok", address, "12", block_number=7)

        service = make_service(clients, db, sink, settings)
        assert await service.process_new_deposits() == 1

        async with db() as session:
            assert await LedgerRepository(session).get_scan_cursor("ERC20") is None

    @pytest.mark.asyncio
    async def test_sink_failure_keeps_order(self, db, keys, clients, settings):
        class BrokenSink(DepositEventSink):
            async def publish(self, event):
                raise RuntimeError("sink down")

        address = (await make_user(db, keys))["TRC20"]
        clients[Network.TRC20].add_transfer("tx-s", address, "40", block_number=3)

        service = make_service(clients, db, BrokenSink(), settings)
        assert await service.process_new_deposits() == 1
        assert len(await get_orders(db)) == 1


class TestConfirmation:
    """Tests for confirmation tracking and crediting."""

    async def _create_order(self, db, keys, clients, sink, settings, block=1000):
        address = (await make_user(db, keys))["TRC20"]
        clients[Network.TRC20].add_transfer("tx-c", address, "100", block_number=block)
        service = make_service(clients, db, sink, settings)
        await service.process_new_deposits()
        return service

    @pytest.mark.asyncio
    async def test_one_short_stays_confirming(self, db, keys, clients, sink, settings):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1019

        assert await service.confirm_pending_deposits() == 0

        orders = await get_orders(db)
        assert len(orders) == 1
        assert orders[0].confirmations == 19
        assert await get_balance(db, "user-1") == Decimal("0")

    @pytest.mark.asyncio
    async def test_exact_threshold_completes(self, db, keys, clients, sink, settings):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1020

        assert await service.confirm_pending_deposits() == 1
        assert await get_balance(db, "user-1") == Decimal("100")

    @pytest.mark.asyncio
    async def test_head_behind_block_counts_zero(self, db, keys, clients, sink, settings):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 990

        assert await service.confirm_pending_deposits() == 0
        assert (await get_orders(db))[0].confirmations == 0

    @pytest.mark.asyncio
    async def test_repeated_passes_credit_once(self, db, keys, clients, sink, settings):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1100

        assert await service.confirm_pending_deposits() == 1
        assert await service.confirm_pending_deposits() == 0

        order_id = (await get_orders(db, OrderStatus.COMPLETED))[0].id
        assert await service.complete_deposit(order_id) is False
        assert await get_balance(db, "user-1") == Decimal("100")

    @pytest.mark.asyncio
    async def test_concurrent_passes_credit_once(self, file_db, keys, clients, sink, settings):
        """Two overlapping confirmation passes credit the wallet exactly once."""
        service = await self._create_order(file_db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1100

        first, second = await asyncio.gather(
            service.confirm_pending_deposits(),
            service.confirm_pending_deposits(),
        )

        assert first + second == 1
        assert await get_balance(file_db, "user-1") == Decimal("100")

        async with file_db() as session:
            credits = await LedgerRepository(session).get_audit_logs(
                action=AuditAction.BALANCE_CREDITED
            )
        assert len(credits) == 1

    @pytest.mark.asyncio
    async def test_concurrent_complete_calls(self, file_db, keys, clients, sink, settings):
        service = await self._create_order(file_db, keys, clients, sink, settings)
        order_id = (await get_orders(file_db))[0].id

        results = await asyncio.gather(
            service.complete_deposit(order_id),
            service.complete_deposit(order_id),
            return_exceptions=True,
        )

        assert results.count(True) == 1
        for result in results:
            assert result is True or result is False or isinstance(result, LedgerCreditFailure)
        assert await get_balance(file_db, "user-1") == Decimal("100")

    @pytest.mark.asyncio
    async def test_failed_credit_rolls_back(self, db, keys, clients, sink, settings, monkeypatch):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1100

        async def no_wallet(self, user_id, amount):
            return False

        with monkeypatch.context() as m:
            m.setattr(LedgerRepository, "credit_wallet", no_wallet)
            order_id = (await get_orders(db))[0].id
            with pytest.raises(LedgerCreditFailure):
                await service.complete_deposit(order_id)
            # The tracker logs the failure and keeps going
            assert await service.confirm_pending_deposits() == 0

        orders = await get_orders(db)
        assert len(orders) == 1
        assert orders[0].completed_at is None
        async with db() as session:
            repo = LedgerRepository(session)
            assert await repo.get_audit_logs(action=AuditAction.BALANCE_CREDITED) == []
            assert (await repo.get_deposit_address("user-1", "TRC20")).total_transactions == 0

        # Retried on the next cycle once the fault is gone
        assert await service.confirm_pending_deposits() == 1
        assert await get_balance(db, "user-1") == Decimal("100")

    @pytest.mark.asyncio
    async def test_unreachable_network_skipped(self, db, keys, clients, sink, settings):
        service = await self._create_order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1100
        clients[Network.TRC20].unavailable = True

        assert await service.confirm_pending_deposits() == 0
        assert len(await get_orders(db)) == 1

    @pytest.mark.asyncio
    async def test_missing_order(self, db, clients, sink, settings):
        service = make_service(clients, db, sink, settings)
        with pytest.raises(OrderNotFound):
            await service.complete_deposit(999)


class TestOrderTransitions:
    """Tests for manual and timed transitions."""

    async def _order(self, db, keys, clients, sink, settings) -> tuple[DepositService, DepositOrder]:
        address = (await make_user(db, keys))["TRC20"]
        service = make_service(clients, db, sink, settings)
        order = await service.create_crypto_deposit_order(
            TransferEvent("user-1", address, Network.TRC20, "tx-t", Decimal("20"), 10)
        )
        return service, order

    @pytest.mark.asyncio
    async def test_fail_order(self, db, keys, clients, sink, settings):
        service, order = await self._order(db, keys, clients, sink, settings)

        failed = await service.fail_order(order.order_no, "Dropped by reorg")

        assert failed.status == OrderStatus.FAILED.value
        assert failed.status_remark == "Dropped by reorg"
        assert len(sink.of_type(DepositEventType.DEPOSIT_FAILED)) == 1

        # A failed order is never credited
        clients[Network.TRC20].head_block = 1000
        assert await service.confirm_pending_deposits() == 0
        assert await service.complete_deposit(order.id) is False
        assert await get_balance(db, "user-1") == Decimal("0")

    @pytest.mark.asyncio
    async def test_terminal_orders_cannot_move(self, db, keys, clients, sink, settings):
        service, order = await self._order(db, keys, clients, sink, settings)
        clients[Network.TRC20].head_block = 1000
        await service.confirm_pending_deposits()

        with pytest.raises(InvalidStateTransition):
            await service.cancel_order(order.order_no)
        with pytest.raises(InvalidStateTransition):
            await service.fail_order(order.order_no, "too late")

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, db, clients, sink, settings):
        service = make_service(clients, db, sink, settings)
        with pytest.raises(OrderNotFound):
            await service.cancel_order("DEPNOPE")

    @pytest.mark.asyncio
    async def test_expire_pending_orders(self, db, keys, clients, sink, settings):
        settings.order_expiry_hours = 1
        service, order = await self._order(db, keys, clients, sink, settings)
        assert order.expires_at is not None

        assert await service.expire_pending_orders() == 0

        async with db() as session:
            await session.execute(
                update(DepositOrder)
                .where(DepositOrder.id == order.id)
                .values(expires_at=utcnow() - timedelta(minutes=5))
            )

        assert await service.expire_pending_orders() == 1
        expired = await service.get_order(order.order_no)
        assert expired.status == OrderStatus.EXPIRED.value
        assert len(sink.of_type(DepositEventType.DEPOSIT_EXPIRED)) == 1

    @pytest.mark.asyncio
    async def test_get_orders_pagination(self, db, keys, clients, sink, settings):
        address = (await make_user(db, keys))["TRC20"]
        service = make_service(clients, db, sink, settings)
        for i in range(5):
            await service.create_crypto_deposit_order(
                TransferEvent("user-1", address, Network.TRC20, f"tx-{i}", Decimal("10"), i + 1)
            )

        page = await service.get_orders("user-1", page=2, page_size=2)

        assert page["total"] == 5
        assert page["total_pages"] == 3
        assert [o.tx_hash for o in page["items"]] == ["tx-2", "tx-1"]

        completed = await service.get_orders("user-1", status=OrderStatus.COMPLETED)
        assert completed["total"] == 0


class TestAmountPrecision:
    """Balances and aggregates must stay exact for amounts with no binary form."""

    @pytest.mark.asyncio
    async def test_repeated_credits_are_exact(self, db, keys):
        await make_user(db, keys)

        async with db() as session:
            repo = LedgerRepository(session)
            assert await repo.credit_wallet("user-1", Decimal("0.1"))
            assert await repo.credit_wallet("user-1", Decimal("0.2"))
            assert await repo.record_address_receipt("user-1", "TRC20", Decimal("10.1"), utcnow())
            assert await repo.record_address_receipt(
                "user-1", "TRC20", Decimal("0.000000000000000001"), utcnow()
            )

        async with db() as session:
            repo = LedgerRepository(session)
            wallet = await repo.get_wallet("user-1")
            row = await repo.get_deposit_address("user-1", "TRC20")

        assert wallet.balance == Decimal("0.3")
        assert row.total_received == Decimal("10.100000000000000001")
        assert row.total_transactions == 2

    @pytest.mark.asyncio
    async def test_sweep_totals_are_exact(self, db, keys):
        await make_user(db, keys)

        async with db() as session:
            repo = LedgerRepository(session)
            row = await repo.get_deposit_address("user-1", "ERC20")
            assert await repo.record_address_sweep(row.id, Decimal("0.1"))
            assert await repo.record_address_sweep(row.id, Decimal("0.2"))

        async with db() as session:
            count, total = await LedgerRepository(session).get_sweep_totals("ERC20")

        assert count == 1
        assert total == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_large_credit_keeps_all_digits(self, db, keys):
        await make_user(db, keys)

        async with db() as session:
            repo = LedgerRepository(session)
            await repo.credit_wallet("user-1", Decimal("123456789012.123456789012345678"))
            await repo.credit_wallet("user-1", Decimal("0.000000000000000002"))

        assert await get_balance(db, "user-1") == Decimal("123456789012.12345678901234568")

    @pytest.mark.asyncio
    async def test_unknown_wallet_not_credited(self, db):
        async with db() as session:
            assert not await LedgerRepository(session).credit_wallet("nobody", Decimal("1"))
