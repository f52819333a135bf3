"""Repository for deposit ledger operations."""

import json
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from custody.ledger.models import (
    AuditAction,
    DepositAddress,
    DepositAuditLog,
    DepositOrder,
    DerivationCounter,
    OrderStatus,
    ScanCursor,
    Wallet,
)

COUNTER_KEY = "global"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Repository for all deposit-ledger database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Wallet operations
    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        """Get wallet by external user ID."""
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_wallet(self, user_id: str, derivation_index: int) -> Wallet:
        """Create a wallet bound to a derivation index.

        Raises:
            IntegrityError: If the user already has a wallet (flush time)
        """
        wallet = Wallet(
            user_id=user_id,
            balance=Decimal("0"),
            frozen_balance=Decimal("0"),
            derivation_index=derivation_index,
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def credit_wallet(self, user_id: str, amount: Decimal) -> bool:
        """Increment a wallet balance by an exact Decimal amount.

        Returns:
            True if the wallet exists and was credited
        """
        return await self._add_amounts(Wallet, [Wallet.user_id == user_id], {"balance": amount})

    async def _add_amounts(
        self, model, conditions: list, amounts: dict[str, Decimal], **values: Any
    ) -> bool:
        """Add to Amount columns of a single row, computing the sums in Decimal.

        The UPDATE only matches while the columns still hold the values
        that were read, so a concurrent writer causes a re-read rather than
        a lost update.

        Returns:
            False if no row matches the conditions
        """
        columns = [getattr(model, name) for name in amounts]
        while True:
            row = (await self.session.execute(select(*columns).where(*conditions))).first()
            if row is None:
                return False

            unchanged = []
            new_values = dict(values)
            with localcontext() as ctx:
                ctx.prec = 40
                for name, column, current in zip(amounts, columns, row):
                    unchanged.append(column.is_(None) if current is None else column == current)
                    new_values[name] = (current or Decimal("0")) + Decimal(amounts[name])

            stmt = (
                update(model)
                .where(*conditions, *unchanged)
                .values(**new_values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                return True

    # Derivation counter
    async def allocate_derivation_index(self, start_index: int = 1) -> int:
        """Atomically hand out the next HD derivation index.

        Each index is returned at most once, even to concurrent callers.
        The increment is part of the caller's transaction, so an index is
        only consumed if that transaction commits.
        """
        index = await self._increment_counter()
        if index is not None:
            return index

        await self._ensure_counter(start_index)
        index = await self._increment_counter()
        if index is None:
            raise RuntimeError("Derivation counter row is missing")
        return index

    async def _increment_counter(self) -> Optional[int]:
        dialect = self.session.bind.dialect if self.session.bind is not None else None

        if dialect is not None and dialect.update_returning:
            stmt = (
                update(DerivationCounter)
                .where(DerivationCounter.id == COUNTER_KEY)
                .values(next_index=DerivationCounter.next_index + 1)
                .returning(DerivationCounter.next_index)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            new_value = result.scalar_one_or_none()
            return None if new_value is None else new_value - 1

        # Compare-and-set loop for backends without UPDATE ... RETURNING
        while True:
            current = await self.session.scalar(
                select(DerivationCounter.next_index).where(DerivationCounter.id == COUNTER_KEY)
            )
            if current is None:
                return None
            stmt = (
                update(DerivationCounter)
                .where(
                    DerivationCounter.id == COUNTER_KEY,
                    DerivationCounter.next_index == current,
                )
                .values(next_index=current + 1)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                return current

    async def _ensure_counter(self, start_index: int) -> None:
        try:
            async with self.session.begin_nested():
                self.session.add(DerivationCounter(id=COUNTER_KEY, next_index=start_index))
        except IntegrityError:
            # Created concurrently
            pass

    async def peek_next_index(self) -> Optional[int]:
        return await self.session.scalar(
            select(DerivationCounter.next_index).where(DerivationCounter.id == COUNTER_KEY)
        )

    # Deposit address operations
    async def create_deposit_address(
        self,
        user_id: str,
        network: str,
        address: str,
        derivation_index: int,
        derivation_path: str,
    ) -> DepositAddress:
        """Create a deposit address row."""
        addr = DepositAddress(
            user_id=user_id,
            network=network,
            address=address,
            derivation_index=derivation_index,
            derivation_path=derivation_path,
            is_active=True,
            total_received=Decimal("0"),
            total_transactions=0,
            total_swept=Decimal("0"),
        )
        self.session.add(addr)
        await self.session.flush()
        return addr

    async def get_deposit_address(self, user_id: str, network: str) -> Optional[DepositAddress]:
        """Get deposit address for user/network."""
        stmt = select(DepositAddress).where(
            DepositAddress.user_id == user_id, DepositAddress.network == network
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_deposit_addresses(
        self, user_id: str, active_only: bool = True
    ) -> list[DepositAddress]:
        stmt = select(DepositAddress).where(DepositAddress.user_id == user_id)
        if active_only:
            stmt = stmt.where(DepositAddress.is_active.is_(True))
        result = await self.session.execute(stmt.order_by(DepositAddress.network))
        return list(result.scalars().all())

    async def get_all_active_deposit_addresses(
        self, network: Optional[str] = None
    ) -> list[DepositAddress]:
        """Get all active deposit addresses, optionally filtered by network.

        Used by the scanners and the sweeper.
        """
        stmt = select(DepositAddress).where(DepositAddress.is_active.is_(True))
        if network:
            stmt = stmt.where(DepositAddress.network == network)
        result = await self.session.execute(stmt.order_by(DepositAddress.id))
        return list(result.scalars().all())

    async def set_address_active(self, user_id: str, network: str, is_active: bool) -> bool:
        stmt = (
            update(DepositAddress)
            .where(DepositAddress.user_id == user_id, DepositAddress.network == network)
            .values(is_active=is_active)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_address_receipt(
        self, user_id: str, network: str, amount: Decimal, received_at: datetime
    ) -> bool:
        """Add a credited deposit to the address aggregates."""
        return await self._add_amounts(
            DepositAddress,
            [DepositAddress.user_id == user_id, DepositAddress.network == network],
            {"total_received": amount},
            total_transactions=DepositAddress.total_transactions + 1,
            last_received_at=received_at,
        )

    async def record_address_sweep(self, address_id: int, amount: Decimal) -> bool:
        return await self._add_amounts(
            DepositAddress,
            [DepositAddress.id == address_id],
            {"total_swept": amount},
            last_swept_at=utcnow(),
        )

    # Deposit order operations
    async def create_order(
        self,
        order_no: str,
        user_id: str,
        network: str,
        tx_hash: str,
        to_address: str,
        block_number: int,
        amount: Decimal,
        fee: Decimal = Decimal("0"),
        from_address: Optional[str] = None,
        status: OrderStatus = OrderStatus.CONFIRMING,
        expires_at: Optional[datetime] = None,
    ) -> DepositOrder:
        """Create a new deposit order.

        Raises:
            IntegrityError: If (tx_hash, network) is already recorded
        """
        order = DepositOrder(
            order_no=order_no,
            user_id=user_id,
            network=network,
            tx_hash=tx_hash,
            from_address=from_address,
            to_address=to_address,
            block_number=block_number,
            confirmations=0,
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            currency="USDT",
            status=status.value,
            expires_at=expires_at,
        )
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order(self, order_id: int) -> Optional[DepositOrder]:
        return await self.session.get(DepositOrder, order_id)

    async def get_order_by_no(self, order_no: str) -> Optional[DepositOrder]:
        stmt = select(DepositOrder).where(DepositOrder.order_no == order_no)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_by_tx(self, tx_hash: str, network: str) -> Optional[DepositOrder]:
        """Get order by transaction hash (idempotent check)."""
        stmt = select(DepositOrder).where(
            DepositOrder.tx_hash == tx_hash, DepositOrder.network == network
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_recorded_tx_hashes(self, network: str, tx_hashes: list[str]) -> set[str]:
        """Return the subset of tx_hashes already recorded on a network."""
        if not tx_hashes:
            return set()
        stmt = select(DepositOrder.tx_hash).where(
            DepositOrder.network == network, DepositOrder.tx_hash.in_(tx_hashes)
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def get_orders_by_status(
        self, status: OrderStatus, network: Optional[str] = None
    ) -> list[DepositOrder]:
        stmt = select(DepositOrder).where(DepositOrder.status == status.value)
        if network:
            stmt = stmt.where(DepositOrder.network == network)
        result = await self.session.execute(stmt.order_by(DepositOrder.id))
        return list(result.scalars().all())

    async def get_user_orders(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[DepositOrder], int]:
        """Get a page of a user's orders and the total count."""
        conditions = [DepositOrder.user_id == user_id]
        if status is not None:
            conditions.append(DepositOrder.status == status.value)

        total = await self.session.scalar(
            select(func.count()).select_from(DepositOrder).where(*conditions)
        )
        stmt = (
            select(DepositOrder)
            .where(*conditions)
            .order_by(DepositOrder.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total or 0

    async def set_order_confirmations(self, order_id: int, confirmations: int) -> None:
        stmt = (
            update(DepositOrder)
            .where(DepositOrder.id == order_id)
            .values(confirmations=confirmations)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def transition_order(
        self,
        order_id: int,
        from_statuses: tuple[OrderStatus, ...],
        to_status: OrderStatus,
        remark: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """Conditionally move an order to a new status.

        The WHERE clause on the current status makes the transition a
        compare-and-set: of two concurrent callers exactly one sees a row.

        Returns:
            True if this call performed the transition
        """
        if remark is not None:
            values["status_remark"] = remark

        stmt = (
            update(DepositOrder)
            .where(
                DepositOrder.id == order_id,
                DepositOrder.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_expirable_order_ids(self, now: datetime) -> list[int]:
        stmt = select(DepositOrder.id).where(
            DepositOrder.status.in_([OrderStatus.PENDING.value, OrderStatus.CONFIRMING.value]),
            DepositOrder.expires_at.is_not(None),
            DepositOrder.expires_at < now,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Scan cursor operations
    async def get_scan_cursor(self, network: str) -> Optional[int]:
        """Get the last fully scanned block for a network."""
        return await self.session.scalar(
            select(ScanCursor.last_block).where(ScanCursor.network == network)
        )

    async def set_scan_cursor(self, network: str, last_block: int) -> None:
        """Persist the watermark for a network."""
        stmt = select(ScanCursor).where(ScanCursor.network == network)
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()

        if cursor is None:
            self.session.add(ScanCursor(network=network, last_block=last_block))
        else:
            cursor.last_block = last_block
        await self.session.flush()

    # Audit log operations
    async def add_audit_log(
        self,
        action: AuditAction,
        order_id: Optional[int] = None,
        user_id: Optional[str] = None,
        network: Optional[str] = None,
        amount: Optional[Decimal] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        source: str = "system",
        details: Optional[dict] = None,
    ) -> DepositAuditLog:
        """Add an audit log entry."""
        audit = DepositAuditLog(
            order_id=order_id,
            user_id=user_id,
            action=action.value,
            network=network,
            amount=amount,
            previous_status=previous_status,
            new_status=new_status,
            source=source,
            details=json.dumps(details, default=str) if details else None,
        )
        self.session.add(audit)
        await self.session.flush()
        return audit

    async def get_audit_logs(
        self, order_id: Optional[int] = None, action: Optional[AuditAction] = None
    ) -> list[DepositAuditLog]:
        stmt = select(DepositAuditLog)
        if order_id is not None:
            stmt = stmt.where(DepositAuditLog.order_id == order_id)
        if action is not None:
            stmt = stmt.where(DepositAuditLog.action == action.value)
        result = await self.session.execute(stmt.order_by(DepositAuditLog.id))
        return list(result.scalars().all())

    # Statistics
    async def get_sweep_totals(self, network: Optional[str] = None) -> tuple[int, Decimal]:
        """Count active addresses and sum what has been swept from them."""
        # Summed in Decimal; SQL SUM over SQLite amounts would go through REAL
        stmt = select(DepositAddress.total_swept).where(DepositAddress.is_active.is_(True))
        if network:
            stmt = stmt.where(DepositAddress.network == network)
        swept = list((await self.session.execute(stmt)).scalars().all())
        return len(swept), sum((s or Decimal("0") for s in swept), Decimal("0"))
