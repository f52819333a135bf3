"""Deposit order lifecycle: detection, confirmation tracking and crediting.

Orders for on-chain transfers start in CONFIRMING. Once a transfer has the
network's required confirmations the order moves to COMPLETED and the
user's wallet is credited in the same database transaction. The status
change is a compare-and-set on CONFIRMING, so a transfer is credited at
most once no matter how many confirmation passes race on it.
"""

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from custody.chains import Network, parse_network, required_confirmations
from custody.clients.base import ChainClient
from custody.config import Settings, get_settings
from custody.exceptions import (
    CustodyError,
    DuplicateEvent,
    InvalidStateTransition,
    LedgerCreditFailure,
    OrderNotFound,
    UpstreamUnavailable,
)
from custody.ledger.database import SessionScope, get_db
from custody.ledger.models import AuditAction, DepositOrder, OrderStatus
from custody.ledger.repository import LedgerRepository, utcnow
from custody.notifications.events import (
    DepositEvent,
    DepositEventSink,
    DepositEventType,
    LoggingEventSink,
    publish_safely,
)
from custody.scanner.base import ChainScanner, TransferEvent
from custody.scanner.factory import create_scanners

logger = logging.getLogger(__name__)

BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Audit action and event type for each manual/terminal transition
_TRANSITION_EVENTS = {
    OrderStatus.FAILED: (AuditAction.ORDER_FAILED, DepositEventType.DEPOSIT_FAILED),
    OrderStatus.CANCELLED: (AuditAction.ORDER_CANCELLED, DepositEventType.DEPOSIT_CANCELLED),
    OrderStatus.EXPIRED: (AuditAction.ORDER_EXPIRED, DepositEventType.DEPOSIT_EXPIRED),
}


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_order_no() -> str:
    """DEP + base36 millisecond timestamp + 8 random hex characters."""
    timestamp = to_base36(int(time.time() * 1000))
    random_part = uuid.uuid4().hex[:8].upper()
    return f"DEP{timestamp}{random_part}"


class DepositService:
    """Creates, confirms and credits deposit orders.

    Usage:
        service = DepositService(clients)
        created = await service.process_new_deposits()
        completed = await service.confirm_pending_deposits()
    """

    def __init__(
        self,
        clients: dict[Network, ChainClient],
        db: SessionScope = get_db,
        sink: Optional[DepositEventSink] = None,
        settings: Optional[Settings] = None,
        scanners: Optional[dict[Network, ChainScanner]] = None,
    ):
        """Initialize service.

        Args:
            clients: Chain client per enabled network
            db: Session scope for ledger access
            sink: Receiver of lifecycle events (defaults to logging)
            settings: Settings instance (defaults to get_settings())
            scanners: Scanner per network (built from clients when omitted)
        """
        self.clients = clients
        self.db = db
        self.sink = sink if sink is not None else LoggingEventSink()
        self.settings = settings or get_settings()
        self.scanners = scanners if scanners is not None else create_scanners(clients, db)

    # ======================
    # Detection
    # ======================

    async def process_new_deposits(self) -> int:
        """Scan every network and record one order per new transfer.

        Networks are scanned concurrently; a failing network is skipped for
        this cycle without affecting the others. The cursor advances even
        when an event cannot be recorded; such events get an EVENT_REJECTED
        audit row carrying everything needed to replay them.

        Returns:
            Number of orders created
        """
        networks = list(self.scanners)
        if not networks:
            return 0

        async with self.db() as session:
            repo = LedgerRepository(session)
            cursors = {n: await repo.get_scan_cursor(n.value) for n in networks}

        results = await asyncio.gather(
            *(self.scanners[n].scan(cursors[n]) for n in networks),
            return_exceptions=True,
        )

        created = 0
        for network, result in zip(networks, results):
            if isinstance(result, UpstreamUnavailable):
                logger.warning(f"Skipping {network.value} this cycle: {result}")
                continue
            if isinstance(result, BaseException):
                logger.error(f"{network.value} scan failed: {result!r}")
                continue

            for event in result.events:
                try:
                    await self.create_crypto_deposit_order(event)
                    created += 1
                except DuplicateEvent:
                    logger.debug(f"Transfer {event.tx_hash} on {network.value} already recorded")
                except Exception as e:
                    logger.error(f"Failed to create deposit order for {event.tx_hash}: {e}")
                    await self._record_rejected_event(event, e)

            # The watermark always advances; rejected events stay in the audit log
            if result.next_cursor is not None:
                async with self.db() as session:
                    await LedgerRepository(session).set_scan_cursor(
                        network.value, result.next_cursor
                    )

        if created:
            logger.info(f"Created {created} deposit order(s)")
        return created

    async def create_crypto_deposit_order(self, event: TransferEvent) -> DepositOrder:
        """Record a detected transfer as a CONFIRMING order.

        Raises:
            DuplicateEvent: If (tx_hash, network) is already recorded
            CustodyError: If the user has no active address on the network
        """
        network = event.network.value
        expires_at = None
        if self.settings.order_expiry_hours:
            expires_at = utcnow() + timedelta(hours=self.settings.order_expiry_hours)

        try:
            async with self.db() as session:
                repo = LedgerRepository(session)

                if await repo.get_order_by_tx(event.tx_hash, network):
                    raise DuplicateEvent(network, event.tx_hash)

                address = await repo.get_deposit_address(event.user_id, network)
                if address is None or not address.is_active:
                    raise CustodyError(
                        f"No active {network} deposit address for user {event.user_id}"
                    )

                order = await repo.create_order(
                    order_no=generate_order_no(),
                    user_id=event.user_id,
                    network=network,
                    tx_hash=event.tx_hash,
                    from_address=event.from_address,
                    to_address=address.address,
                    block_number=event.block_number,
                    amount=event.amount,
                    expires_at=expires_at,
                )
                await repo.add_audit_log(
                    AuditAction.ORDER_CREATED,
                    order_id=order.id,
                    user_id=order.user_id,
                    network=network,
                    amount=order.amount,
                    new_status=OrderStatus.CONFIRMING.value,
                    source="scanner",
                    details={"tx_hash": event.tx_hash, "block_number": event.block_number},
                )
        except IntegrityError:
            raise DuplicateEvent(network, event.tx_hash) from None

        logger.info(
            f"Created deposit order {order.order_no}: {order.amount} USDT "
            f"for user {order.user_id} on {network} ({event.tx_hash})"
        )
        await publish_safely(
            self.sink,
            DepositEvent(
                event_type=DepositEventType.DEPOSIT_DETECTED,
                user_id=order.user_id,
                network=network,
                amount=order.amount,
                order_no=order.order_no,
                tx_hash=order.tx_hash,
                message=f"0/{required_confirmations(network)} confirmations",
            ),
        )
        return order

    async def _record_rejected_event(self, event: TransferEvent, error: Exception) -> None:
        """Keep a replayable record of a transfer that could not become an order."""
        try:
            async with self.db() as session:
                await LedgerRepository(session).add_audit_log(
                    AuditAction.EVENT_REJECTED,
                    user_id=event.user_id,
                    network=event.network.value,
                    amount=event.amount,
                    source="scanner",
                    details={
                        "tx_hash": event.tx_hash,
                        "address": event.address,
                        "from_address": event.from_address,
                        "block_number": event.block_number,
                        "error": str(error),
                    },
                )
        except Exception as e:
            logger.error(
                f"Could not audit rejected transfer {event.tx_hash} "
                f"({event.amount} USDT to {event.address} at block {event.block_number}): {e}"
            )

    # ======================
    # Confirmation
    # ======================

    async def confirm_pending_deposits(self) -> int:
        """Advance confirmation counts and complete orders that reached the threshold.

        The chain head is fetched once per network per cycle. A network
        whose head cannot be read is skipped; a failing order is skipped
        and retried next cycle.

        Returns:
            Number of orders completed
        """
        async with self.db() as session:
            orders = await LedgerRepository(session).get_orders_by_status(OrderStatus.CONFIRMING)

        heads: dict[str, Optional[int]] = {}
        completed = 0

        for order in orders:
            head = await self._get_head(order.network, heads)
            if head is None:
                continue

            try:
                confirmations = max(0, head - order.block_number)
                if confirmations != order.confirmations:
                    async with self.db() as session:
                        await LedgerRepository(session).set_order_confirmations(
                            order.id, confirmations
                        )

                if confirmations < required_confirmations(order.network):
                    continue

                if await self.complete_deposit(order.id):
                    completed += 1
            except Exception as e:
                logger.error(f"Failed to confirm deposit {order.order_no}: {e}")

        if completed:
            logger.info(f"Completed {completed} deposit order(s)")
        return completed

    async def _get_head(self, network: str, heads: dict[str, Optional[int]]) -> Optional[int]:
        if network in heads:
            return heads[network]

        client = self.clients.get(parse_network(network))
        if client is None:
            logger.debug(f"No client for {network}, leaving its orders untouched")
            heads[network] = None
            return None

        try:
            heads[network] = await client.head()
        except UpstreamUnavailable as e:
            logger.warning(f"Skipping {network} confirmations this cycle: {e}")
            heads[network] = None
        return heads[network]

    async def complete_deposit(self, order_id: int) -> bool:
        """Complete an order and credit its net amount, atomically.

        Returns:
            True if this call performed the credit, False if the order was
            no longer CONFIRMING (another pass won)

        Raises:
            OrderNotFound: If the order does not exist
            LedgerCreditFailure: If anything failed; nothing was changed
        """
        order_no = str(order_id)
        try:
            async with self.db() as session:
                repo = LedgerRepository(session)
                order = await repo.get_order(order_id)
                if order is None:
                    raise OrderNotFound(f"Deposit order {order_id} not found")
                order_no = order.order_no

                now = utcnow()
                won = await repo.transition_order(
                    order_id,
                    (OrderStatus.CONFIRMING,),
                    OrderStatus.COMPLETED,
                    confirmed_at=now,
                    completed_at=now,
                )
                if not won:
                    logger.debug(f"Order {order_no} is no longer confirming, skipping credit")
                    return False

                if not await repo.credit_wallet(order.user_id, order.net_amount):
                    raise LedgerCreditFailure(order_no, f"wallet for user {order.user_id} not found")

                await repo.record_address_receipt(order.user_id, order.network, order.net_amount, now)
                await repo.add_audit_log(
                    AuditAction.ORDER_COMPLETED,
                    order_id=order.id,
                    user_id=order.user_id,
                    network=order.network,
                    amount=order.amount,
                    previous_status=OrderStatus.CONFIRMING.value,
                    new_status=OrderStatus.COMPLETED.value,
                    details={"tx_hash": order.tx_hash},
                )
                await repo.add_audit_log(
                    AuditAction.BALANCE_CREDITED,
                    order_id=order.id,
                    user_id=order.user_id,
                    network=order.network,
                    amount=order.net_amount,
                )
        except (OrderNotFound, LedgerCreditFailure):
            raise
        except Exception as e:
            raise LedgerCreditFailure(order_no, str(e)) from e

        logger.info(f"Confirmed deposit {order.order_no}: {order.net_amount} USDT to user {order.user_id}")
        await publish_safely(
            self.sink,
            DepositEvent(
                event_type=DepositEventType.DEPOSIT_COMPLETED,
                user_id=order.user_id,
                network=order.network,
                amount=order.net_amount,
                order_no=order.order_no,
                tx_hash=order.tx_hash,
            ),
        )
        return True

    # ======================
    # Manual and timed transitions
    # ======================

    async def fail_order(self, order_no: str, reason: str, source: str = "admin") -> DepositOrder:
        """Mark a non-terminal order FAILED (e.g. after a reorg dropped its transfer)."""
        return await self._finish_order(order_no, OrderStatus.FAILED, reason, source)

    async def cancel_order(
        self, order_no: str, reason: Optional[str] = None, source: str = "admin"
    ) -> DepositOrder:
        """Cancel a non-terminal order."""
        return await self._finish_order(
            order_no, OrderStatus.CANCELLED, reason or "Cancelled", source
        )

    async def _finish_order(
        self, order_no: str, target: OrderStatus, remark: str, source: str
    ) -> DepositOrder:
        action, event_type = _TRANSITION_EVENTS[target]

        async with self.db() as session:
            repo = LedgerRepository(session)
            order = await repo.get_order_by_no(order_no)
            if order is None:
                raise OrderNotFound(f"Deposit order {order_no} not found")

            current = OrderStatus(order.status)
            if not current.can_transition_to(target):
                raise InvalidStateTransition(order_no, current.value, target.value)

            if not await repo.transition_order(order.id, (current,), target, remark=remark):
                raise InvalidStateTransition(order_no, current.value, target.value)

            await repo.add_audit_log(
                action,
                order_id=order.id,
                user_id=order.user_id,
                network=order.network,
                amount=order.amount,
                previous_status=current.value,
                new_status=target.value,
                source=source,
                details={"remark": remark},
            )

        logger.info(f"Order {order_no}: {current.value} -> {target.value} ({remark})")
        await publish_safely(
            self.sink,
            DepositEvent(
                event_type=event_type,
                user_id=order.user_id,
                network=order.network,
                amount=order.amount,
                order_no=order_no,
                tx_hash=order.tx_hash,
                message=remark,
            ),
        )
        return await self.get_order(order_no)

    async def expire_pending_orders(self) -> int:
        """Expire non-terminal orders whose expires_at has passed.

        Returns:
            Number of orders expired
        """
        now = utcnow()
        expired: list[DepositOrder] = []

        async with self.db() as session:
            repo = LedgerRepository(session)
            for order_id in await repo.get_expirable_order_ids(now):
                order = await repo.get_order(order_id)
                previous = order.status
                won = await repo.transition_order(
                    order_id,
                    (OrderStatus.PENDING, OrderStatus.CONFIRMING),
                    OrderStatus.EXPIRED,
                    remark="Order expired",
                )
                if not won:
                    continue
                await repo.add_audit_log(
                    AuditAction.ORDER_EXPIRED,
                    order_id=order_id,
                    user_id=order.user_id,
                    network=order.network,
                    amount=order.amount,
                    previous_status=previous,
                    new_status=OrderStatus.EXPIRED.value,
                )
                expired.append(order)

        for order in expired:
            await publish_safely(
                self.sink,
                DepositEvent(
                    event_type=DepositEventType.DEPOSIT_EXPIRED,
                    user_id=order.user_id,
                    network=order.network,
                    amount=order.amount,
                    order_no=order.order_no,
                    tx_hash=order.tx_hash,
                ),
            )

        if expired:
            logger.info(f"Expired {len(expired)} deposit order(s)")
        return len(expired)

    # ======================
    # Queries
    # ======================

    async def get_order(self, order_no: str) -> Optional[DepositOrder]:
        async with self.db() as session:
            return await LedgerRepository(session).get_order_by_no(order_no)

    async def get_orders(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict:
        """Get a page of a user's deposit orders, newest first."""
        page = max(1, page)
        page_size = max(1, min(page_size, 100))

        async with self.db() as session:
            items, total = await LedgerRepository(session).get_user_orders(
                user_id, status=status, limit=page_size, offset=(page - 1) * page_size
            )

        return {
            "items": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }
