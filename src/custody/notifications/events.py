"""Deposit lifecycle event delivery.

Events are published after the database transaction that produced them has
committed. A sink failure is logged and never rolls back ledger state.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class DepositEventType(str, Enum):
    """Kinds of events emitted by the deposit pipeline."""

    DEPOSIT_DETECTED = "deposit_detected"
    DEPOSIT_COMPLETED = "deposit_completed"
    DEPOSIT_FAILED = "deposit_failed"
    DEPOSIT_CANCELLED = "deposit_cancelled"
    DEPOSIT_EXPIRED = "deposit_expired"
    SWEEP_COMPLETED = "sweep_completed"
    SWEEP_FAILED = "sweep_failed"


@dataclass
class DepositEvent:
    """A lifecycle event for downstream consumers."""

    event_type: DepositEventType
    user_id: Optional[str]
    network: str
    amount: Decimal
    order_no: Optional[str] = None
    tx_hash: Optional[str] = None
    address: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DepositEventSink(ABC):
    """Receiver of deposit lifecycle events."""

    @abstractmethod
    async def publish(self, event: DepositEvent) -> None:
        """Deliver one event."""
        pass


class LoggingEventSink(DepositEventSink):
    """Default sink: writes each event to the log."""

    async def publish(self, event: DepositEvent) -> None:
        amount_str = f"{event.amount:,.8f}".rstrip("0").rstrip(".")
        reference = event.order_no or event.tx_hash or event.address or "-"
        logger.info(
            f"[{event.event_type.value}] user={event.user_id} "
            f"{amount_str} USDT on {event.network} ({reference})"
        )


class MemoryEventSink(DepositEventSink):
    """Collects events in memory (tests and dry runs)."""

    def __init__(self):
        self.events: list[DepositEvent] = []

    async def publish(self, event: DepositEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: DepositEventType) -> list[DepositEvent]:
        return [e for e in self.events if e.event_type == event_type]


async def publish_safely(sink: Optional[DepositEventSink], event: DepositEvent) -> bool:
    """Publish an event, logging instead of raising on sink failure.

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        await sink.publish(event)
        return True
    except Exception as e:
        logger.error(f"Event sink failed for {event.event_type.value} ({event.order_no}): {e}")
        return False
