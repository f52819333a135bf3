"""Deposit event notifications."""

from custody.notifications.events import (
    DepositEvent,
    DepositEventSink,
    DepositEventType,
    LoggingEventSink,
    MemoryEventSink,
    publish_safely,
)

__all__ = [
    "DepositEvent",
    "DepositEventSink",
    "DepositEventType",
    "LoggingEventSink",
    "MemoryEventSink",
    "publish_safely",
]
