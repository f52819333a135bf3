"""Deposit pipeline services."""

from custody.services.allocator import AddressAllocator
from custody.services.deposit_ledger import DepositService, generate_order_no
from custody.services.deposit_sweeper import SweepEngine, SweepResult

__all__ = [
    "AddressAllocator",
    "DepositService",
    "generate_order_no",
    "SweepEngine",
    "SweepResult",
]
