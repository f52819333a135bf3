"""Utility modules for custody."""

from custody.utils.locks import CycleGuard, get_cycle_lock

__all__ = ["CycleGuard", "get_cycle_lock"]
