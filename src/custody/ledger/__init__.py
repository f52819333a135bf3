"""Ledger module for wallets, deposit addresses and deposit orders."""

from custody.ledger.database import get_db, init_db
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
from custody.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "Wallet",
    "DepositAddress",
    "DepositOrder",
    "DerivationCounter",
    "ScanCursor",
    "DepositAuditLog",
    # Enums
    "OrderStatus",
    "AuditAction",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
]
