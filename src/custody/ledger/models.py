"""SQLAlchemy models for the deposit ledger."""

from datetime import datetime
from decimal import Decimal, localcontext
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


AMOUNT_QUANTUM = Decimal("1e-18")


class Amount(TypeDecorator):
    """Exact Numeric(36, 18) money column.

    SQLite has no decimal storage and keeps NUMERIC values as REAL, so on
    SQLite the value is stored as a fixed-point string instead. Arithmetic
    on amounts is done in Python Decimal (see LedgerRepository).
    """

    impl = Numeric(36, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        with localcontext() as ctx:
            ctx.prec = 40
            value = Decimal(str(value)).quantize(AMOUNT_QUANTUM)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


class OrderStatus(str, Enum):
    """Status of a deposit order.

    PENDING is reserved for orders created before a transfer is seen.
    Crypto deposits detected on chain start in CONFIRMING.
    """

    PENDING = "pending"
    CONFIRMING = "confirming"    # Seen on chain, waiting for confirmations
    COMPLETED = "completed"      # Credited to the wallet
    FAILED = "failed"            # Rejected (manual or reorg)
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        """Only forward transitions out of a non-terminal state are allowed."""
        return target in _ORDER_TRANSITIONS[self]


_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.CONFIRMING,
            OrderStatus.COMPLETED,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.CONFIRMING: frozenset(
        {
            OrderStatus.COMPLETED,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


class AuditAction(str, Enum):
    """Deposit audit log action."""

    ORDER_CREATED = "ORDER_CREATED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_FAILED = "ORDER_FAILED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    BALANCE_CREDITED = "BALANCE_CREDITED"
    EVENT_REJECTED = "EVENT_REJECTED"  # scanned transfer that could not be recorded
    SWEEP_COMPLETED = "SWEEP_COMPLETED"
    SWEEP_FAILED = "SWEEP_FAILED"


class Wallet(Base):
    """Internal custodial balance for one external user.

    derivation_index is the HD child index shared by all of the user's
    deposit addresses.
    """

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(Amount(), default=Decimal("0"), nullable=False)
    frozen_balance: Mapped[Decimal] = mapped_column(
        Amount(), default=Decimal("0"), nullable=False
    )
    derivation_index: Mapped[int] = mapped_column(unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    deposit_addresses: Mapped[list["DepositAddress"]] = relationship(
        back_populates="wallet", lazy="selectin"
    )

    @property
    def available(self) -> Decimal:
        """Get available (unfrozen) balance."""
        return self.balance - self.frozen_balance


class DepositAddress(Base):
    """Deposit address for one user on one network.

    Rows are never deleted, only deactivated.
    """

    __tablename__ = "deposit_addresses"
    __table_args__ = (
        UniqueConstraint("user_id", "network", name="uq_deposit_addresses_user_network"),
        Index("ix_deposit_addresses_address_network", "address", "network"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("wallets.user_id"), nullable=False)
    network: Mapped[str] = mapped_column(String(10), nullable=False)  # ERC20, BEP20, TRC20
    address: Mapped[str] = mapped_column(String(64), nullable=False)

    # HD wallet derivation info
    derivation_index: Mapped[int] = mapped_column(nullable=False)
    derivation_path: Mapped[str] = mapped_column(String(100), nullable=False)

    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    # Aggregates
    total_received: Mapped[Decimal] = mapped_column(Amount(), default=Decimal("0"))
    total_transactions: Mapped[int] = mapped_column(default=0)
    last_received_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_swept: Mapped[Decimal] = mapped_column(Amount(), default=Decimal("0"))
    last_swept_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    wallet: Mapped["Wallet"] = relationship(back_populates="deposit_addresses")


class DepositOrder(Base):
    """Record of one inbound token transfer.

    (tx_hash, network) is the idempotency key. Rows are append-only.
    """

    __tablename__ = "deposit_orders"
    __table_args__ = (
        UniqueConstraint("tx_hash", "network", name="uq_deposit_orders_tx_network"),
        Index("ix_deposit_orders_status_network", "status", "network"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("wallets.user_id"), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(10), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmations: Mapped[int] = mapped_column(default=0)

    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Amount(), default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)  # amount - fee
    currency: Mapped[str] = mapped_column(String(10), default="USDT")

    status: Mapped[OrderStatus] = mapped_column(
        String(20), default=OrderStatus.CONFIRMING.value, nullable=False
    )
    status_remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DerivationCounter(Base):
    """Monotonic HD index allocator.

    A single row keyed "global" hands out each index at most once.
    """

    __tablename__ = "derivation_counters"

    id: Mapped[str] = mapped_column(String(20), primary_key=True)
    next_index: Mapped[int] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ScanCursor(Base):
    """Last fully scanned block per network (EVM watermark)."""

    __tablename__ = "scan_cursors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DepositAuditLog(Base):
    """Append-only trail of order transitions, credits and sweeps."""

    __tablename__ = "deposit_audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("deposit_orders.id"), nullable=True, index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    action: Mapped[AuditAction] = mapped_column(String(30), nullable=False)
    network: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Amount(), nullable=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="system")  # system, scanner, admin
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
