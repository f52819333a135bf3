"""Error taxonomy for the deposit pipeline.

Every failure raised by the background cycles maps onto one of these classes
so callers can decide whether to halt (configuration), skip a network for one
cycle (upstream), or skip a single item and retry later (everything else).
"""

from typing import Optional


class CustodyError(Exception):
    """Base class for all deposit pipeline errors."""

    pass


class ConfigurationError(CustodyError):
    """Missing seed, endpoint or contract. Fatal at startup."""

    pass


class UpstreamUnavailable(CustodyError):
    """A blockchain RPC or indexing API call failed."""

    def __init__(self, network: str, message: str):
        self.network = network
        super().__init__(f"{network} upstream unavailable: {message}")


class DuplicateEvent(CustodyError):
    """The (tx_hash, network) pair is already recorded."""

    def __init__(self, network: str, tx_hash: str):
        self.network = network
        self.tx_hash = tx_hash
        super().__init__(f"Transfer {tx_hash} on {network} already recorded")


class InsufficientBalance(CustodyError):
    """Sweep skipped: balance (token or gas) below the usable minimum."""

    pass


class FeeCeilingExceeded(CustodyError):
    """Sweep skipped: current network fee price is above the configured ceiling."""

    def __init__(self, network: str, fee_price: int, ceiling: int):
        self.network = network
        self.fee_price = fee_price
        self.ceiling = ceiling
        super().__init__(f"{network} fee price {fee_price} exceeds ceiling {ceiling}")


class SigningFailure(CustodyError):
    """Building or signing a sweep transaction failed.

    The message must never contain key material.
    """

    pass


class BroadcastRejected(CustodyError):
    """The node refused a signed transaction."""

    def __init__(self, network: str, reason: Optional[str] = None):
        self.network = network
        self.reason = reason
        super().__init__(f"{network} broadcast rejected: {reason or 'unknown reason'}")


class LedgerCreditFailure(CustodyError):
    """The COMPLETED transition and credit were rolled back.

    The order stays CONFIRMING and is retried on the next tracking cycle.
    """

    def __init__(self, order_no: str, reason: str):
        self.order_no = order_no
        self.reason = reason
        super().__init__(f"Credit for order {order_no} rolled back: {reason}")


class InvalidStateTransition(CustodyError):
    """An order was asked to move backwards (or out of a terminal state)."""

    def __init__(self, order_no: str, current: str, target: str):
        self.order_no = order_no
        self.current = current
        self.target = target
        super().__init__(f"Order {order_no}: cannot move from {current} to {target}")


class OrderNotFound(CustodyError):
    """No deposit order matches the given reference."""

    pass
