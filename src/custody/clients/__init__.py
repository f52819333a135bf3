"""Chain clients for EVM JSON-RPC and TronGrid."""

from custody.clients.base import ChainClient, SignedTransfer, TokenTransfer
from custody.clients.factory import create_client, get_client, get_clients

__all__ = [
    "ChainClient",
    "SignedTransfer",
    "TokenTransfer",
    "create_client",
    "get_client",
    "get_clients",
]
