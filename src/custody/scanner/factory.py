"""Factory for creating chain scanners.

Supported scanners:
- ERC20, BEP20: Transfer logs over a persisted block watermark
- TRC20: TronGrid per-address history
"""

from custody.chains import ChainFamily, Network, get_network_spec
from custody.clients.base import ChainClient
from custody.ledger.database import SessionScope, get_db
from custody.scanner.base import ChainScanner
from custody.scanner.evm import EVMTransferScanner
from custody.scanner.tron import TronHistoryScanner

SCANNER_CLASSES: dict[ChainFamily, type[ChainScanner]] = {
    ChainFamily.EVM: EVMTransferScanner,
    ChainFamily.TRON: TronHistoryScanner,
}


def create_scanner(
    network: Network, client: ChainClient, db: SessionScope = get_db
) -> ChainScanner:
    """Get a scanner for a network, selected by its chain family."""
    scanner_class = SCANNER_CLASSES[get_network_spec(network).family]
    return scanner_class(network, client, db)


def create_scanners(
    clients: dict[Network, ChainClient], db: SessionScope = get_db
) -> dict[Network, ChainScanner]:
    return {network: create_scanner(network, client, db) for network, client in clients.items()}
