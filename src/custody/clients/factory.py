"""Factory for creating chain clients.

Supported clients:
- ERC20, BEP20: EVM JSON-RPC (EVMClient)
- TRC20: TronGrid REST (TronClient)
"""

from typing import Optional

from custody.chains import ChainFamily, Network, get_network_spec, parse_network
from custody.clients.base import ChainClient
from custody.clients.evm import EVMClient
from custody.clients.tron import TronClient
from custody.config import Settings, get_settings
from custody.exceptions import ConfigurationError

# Cache for client instances
_client_cache: dict[Network, ChainClient] = {}


def create_client(network: "str | Network", settings: Optional[Settings] = None) -> ChainClient:
    """Build a chain client for a network from settings.

    Raises:
        ConfigurationError: If the network's endpoint is not configured
    """
    network = parse_network(network)
    settings = settings or get_settings()
    spec = get_network_spec(network)

    base_url = settings.get_rpc_url(network)
    if not base_url:
        raise ConfigurationError(f"No RPC/API endpoint configured for {network.value}")

    if spec.family == ChainFamily.EVM:
        return EVMClient(
            network=network,
            base_url=base_url,
            token_contract=settings.get_token_contract(network),
            chain_id=settings.get_chain_id(network),
            gas_limit=settings.get_fee_limit(network),
            log_chunk_size=settings.evm_log_chunk_size,
            address_batch_size=settings.evm_address_batch_size,
            timeout=settings.rpc_timeout,
        )

    return TronClient(
        network=network,
        base_url=base_url,
        token_contract=settings.get_token_contract(network),
        api_key=settings.tron_api_key or None,
        fee_limit=settings.get_fee_limit(network),
        history_limit=settings.tron_history_limit,
        token_decimals=spec.token_decimals,
        timeout=settings.rpc_timeout,
    )


def get_client(network: "str | Network") -> ChainClient:
    """Get a cached chain client for a network."""
    network = parse_network(network)
    if network not in _client_cache:
        _client_cache[network] = create_client(network)
    return _client_cache[network]


def get_clients(networks: Optional[list[Network]] = None) -> dict[Network, ChainClient]:
    """Get clients for the given (default: enabled) networks."""
    if networks is None:
        networks = get_settings().networks
    return {network: get_client(network) for network in networks}


def reset_client_cache() -> None:
    """Clear client cache (useful for testing)."""
    _client_cache.clear()
