"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Well-known BIP39 test vector, never holds funds
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WALLET_SEED_PHRASE"] = TEST_MNEMONIC
os.environ["DEBUG"] = "false"

from custody.chains import Network
from custody.clients.base import ChainClient, SignedTransfer, TokenTransfer
from custody.config import Settings
from custody.exceptions import BroadcastRejected, UpstreamUnavailable
from custody.hdwallet.keys import SecretKey
from custody.hdwallet.service import KeyDerivationService
from custody.ledger.database import create_schema, make_session_factory, session_scope
from custody.notifications.events import MemoryEventSink
from custody.utils.locks import clear_cycle_locks

HOT_WALLET_EVM = "0x000000000000000000000000000000000000dEaD"
HOT_WALLET_TRON = "TLa2f6VPqDgRE67v1736s7bJ8Ray5wYjU7"


class FakeChainClient(ChainClient):
    """In-memory chain: transfers, balances and fee prices set by the test."""

    def __init__(self, network: Network, head: int = 0):
        super().__init__(network, "http://chain.invalid", "0xusdt")
        self.head_block = head
        self.transfers: list[TokenTransfer] = []
        self.tx_blocks: dict[str, int] = {}
        self.balances: dict[str, Decimal] = {}
        self.native: dict[str, int] = {}
        self.gas_price = 1
        self.fee_funds_per_price = 0
        self.unavailable = False
        self.reject_broadcast = False
        self.signed_with: list[str] = []
        self.broadcasts: list[SignedTransfer] = []

    def _check(self):
        if self.unavailable:
            raise UpstreamUnavailable(self.network.value, "connection refused")

    def add_transfer(
        self,
        tx_hash: str,
        to_address: str,
        amount: str,
        block_number: Optional[int] = None,
        from_address: str = "0xsender",
    ) -> TokenTransfer:
        transfer = TokenTransfer(
            tx_hash=tx_hash,
            to_address=to_address,
            amount=Decimal(amount),
            from_address=from_address,
            block_number=block_number,
        )
        self.transfers.append(transfer)
        return transfer

    def set_balance(self, address: str, amount: str) -> None:
        self.balances[address.lower()] = Decimal(amount)

    async def head(self) -> int:
        self._check()
        return self.head_block

    async def query_transfers(self, addresses, from_block=None, to_block=None):
        self._check()
        wanted = {a.lower() for a in addresses}
        found = []
        for t in self.transfers:
            if t.to_address.lower() not in wanted:
                continue
            if from_block is not None and t.block_number is not None:
                if not from_block <= t.block_number <= to_block:
                    continue
            # Copy so scanners can fill in block numbers
            found.append(TokenTransfer(**vars(t)))
        return found

    async def block_number_of(self, tx_hash: str) -> Optional[int]:
        self._check()
        return self.tx_blocks.get(tx_hash)

    async def balance_of(self, address: str) -> Decimal:
        self._check()
        return self.balances.get(address.lower(), Decimal("0"))

    async def native_balance(self, address: str) -> int:
        self._check()
        return self.native.get(address.lower(), 0)

    async def fee_price(self) -> int:
        self._check()
        return self.gas_price

    def required_fee_funds(self, fee_price: int) -> int:
        return self.fee_funds_per_price * fee_price

    async def build_and_sign_transfer(self, key: SecretKey, from_address, to_address, amount, fee_price):
        assert not key.is_cleared
        self.signed_with.append(key.label)
        return SignedTransfer(
            self.network,
            f"0xsweep{len(self.signed_with)}",
            {"from": from_address, "to": to_address, "amount": amount},
        )

    async def broadcast(self, signed: SignedTransfer) -> str:
        self._check()
        if self.reject_broadcast:
            raise BroadcastRejected(self.network.value, "nonce too low")
        self.broadcasts.append(signed)
        self.balances[signed.payload["from"].lower()] = Decimal("0")
        return signed.tx_hash


@pytest.fixture(autouse=True)
def _reset_cycle_locks():
    yield
    clear_cycle_locks()


@pytest.fixture
def settings() -> Settings:
    """Settings with every network enabled and sweeping configured."""
    return Settings(
        _env_file=None,
        wallet_seed_phrase=TEST_MNEMONIC,
        eth_rpc_url="http://eth.invalid",
        bsc_rpc_url="http://bsc.invalid",
        tron_api_url="http://tron.invalid",
        hot_wallet_eth=HOT_WALLET_EVM,
        hot_wallet_bsc=HOT_WALLET_EVM,
        hot_wallet_tron=HOT_WALLET_TRON,
        sweep_delay_seconds=0,
    )


@pytest.fixture(scope="session")
def keys() -> KeyDerivationService:
    return KeyDerivationService(seed_phrase=TEST_MNEMONIC)


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine, start_index=1)

    yield engine

    await engine.dispose()


@pytest.fixture
def db(db_engine):
    """get_db-style session scope bound to the test engine."""
    return session_scope(make_session_factory(db_engine))


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """Session scope over a file database, for tests with overlapping transactions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await create_schema(engine, start_index=1)

    yield session_scope(make_session_factory(engine))

    await engine.dispose()


@pytest.fixture
def sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def clients() -> dict[Network, FakeChainClient]:
    return {network: FakeChainClient(network) for network in Network}
