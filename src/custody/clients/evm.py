"""EVM chain client (Ethereum, BSC) over raw JSON-RPC.

ERC-20 calls are encoded by hand:
- transfer(address,uint256): 0xa9059cbb
- balanceOf(address):        0x70a08231
- decimals():                0x313ce567
"""

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
from eth_account import Account
from eth_utils import to_checksum_address

from custody.chains import Network
from custody.clients.base import ChainClient, SignedTransfer, TokenTransfer
from custody.exceptions import BroadcastRejected, SigningFailure, UpstreamUnavailable
from custody.hdwallet.keys import SecretKey

logger = logging.getLogger(__name__)

ERC20_TRANSFER = "0xa9059cbb"
ERC20_BALANCE_OF = "0x70a08231"
ERC20_DECIMALS = "0x313ce567"

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def pad_address(address: str) -> str:
    """Left-pad a 20-byte address to a 32-byte topic/argument (0x-prefixed)."""
    return "0x" + address.lower().replace("0x", "").zfill(64)


def topic_to_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def _hex(value: str) -> str:
    return value if value.startswith("0x") else "0x" + value


class EVMClient(ChainClient):
    """JSON-RPC client for one EVM network.

    Example:
        client = EVMClient(Network.ERC20, rpc_url, usdt_contract, chain_id=1)
        head = await client.head()
    """

    def __init__(
        self,
        network: Network,
        base_url: str,
        token_contract: str,
        chain_id: int,
        gas_limit: int = 100000,
        log_chunk_size: int = 2000,
        address_batch_size: int = 500,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(network, base_url, token_contract, timeout, transport)
        self.token_contract = to_checksum_address(token_contract)
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.log_chunk_size = max(1, log_chunk_size)
        self.address_batch_size = max(1, address_batch_size)
        self._decimals: Optional[int] = None

    async def _rpc(self, method: str, params: list) -> Any:
        """Send a JSON-RPC request and return its result."""
        data = await self._rpc_raw(method, params)
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamUnavailable(self.network.value, f"{method}: {message}")
        return data.get("result")

    async def _rpc_raw(self, method: str, params: list) -> dict:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1,
        }
        try:
            async with self._http() as client:
                response = await client.post(self.base_url, json=payload)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(self.network.value, f"{method}: {e}") from e

    async def _eth_call(self, data: str) -> str:
        result = await self._rpc(
            "eth_call", [{"to": self.token_contract, "data": data}, "latest"]
        )
        if not result or result == "0x":
            raise UpstreamUnavailable(self.network.value, "eth_call returned no data")
        return result

    async def head(self) -> int:
        """Get current block number."""
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def decimals(self) -> int:
        """Get token decimals (cached after the first call)."""
        if self._decimals is None:
            self._decimals = int(await self._eth_call(ERC20_DECIMALS), 16)
        return self._decimals

    async def query_transfers(
        self,
        addresses: list[str],
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> list[TokenTransfer]:
        """Query Transfer logs whose recipient topic is one of the addresses.

        The block range is split into chunks of log_chunk_size blocks and
        the recipients into batches of address_batch_size topics.
        """
        if not addresses:
            return []
        if from_block is None or to_block is None:
            raise ValueError("EVM log queries need an explicit block range")
        if from_block > to_block:
            return []

        decimals = await self.decimals()
        divisor = Decimal(10) ** decimals
        transfers: list[TokenTransfer] = []

        batches = [
            addresses[i : i + self.address_batch_size]
            for i in range(0, len(addresses), self.address_batch_size)
        ]

        start = from_block
        while start <= to_block:
            end = min(start + self.log_chunk_size - 1, to_block)
            for batch in batches:
                logs = await self._rpc(
                    "eth_getLogs",
                    [
                        {
                            "fromBlock": hex(start),
                            "toBlock": hex(end),
                            "address": self.token_contract,
                            "topics": [TRANSFER_TOPIC, None, [pad_address(a) for a in batch]],
                        }
                    ],
                )
                for log in logs or []:
                    transfer = self._parse_log(log, divisor)
                    if transfer:
                        transfers.append(transfer)
            start = end + 1

        logger.debug(
            f"{self.network.value}: {len(transfers)} transfers in blocks {from_block}-{to_block}"
        )
        return transfers

    def _parse_log(self, log: dict, divisor: Decimal) -> Optional[TokenTransfer]:
        """Parse a Transfer log entry."""
        topics = log.get("topics", [])
        if len(topics) < 3 or log.get("removed"):
            return None

        try:
            value = int(log.get("data", "0x0"), 16)
        except ValueError:
            logger.debug(f"Unparseable Transfer data in {log.get('transactionHash')}")
            return None

        return TokenTransfer(
            tx_hash=log["transactionHash"],
            from_address=topic_to_address(topics[1]),
            to_address=topic_to_address(topics[2]),
            amount=Decimal(value) / divisor,
            block_number=int(log["blockNumber"], 16),
        )

    async def block_number_of(self, tx_hash: str) -> Optional[int]:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt or not receipt.get("blockNumber"):
            return None
        return int(receipt["blockNumber"], 16)

    async def balance_of(self, address: str) -> Decimal:
        """Get token balance via balanceOf(address)."""
        raw = int(await self._eth_call(ERC20_BALANCE_OF + pad_address(address)[2:]), 16)
        return Decimal(raw) / (Decimal(10) ** await self.decimals())

    async def native_balance(self, address: str) -> int:
        """Get native balance in wei."""
        return int(await self._rpc("eth_getBalance", [address, "latest"]), 16)

    async def fee_price(self) -> int:
        """Get current gas price in wei."""
        return int(await self._rpc("eth_gasPrice", []), 16)

    def required_fee_funds(self, fee_price: int) -> int:
        return self.gas_limit * fee_price

    async def get_nonce(self, address: str) -> int:
        return int(await self._rpc("eth_getTransactionCount", [address, "pending"]), 16)

    async def build_and_sign_transfer(
        self,
        key: SecretKey,
        from_address: str,
        to_address: str,
        amount: Decimal,
        fee_price: int,
    ) -> SignedTransfer:
        """Build and sign a legacy ERC-20 transfer of `amount` tokens."""
        decimals = await self.decimals()
        nonce = await self.get_nonce(from_address)
        token_amount = int(amount * (Decimal(10) ** decimals))

        try:
            account = Account.from_key(key.reveal())
            if account.address.lower() != from_address.lower():
                raise SigningFailure(
                    f"Derived key does not control {from_address} on {self.network.value}"
                )

            data = (
                ERC20_TRANSFER
                + pad_address(to_address)[2:]
                + hex(token_amount)[2:].zfill(64)
            )
            tx = {
                "nonce": nonce,
                "gasPrice": fee_price,
                "gas": self.gas_limit,
                "to": self.token_contract,
                "value": 0,
                "data": data,
                "chainId": self.chain_id,
            }
            signed = account.sign_transaction(tx)
        except SigningFailure:
            raise
        except Exception as e:
            # Only the exception type: messages may echo key material
            raise SigningFailure(
                f"{self.network.value} transaction signing failed ({type(e).__name__})"
            ) from None

        return SignedTransfer(
            network=self.network,
            tx_hash=_hex(signed.hash.hex()),
            payload=_hex(signed.raw_transaction.hex()),
        )

    async def broadcast(self, signed: SignedTransfer) -> str:
        """Broadcast via eth_sendRawTransaction."""
        data = await self._rpc_raw("eth_sendRawTransaction", [signed.payload])
        if "error" in data:
            error = data["error"]
            reason = error.get("message") if isinstance(error, dict) else str(error)
            raise BroadcastRejected(self.network.value, reason)

        tx_hash = data.get("result") or signed.tx_hash
        logger.info(f"{self.network.value} broadcast accepted: {tx_hash}")
        return tx_hash
