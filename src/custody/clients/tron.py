"""TRON chain client over the TronGrid REST API.

API Docs: https://developers.tron.network/reference/background

Transfers are read from the per-account TRC20 history endpoint, which is
bounded and carries no block number; the block is resolved separately via
gettransactioninfobyid. Sweep transfers are built by triggersmartcontract,
signed locally (secp256k1 over the txID) and broadcast.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
from eth_keys import keys

from custody.chains import Network
from custody.clients.base import ChainClient, SignedTransfer, TokenTransfer
from custody.exceptions import BroadcastRejected, SigningFailure, UpstreamUnavailable
from custody.hdwallet.keys import SecretKey
from custody.hdwallet.tron import encode_tron_address, tron_address_to_bytes

logger = logging.getLogger(__name__)

TRC20_TRANSFER_SELECTOR = "transfer(address,uint256)"
TRC20_BALANCE_OF_SELECTOR = "balanceOf(address)"


def encode_address_param(address: str) -> str:
    """ABI-encode a T-address argument (20-byte body, left padded)."""
    return tron_address_to_bytes(address)[1:].hex().zfill(64)


def _decode_message(message: Optional[str]) -> Optional[str]:
    """TronGrid returns some error messages hex encoded."""
    if not message:
        return message
    try:
        return bytes.fromhex(message).decode("utf-8")
    except ValueError:
        return message


class TronClient(ChainClient):
    """TronGrid client for TRC20 USDT.

    Example:
        client = TronClient(Network.TRC20, "https://api.trongrid.io", usdt_contract)
        head = await client.head()
    """

    def __init__(
        self,
        network: Network,
        base_url: str,
        token_contract: str,
        api_key: Optional[str] = None,
        fee_limit: int = 100_000_000,
        history_limit: int = 50,
        token_decimals: int = 6,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(network, base_url, token_contract, timeout, transport)
        self.fee_limit = fee_limit
        self.history_limit = history_limit
        self.token_decimals = token_decimals

        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["TRON-PRO-API-KEY"] = api_key

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        try:
            async with self._http() as client:
                response = await client.get(
                    f"{self.base_url}{path}", headers=self._headers, params=params
                )
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(self.network.value, f"GET {path}: {e}") from e

    async def _post(self, path: str, payload: dict) -> Any:
        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.base_url}{path}", headers=self._headers, json=payload
                )
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(self.network.value, f"POST {path}: {e}") from e

    async def head(self) -> int:
        """Get current TRON block height."""
        data = await self._get("/wallet/getnowblock")
        number = data.get("block_header", {}).get("raw_data", {}).get("number")
        if number is None:
            raise UpstreamUnavailable(self.network.value, "getnowblock returned no block number")
        return int(number)

    async def get_account_history(self, address: str) -> list[TokenTransfer]:
        """Get the latest inbound USDT transfers to one address."""
        data = await self._get(
            f"/v1/accounts/{address}/transactions/trc20",
            params={
                "only_to": "true",
                "limit": self.history_limit,
                "contract_address": self.token_contract,
            },
        )
        if not data.get("success", False):
            raise UpstreamUnavailable(
                self.network.value, f"TRC20 history for {address} unsuccessful"
            )

        transfers = []
        for tx in data.get("data", []):
            transfer = self._parse_trc20_transaction(tx, address)
            if transfer:
                transfers.append(transfer)
        return transfers

    def _parse_trc20_transaction(self, tx: dict, address: str) -> Optional[TokenTransfer]:
        """Parse a TronGrid TRC20 history entry."""
        if tx.get("to") != address:
            return None

        token_info = tx.get("token_info", {})
        if token_info.get("address") and token_info["address"] != self.token_contract:
            return None

        try:
            decimals = int(token_info.get("decimals", self.token_decimals))
            amount = Decimal(str(tx.get("value", "0"))) / (Decimal(10) ** decimals)
        except (ValueError, ArithmeticError):
            logger.debug(f"Unparseable TRC20 value in {tx.get('transaction_id')}")
            return None

        return TokenTransfer(
            tx_hash=tx["transaction_id"],
            from_address=tx.get("from"),
            to_address=address,
            amount=amount,
        )

    async def query_transfers(
        self,
        addresses: list[str],
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> list[TokenTransfer]:
        """Fetch bounded TRC20 history for every address.

        A failing address is logged and skipped. If every address fails the
        whole query raises UpstreamUnavailable.
        """
        transfers: list[TokenTransfer] = []
        failures = 0

        for address in addresses:
            try:
                transfers.extend(await self.get_account_history(address))
            except UpstreamUnavailable as e:
                failures += 1
                logger.warning(f"Error fetching TRC20 history for {address}: {e}")

        if addresses and failures == len(addresses):
            raise UpstreamUnavailable(self.network.value, "TRC20 history failed for all addresses")

        return transfers

    async def block_number_of(self, tx_hash: str) -> Optional[int]:
        data = await self._post("/wallet/gettransactioninfobyid", {"value": tx_hash})
        if not data or "blockNumber" not in data:
            return None
        return int(data["blockNumber"])

    async def balance_of(self, address: str) -> Decimal:
        """Get USDT balance via a constant balanceOf call."""
        data = await self._post(
            "/wallet/triggerconstantcontract",
            {
                "owner_address": address,
                "contract_address": self.token_contract,
                "function_selector": TRC20_BALANCE_OF_SELECTOR,
                "parameter": encode_address_param(address),
                "visible": True,
            },
        )
        results = data.get("constant_result") or []
        if not data.get("result", {}).get("result") or not results:
            raise UpstreamUnavailable(self.network.value, f"balanceOf failed for {address}")

        raw = int(results[0] or "0", 16)
        return Decimal(raw) / (Decimal(10) ** self.token_decimals)

    async def native_balance(self, address: str) -> int:
        """Get TRX balance in sun (unactivated accounts report 0)."""
        data = await self._post("/wallet/getaccount", {"address": address, "visible": True})
        return int(data.get("balance", 0))

    async def fee_price(self) -> int:
        """Get current energy price in sun (getEnergyFee chain parameter)."""
        data = await self._get("/wallet/getchainparameters")
        for param in data.get("chainParameter", []):
            if param.get("key") == "getEnergyFee":
                return int(param.get("value", 0))
        raise UpstreamUnavailable(self.network.value, "getEnergyFee not found in chain parameters")

    def required_fee_funds(self, fee_price: int) -> int:
        # Energy may be staked or delegated; fee_limit only caps the burn
        return 0

    async def build_and_sign_transfer(
        self,
        key: SecretKey,
        from_address: str,
        to_address: str,
        amount: Decimal,
        fee_price: int,
    ) -> SignedTransfer:
        """Build a TRC20 transfer with triggersmartcontract and sign its txID."""
        token_amount = int(amount * (Decimal(10) ** self.token_decimals))

        try:
            parameter = encode_address_param(to_address) + hex(token_amount)[2:].zfill(64)
        except ValueError as e:
            raise SigningFailure(f"Invalid TRC20 destination: {e}") from None

        data = await self._post(
            "/wallet/triggersmartcontract",
            {
                "owner_address": from_address,
                "contract_address": self.token_contract,
                "function_selector": TRC20_TRANSFER_SELECTOR,
                "parameter": parameter,
                "fee_limit": self.fee_limit,
                "call_value": 0,
                "visible": True,
            },
        )
        transaction = data.get("transaction")
        if not transaction or not data.get("result", {}).get("result"):
            message = _decode_message(data.get("result", {}).get("message"))
            raise SigningFailure(f"triggersmartcontract failed: {message or 'no transaction'}")

        return self.sign_transaction(key, from_address, transaction)

    def sign_transaction(self, key: SecretKey, from_address: str, transaction: dict) -> SignedTransfer:
        """Sign a node-built transaction after checking its txID."""
        tx_id = transaction.get("txID", "")
        raw_data_hex = transaction.get("raw_data_hex", "")
        if hashlib.sha256(bytes.fromhex(raw_data_hex)).hexdigest() != tx_id:
            raise SigningFailure("TRON txID does not match raw_data_hex")

        try:
            private_key = keys.PrivateKey(key.reveal())
            signer = encode_tron_address(b"\x04" + private_key.public_key.to_bytes())
            if signer != from_address:
                raise SigningFailure(f"Derived key does not control {from_address}")
            signature = private_key.sign_msg_hash(bytes.fromhex(tx_id))
        except SigningFailure:
            raise
        except Exception as e:
            raise SigningFailure(f"TRON signing failed ({type(e).__name__})") from None

        # r || s || v
        signed = dict(transaction)
        signed["signature"] = [signature.to_bytes().hex()]
        return SignedTransfer(network=self.network, tx_hash=tx_id, payload=signed)

    async def broadcast(self, signed: SignedTransfer) -> str:
        """Broadcast a signed transaction."""
        data = await self._post("/wallet/broadcasttransaction", signed.payload)
        if not data.get("result"):
            reason = _decode_message(data.get("message")) or data.get("code")
            raise BroadcastRejected(self.network.value, reason)

        tx_hash = data.get("txid") or signed.tx_hash
        logger.info(f"{self.network.value} broadcast accepted: {tx_hash}")
        return tx_hash
