"""
EVM JSON-RPC client for the settlement token

Reads go to the public node. Transfers are sent with eth_sendTransaction to the
hot-wallet signer endpoint (Clef / web3signer), which holds the key and assigns
nonces; submissions from this process are additionally serialized so two
concurrent withdrawals never race for the same nonce.
"""

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.blockchain.client import (
    ChainClientError, FeeData, Receipt, SubmittedTransfer, TransferEvent
)
from services.circuit_breaker import CircuitBreaker, CircuitOpenError
from utils.decimal_precision import MonetaryDecimal
from utils.validation import addresses_equal

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
BALANCE_OF_SELECTOR = "0x70a08231"
DECIMALS_SELECTOR = "0x313ce567"
TRANSFER_SELECTOR = "0xa9059cbb"


def _pad_address(address: str) -> str:
    return address.lower().replace("0x", "", 1).rjust(64, "0")


def _pad_uint(value: int) -> str:
    return format(value, "064x")


def _hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


def encode_transfer_call(to_address: str, raw_amount: int) -> str:
    """ABI-encoded transfer(address,uint256) call data"""
    return TRANSFER_SELECTOR + _pad_address(to_address) + _pad_uint(raw_amount)


class EvmRpcClient:
    """BlockchainClient over Ethereum JSON-RPC"""

    def __init__(
        self,
        rpc_url: str = None,
        signer_url: str = None,
        token_address: str = None,
        hot_wallet_address: str = None,
        timeout: int = None,
        poll_interval: float = None,
        breaker: CircuitBreaker = None,
        http_session: aiohttp.ClientSession = None,
    ):
        self.rpc_url = rpc_url or Config.BLOCKCHAIN_RPC_URL
        self.signer_url = signer_url or Config.SIGNER_RPC_URL
        self.token_address = token_address or Config.TOKEN_CONTRACT_ADDRESS
        self.hot_wallet_address = hot_wallet_address or Config.HOT_WALLET_ADDRESS
        self.timeout = timeout or Config.RPC_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else Config.WITHDRAWAL_RECEIPT_POLL_SECONDS
        self.breaker = breaker or CircuitBreaker("blockchain_rpc", failure_threshold=5, recovery_timeout=60)
        self._http_session = http_session
        self._request_ids = itertools.count(1)
        self._decimals: Optional[int] = None
        self._submit_lock = asyncio.Lock()

        logger.info(f"🔧 EVM_RPC_CLIENT initialized (token={self.token_address}, node={self.rpc_url})")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._http_session is not None:
            async with self._http_session.post(url, json=payload) as response:
                return await self._read_response(response)

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(url, json=payload) as response:
                return await self._read_response(response)

    @staticmethod
    async def _read_response(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        if response.status >= 400:
            error_text = await response.text()
            raise ChainClientError(f"HTTP {response.status}: {error_text[:200]}")
        return await response.json(content_type=None)

    async def _rpc(self, method: str, params: List[Any], url: str = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            body = await self.breaker.async_call(self._post, url or self.rpc_url, payload)
        except CircuitOpenError as e:
            raise ChainClientError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ RPC_TRANSPORT: {method} failed: {type(e).__name__}: {e}")
            raise ChainClientError(f"{method} transport failure: {e}") from e

        error = body.get("error")
        if error:
            raise ChainClientError(f"{method}: {error.get('message', error)}", rpc_code=error.get("code"))
        return body.get("result")

    async def _eth_call(self, data: str) -> str:
        return await self._rpc("eth_call", [{"to": self.token_address, "data": data}, "latest"])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def token_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = _hex_to_int(await self._eth_call(DECIMALS_SELECTOR))
            logger.info(f"🔢 TOKEN_DECIMALS: {self.token_address} uses {self._decimals} decimals")
        return self._decimals

    async def get_balance(self, address: str) -> Decimal:
        raw = _hex_to_int(await self._eth_call(BALANCE_OF_SELECTOR + _pad_address(address))) or 0
        return MonetaryDecimal.from_chain_units(raw, await self.token_decimals())

    async def get_receipt(self, reference: str) -> Optional[Receipt]:
        result = await self._rpc("eth_getTransactionReceipt", [reference])
        if not result or result.get("blockNumber") is None:
            return None
        # Transfer values are decoded with the token decimals
        await self.token_decimals()
        status = _hex_to_int(result.get("status"))
        return Receipt(
            transaction_hash=result.get("transactionHash", reference),
            block_number=_hex_to_int(result["blockNumber"]),
            status=1 if status is None else status,
            logs=result.get("logs") or [],
        )

    async def current_block_height(self) -> int:
        return _hex_to_int(await self._rpc("eth_blockNumber", []))

    def parse_transfer_events(self, receipt: Receipt) -> List[TransferEvent]:
        if self._decimals is None:
            raise ChainClientError("Token decimals unknown; fetch the receipt through this client first")

        events = []
        for log in receipt.logs:
            topics = log.get("topics") or []
            if not addresses_equal(log.get("address", ""), self.token_address):
                continue
            if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            events.append(TransferEvent(
                token_address=log["address"],
                from_address="0x" + topics[1][-40:],
                to_address="0x" + topics[2][-40:],
                amount=MonetaryDecimal.from_chain_units(_hex_to_int(log.get("data") or "0x0"), self._decimals),
            ))
        return events

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def to_chain_units(self, amount: Decimal) -> int:
        return MonetaryDecimal.to_chain_units(amount, await self.token_decimals())

    async def get_fee_data(self) -> FeeData:
        gas_price = _hex_to_int(await self._rpc("eth_gasPrice", []))
        block = await self._rpc("eth_getBlockByNumber", ["latest", False]) or {}
        base_fee = _hex_to_int(block.get("baseFeePerGas"))
        if base_fee is None:
            return FeeData(gas_price=gas_price)

        try:
            priority_fee = _hex_to_int(await self._rpc("eth_maxPriorityFeePerGas", []))
        except ChainClientError as e:
            logger.warning(f"⚠️ FEE_DATA: eth_maxPriorityFeePerGas unavailable ({e}), using 1 gwei")
            priority_fee = 10 ** 9
        return FeeData(
            max_fee_per_gas=base_fee * 2 + priority_fee,
            max_priority_fee_per_gas=priority_fee,
            gas_price=gas_price,
        )

    async def estimate_transfer_gas(self, to_address: str, raw_amount: int) -> int:
        call = {
            "from": self.hot_wallet_address,
            "to": self.token_address,
            "data": encode_transfer_call(to_address, raw_amount),
        }
        return _hex_to_int(await self._rpc("eth_estimateGas", [call]))

    async def submit_transfer(self, to_address: str, raw_amount: int, gas_limit: int,
                              fee_data: FeeData) -> SubmittedTransfer:
        tx = {
            "from": self.hot_wallet_address,
            "to": self.token_address,
            "data": encode_transfer_call(to_address, raw_amount),
            "gas": hex(gas_limit),
        }
        if fee_data.max_fee_per_gas is not None:
            tx["maxFeePerGas"] = hex(fee_data.max_fee_per_gas)
            tx["maxPriorityFeePerGas"] = hex(fee_data.max_priority_fee_per_gas or 0)
        elif fee_data.gas_price is not None:
            tx["gasPrice"] = hex(fee_data.gas_price)

        async with self._submit_lock:
            reference = await self._rpc("eth_sendTransaction", [tx], url=self.signer_url)

        if not reference:
            raise ChainClientError("Signer returned no transaction hash")
        logger.info(f"📤 TRANSFER_SUBMITTED: {reference} to={to_address} raw_amount={raw_amount} gas={gas_limit}")
        return SubmittedTransfer(reference=reference)

    async def wait_mined(self, reference: str) -> Receipt:
        """Poll until the transaction is mined; no deadline, a sent transfer may still land"""
        while True:
            try:
                receipt = await self.get_receipt(reference)
            except ChainClientError as e:
                logger.warning(f"⚠️ WAIT_MINED: receipt poll for {reference} failed, retrying: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            if receipt is not None:
                if not receipt.succeeded:
                    raise ChainClientError(f"Transaction {reference} reverted in block {receipt.block_number}")
                return receipt
            await asyncio.sleep(self.poll_interval)
