"""JSON-RPC client decoding and request shaping (HTTP transport mocked)"""

import pytest
from decimal import Decimal

from services.blockchain.client import ChainClientError, FeeData, Receipt
from services.blockchain.evm_rpc_client import (
    TRANSFER_TOPIC, EvmRpcClient, encode_transfer_call
)

from conftest import DEPOSIT_ADDRESS, RECIPIENT_ADDRESS, tx_hash

TOKEN = "0xdac17f958d2ee523a2206206994597c13d831ec7"
HOT_WALLET = "0x2222222222222222222222222222222222222222"
SIGNER_URL = "http://signer:8550"


def topic_for(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def rpc_ok(result):
    return {"jsonrpc": "2.0", "id": 1, "result": result}


class ScriptedNode:
    """Answers JSON-RPC payloads by method name"""

    def __init__(self, results):
        self.results = results
        self.calls = []

    async def __call__(self, url, payload):
        self.calls.append((url, payload))
        answer = self.results[payload["method"]]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def make_client():
    def _make(results):
        client = EvmRpcClient(
            rpc_url="http://node:8545", signer_url=SIGNER_URL, token_address=TOKEN,
            hot_wallet_address=HOT_WALLET, poll_interval=0,
        )
        node = ScriptedNode(results)
        client._post = node
        return client, node
    return _make


class TestReads:

    @pytest.mark.asyncio
    async def test_unmined_receipt_is_none(self, make_client):
        client, _ = make_client({"eth_getTransactionReceipt": rpc_ok(None)})
        assert await client.get_receipt(tx_hash(1)) is None

    @pytest.mark.asyncio
    async def test_receipt_and_transfer_decoding(self, make_client):
        transfer_log = {
            "address": TOKEN.upper().replace("0X", "0x"),
            "topics": [TRANSFER_TOPIC, topic_for(RECIPIENT_ADDRESS), topic_for(DEPOSIT_ADDRESS)],
            "data": hex(10_123_400),
        }
        unrelated_log = {
            "address": "0x9999999999999999999999999999999999999999",
            "topics": [TRANSFER_TOPIC, topic_for(RECIPIENT_ADDRESS), topic_for(DEPOSIT_ADDRESS)],
            "data": hex(1),
        }
        client, _ = make_client({
            "eth_getTransactionReceipt": rpc_ok({
                "transactionHash": tx_hash(1), "blockNumber": hex(100), "status": "0x1",
                "logs": [transfer_log, unrelated_log],
            }),
            "eth_call": rpc_ok(hex(6)),
        })

        receipt = await client.get_receipt(tx_hash(1))
        events = client.parse_transfer_events(receipt)

        assert receipt.block_number == 100
        assert receipt.succeeded
        assert len(events) == 1
        assert events[0].to_address == DEPOSIT_ADDRESS
        assert events[0].amount == Decimal("10.1234")

    @pytest.mark.asyncio
    async def test_decimals_fetched_once(self, make_client):
        client, node = make_client({"eth_call": [rpc_ok(hex(6)), rpc_ok(hex(5_000_000))]})

        assert await client.token_decimals() == 6
        assert await client.token_decimals() == 6
        assert await client.get_balance(HOT_WALLET) == Decimal("5")
        assert len(node.calls) == 2

    @pytest.mark.asyncio
    async def test_block_height(self, make_client):
        client, _ = make_client({"eth_blockNumber": rpc_ok("0x10")})
        assert await client.current_block_height() == 16

    def test_parse_requires_known_decimals(self, make_client):
        client, _ = make_client({})
        with pytest.raises(ChainClientError):
            client.parse_transfer_events(Receipt(transaction_hash=tx_hash(1), block_number=1))

    @pytest.mark.asyncio
    async def test_rpc_error_raised(self, make_client):
        client, _ = make_client({
            "eth_blockNumber": {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}}
        })
        with pytest.raises(ChainClientError) as exc_info:
            await client.current_block_height()
        assert exc_info.value.rpc_code == -32000


class TestSubmission:

    def test_transfer_call_encoding(self):
        data = encode_transfer_call(RECIPIENT_ADDRESS, 50_000_000)
        assert data.startswith("0xa9059cbb")
        assert len(data) == 10 + 64 + 64
        assert data.endswith(format(50_000_000, "064x"))

    @pytest.mark.asyncio
    async def test_eip1559_fee_data(self, make_client):
        client, _ = make_client({
            "eth_gasPrice": rpc_ok(hex(30)),
            "eth_getBlockByNumber": rpc_ok({"baseFeePerGas": hex(10)}),
            "eth_maxPriorityFeePerGas": rpc_ok(hex(2)),
        })
        assert await client.get_fee_data() == FeeData(max_fee_per_gas=22, max_priority_fee_per_gas=2, gas_price=30)

    @pytest.mark.asyncio
    async def test_legacy_fee_data(self, make_client):
        client, _ = make_client({
            "eth_gasPrice": rpc_ok(hex(30)),
            "eth_getBlockByNumber": rpc_ok({}),
        })
        assert await client.get_fee_data() == FeeData(gas_price=30)

    @pytest.mark.asyncio
    async def test_submit_goes_to_signer(self, make_client):
        client, node = make_client({"eth_sendTransaction": rpc_ok(tx_hash(5))})

        submitted = await client.submit_transfer(
            RECIPIENT_ADDRESS, 50_000_000, 60000, FeeData(max_fee_per_gas=22, max_priority_fee_per_gas=2)
        )

        assert submitted.reference == tx_hash(5)
        url, payload = node.calls[0]
        assert url == SIGNER_URL
        tx = payload["params"][0]
        assert tx["from"] == HOT_WALLET
        assert tx["to"] == TOKEN
        assert tx["gas"] == hex(60000)
        assert tx["maxFeePerGas"] == hex(22)
        assert "gasPrice" not in tx

    @pytest.mark.asyncio
    async def test_wait_mined_retries_until_receipt(self, make_client):
        mined = {"transactionHash": tx_hash(5), "blockNumber": hex(200), "status": "0x1", "logs": []}
        client, _ = make_client({
            "eth_getTransactionReceipt": [ChainClientError("flaky"), rpc_ok(None), rpc_ok(mined)],
            "eth_call": rpc_ok(hex(6)),
        })

        receipt = await client.wait_mined(tx_hash(5))
        assert receipt.block_number == 200

    @pytest.mark.asyncio
    async def test_wait_mined_raises_on_revert(self, make_client):
        reverted = {"transactionHash": tx_hash(5), "blockNumber": hex(200), "status": "0x0", "logs": []}
        client, _ = make_client({
            "eth_getTransactionReceipt": rpc_ok(reverted),
            "eth_call": rpc_ok(hex(6)),
        })

        with pytest.raises(ChainClientError):
            await client.wait_mined(tx_hash(5))
