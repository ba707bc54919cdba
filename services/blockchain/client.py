"""
Blockchain client contract

The settlement services depend only on this interface. A JSON-RPC
implementation lives in evm_rpc_client; tests substitute an in-memory double.
Submission implementations must sequence nonces safely when called
concurrently.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol


class ChainClientError(Exception):
    """Transport or node-level failure talking to the chain"""

    def __init__(self, message: str, rpc_code: Optional[int] = None):
        super().__init__(message)
        self.rpc_code = rpc_code


@dataclass
class Receipt:
    """Mined transaction receipt"""
    transaction_hash: str
    block_number: int
    status: int = 1  # 1 success, 0 reverted
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class TransferEvent:
    """Decoded token Transfer(from, to, value) log"""
    token_address: str
    from_address: str
    to_address: str
    amount: Decimal


@dataclass(frozen=True)
class FeeData:
    """Current network fee parameters (wei)"""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None


@dataclass(frozen=True)
class SubmittedTransfer:
    reference: str


class BlockchainClient(Protocol):
    """Interface the ledger requires from a chain integration"""

    async def get_balance(self, address: str) -> Decimal:
        """Token balance of an address"""
        ...

    async def get_receipt(self, reference: str) -> Optional[Receipt]:
        """Receipt of a mined transaction, None when unknown or not mined yet"""
        ...

    async def current_block_height(self) -> int:
        ...

    def parse_transfer_events(self, receipt: Receipt) -> List[TransferEvent]:
        """Token Transfer events emitted by the configured token contract"""
        ...

    async def to_chain_units(self, amount: Decimal) -> int:
        """Ledger amount in the token's smallest unit"""
        ...

    async def get_fee_data(self) -> FeeData:
        ...

    async def estimate_transfer_gas(self, to_address: str, raw_amount: int) -> int:
        ...

    async def submit_transfer(self, to_address: str, raw_amount: int, gas_limit: int,
                              fee_data: FeeData) -> SubmittedTransfer:
        ...

    async def wait_mined(self, reference: str) -> Receipt:
        """Block until mined; raises ChainClientError if the transfer reverted"""
        ...
