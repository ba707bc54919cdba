"""
Blockchain integration for settlement

The ledger depends on the BlockchainClient contract only; EvmRpcClient is the
JSON-RPC implementation used in production.
"""

from .client import (
    BlockchainClient, ChainClientError, FeeData, Receipt, SubmittedTransfer, TransferEvent
)
from .evm_rpc_client import EvmRpcClient

__all__ = [
    "BlockchainClient",
    "ChainClientError",
    "EvmRpcClient",
    "FeeData",
    "Receipt",
    "SubmittedTransfer",
    "TransferEvent",
]
