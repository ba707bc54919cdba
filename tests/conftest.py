"""
Shared fixtures for the settlement ledger test suite

Each test gets its own SQLite database file, an injectable clock and an
in-memory blockchain double, so no network or shared state is involved.
"""

import os

# Must be set before config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DEPOSIT_ADDRESS", "0x1111111111111111111111111111111111111111")
os.environ.setdefault("HOT_WALLET_ADDRESS", "0x2222222222222222222222222222222222222222")
os.environ.setdefault("TOKEN_CONTRACT_ADDRESS", "0xdAC17F958D2ee523a2206206994597C13D831ec7")

import itertools
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from config import Config
from database import build_engine, create_tables, make_session_factory
from models import Account, TransactionKind, TransactionStatus
from services.balance_engine import BalanceEngine
from services.blockchain.client import (
    ChainClientError, FeeData, Receipt, SubmittedTransfer, TransferEvent
)
from services.deposit_intent_registry import DepositIntentRegistry
from services.transaction_store import TransactionStore
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

DEPOSIT_ADDRESS = Config.DEPOSIT_ADDRESS
RECIPIENT_ADDRESS = "0x3333333333333333333333333333333333333333"
TOKEN_DECIMALS = 6


def tx_hash(n: int) -> str:
    """Deterministic well-formed transaction hash"""
    return "0x" + format(n, "064x")


class FakeClock:
    """Mutable naive-UTC clock"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeBlockchainClient:
    """In-memory BlockchainClient double"""

    def __init__(self):
        self.height = 100
        self.receipts: Dict[str, Receipt] = {}
        self.transfers: Dict[str, List[TransferEvent]] = {}
        self.hot_wallet_balance = Decimal("1000")
        self.gas_estimate = 50000
        self.receipt_error: Optional[Exception] = None
        self.submit_error: Optional[Exception] = None
        self.mined_error: Optional[Exception] = None
        self.submissions: List[dict] = []
        self._references = itertools.count(0xABC000)

    def add_transfer(self, reference: str, amount, to_address: str = DEPOSIT_ADDRESS,
                     block_number: int = 100, status: int = 1):
        # Keyed by lowercase hash: a node resolves either spelling to the same receipt
        reference = reference.lower()
        self.receipts[reference] = Receipt(transaction_hash=reference, block_number=block_number, status=status)
        self.transfers[reference] = [
            TransferEvent(
                token_address=Config.TOKEN_CONTRACT_ADDRESS,
                from_address="0x4444444444444444444444444444444444444444",
                to_address=to_address,
                amount=Decimal(str(amount)),
            )
        ]

    async def get_balance(self, address: str) -> Decimal:
        return self.hot_wallet_balance

    async def get_receipt(self, reference: str) -> Optional[Receipt]:
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipts.get(reference.lower())

    async def current_block_height(self) -> int:
        return self.height

    def parse_transfer_events(self, receipt: Receipt) -> List[TransferEvent]:
        return list(self.transfers.get(receipt.transaction_hash.lower(), []))

    async def to_chain_units(self, amount: Decimal) -> int:
        return MonetaryDecimal.to_chain_units(amount, TOKEN_DECIMALS)

    async def get_fee_data(self) -> FeeData:
        return FeeData(max_fee_per_gas=40 * 10 ** 9, max_priority_fee_per_gas=10 ** 9, gas_price=20 * 10 ** 9)

    async def estimate_transfer_gas(self, to_address: str, raw_amount: int) -> int:
        return self.gas_estimate

    async def submit_transfer(self, to_address: str, raw_amount: int, gas_limit: int,
                              fee_data: FeeData) -> SubmittedTransfer:
        if self.submit_error is not None:
            raise self.submit_error
        reference = tx_hash(next(self._references))
        self.submissions.append({
            "to": to_address, "raw_amount": raw_amount, "gas_limit": gas_limit, "reference": reference
        })
        return SubmittedTransfer(reference=reference)

    async def wait_mined(self, reference: str) -> Receipt:
        if self.mined_error is not None:
            raise self.mined_error
        self.height += 1
        return Receipt(transaction_hash=reference, block_number=self.height)


# ============================================================================
# Database fixtures
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return FakeBlockchainClient()


@pytest.fixture
def balance_engine(session_factory):
    return BalanceEngine(session_factory, strict=False)


@pytest.fixture
def store(session_factory, balance_engine):
    return TransactionStore(session_factory, balance_engine)


@pytest.fixture
def intents(session_factory, clock):
    return DepositIntentRegistry(session_factory, clock=clock)


@pytest.fixture
def make_account(session_factory):
    """Factory creating accounts directly in the database"""

    def _make(account_id: str = "1001", display_name: str = "alice") -> str:
        session = session_factory()
        try:
            now = get_naive_utc_now()
            session.add(Account(id=account_id, display_name=display_name, created_at=now, last_activity_at=now))
            session.commit()
        finally:
            session.close()
        return account_id

    return _make


@pytest.fixture
def credit(store):
    """Factory recording a completed deposit for an account"""
    references = itertools.count(1)

    def _credit(account_id: str, amount) -> int:
        record = store.create(
            TransactionKind.DEPOSIT,
            account_id,
            Decimal(str(amount)),
            status=TransactionStatus.COMPLETED,
            chain_tx_reference=tx_hash(0xD000 + next(references)),
            confirmation_count=Config.MIN_CONFIRMATIONS,
            completed_at=get_naive_utc_now(),
        )
        return record.id

    return _credit
