"""
Settlement Engine

Wires the ledger components together and exposes the operations the messaging
front-end and the administrative surface consume. The blockchain client is
injected so tests (and alternative chains) can substitute it.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from config import Config
from models import Account, ExchangeRate, TransactionRecord
from services.account_service import AccountService
from services.balance_engine import BalanceEngine
from services.blockchain.client import BlockchainClient
from services.deposit_intent_registry import DepositIntentRegistry, OpenIntent
from services.deposit_verifier import DepositSettlement, DepositSettlementVerifier
from services.exchange_rate_service import ExchangeRateService
from services.exchange_service import ExchangeService, PendingExchange
from services.transaction_store import TransactionStore
from services.withdrawal_service import (
    WithdrawalResult, WithdrawalService, WithdrawalSettlementProcessor
)
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Facade over balance, deposit, withdrawal and exchange settlement"""

    def __init__(self, chain: BlockchainClient, session_factory=None, clock: Clock = get_naive_utc_now):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal

        self.chain = chain
        self.accounts = AccountService(session_factory)
        self.balances = BalanceEngine(session_factory)
        self.store = TransactionStore(session_factory, self.balances)
        self.intents = DepositIntentRegistry(session_factory, clock=clock)
        self.verifier = DepositSettlementVerifier(self.store, self.intents, chain)
        self.withdrawals = WithdrawalService(self.store)
        self.processor = WithdrawalSettlementProcessor(self.store, chain)
        self.rates = ExchangeRateService(session_factory)
        self.exchanges = ExchangeService(self.store, self.rates)

    # Accounts

    async def register_account(self, account_id: str, display_name: Optional[str] = None) -> Account:
        return await run_io_task(self.accounts.find_or_create, account_id, display_name)

    # Balance and history

    async def compute_balance(self, account_id: str) -> Decimal:
        return await run_io_task(self.balances.compute_balance, account_id)

    async def history(self, account_id: str, limit: Optional[int] = None) -> List[TransactionRecord]:
        return await run_io_task(
            self.store.history_for_account, account_id, limit or Config.HISTORY_DEFAULT_LIMIT
        )

    # Deposits

    async def open_deposit_intent(self, account_id: str, base_amount=None) -> OpenIntent:
        """Open an intent whose amount is `base_amount` (default DEPOSIT_BASE_AMOUNT) plus a 4-digit suffix"""
        return await run_io_task(self.intents.open, account_id, base_amount=base_amount)

    async def get_deposit_intent(self, account_id: str) -> Optional[OpenIntent]:
        return await run_io_task(self.intents.get, account_id)

    async def verify_deposit(self, account_id: str, chain_tx_reference: str) -> DepositSettlement:
        return await self.verifier.verify(account_id, chain_tx_reference)

    # Withdrawals

    async def request_withdrawal(self, account_id: str, amount, address: str) -> TransactionRecord:
        return await self.withdrawals.request_withdrawal(account_id, amount, address)

    async def process_withdrawal(self, transaction_id: int) -> WithdrawalResult:
        return await self.processor.process(transaction_id)

    async def withdraw(self, account_id: str, amount, address: str) -> WithdrawalResult:
        """Reserve and immediately settle a withdrawal"""
        record = await self.request_withdrawal(account_id, amount, address)
        return await self.process_withdrawal(record.id)

    async def hot_wallet_balance(self) -> Decimal:
        return await self.chain.get_balance(Config.HOT_WALLET_ADDRESS)

    # Exchanges

    async def request_exchange(self, account_id: str, amount, fiat_currency) -> TransactionRecord:
        return await self.exchanges.request_exchange(account_id, amount, fiat_currency)

    async def complete_exchange(self, transaction_id: int, admin_note: str = "") -> TransactionRecord:
        return await self.exchanges.complete_exchange(transaction_id, admin_note)

    async def reject_exchange(self, transaction_id: int, reason: str = None) -> TransactionRecord:
        return await self.exchanges.reject_exchange(transaction_id, reason)

    async def pending_exchange_requests(self) -> List[PendingExchange]:
        return await self.exchanges.pending_exchange_requests()

    async def get_rates(self) -> ExchangeRate:
        return await run_io_task(self.rates.get_current_rates)

    async def update_rates(self, rate_usd=None, rate_uah=None) -> ExchangeRate:
        return await run_io_task(self.rates.update_rates, rate_usd, rate_uah)


def build_settlement_engine(session_factory=None) -> SettlementEngine:
    """Production wiring against the configured JSON-RPC node"""
    from services.blockchain.evm_rpc_client import EvmRpcClient

    Config.log_environment_config()
    return SettlementEngine(EvmRpcClient(), session_factory=session_factory)
