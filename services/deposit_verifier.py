"""
Deposit Settlement Verifier

Credits a deposit only after the chain proves it:

1. reference has the chain's hash format
2. the account has an open (unexpired) deposit intent
3. the transaction is mined
4. it has at least MIN_CONFIRMATIONS blocks on top
5. it carries a token transfer to the shared deposit address
6. the transferred amount equals the intent's amount exactly

The Completed record is inserted and the intent consumed in one database
transaction. The partial unique index on settled chain references is what
makes a second verification of the same transfer fail with
DuplicateSettlement, across processes as well as within one.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import delete

from config import Config
from database import managed_session
from models import Account, DepositIntent, TransactionKind, TransactionStatus
from services.blockchain.client import BlockchainClient, ChainClientError
from services.deposit_intent_registry import DepositIntentRegistry, OpenIntent
from services.transaction_store import TransactionStore
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)
from utils.settlement_errors import (
    AccountNotFound, AmountMismatch, DuplicateSettlement, InsufficientConfirmations,
    InvalidReference, NoOpenIntent, NoTransferFound, NotConfirmed, SettlementError
)
from utils.validation import addresses_equal, is_valid_tx_hash, normalize_tx_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositSettlement:
    """Successful verification result"""
    transaction_id: int
    account_id: str
    amount: Decimal
    chain_tx_reference: str
    confirmations: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": MonetaryDecimal.format_token(self.amount),
            "chain_tx_reference": self.chain_tx_reference,
            "confirmations": self.confirmations,
        }


class DepositSettlementVerifier:
    """Validates a claimed deposit against its intent and the chain, then settles it once"""

    def __init__(
        self,
        store: TransactionStore,
        intents: DepositIntentRegistry,
        chain: BlockchainClient,
        deposit_address: str = None,
        min_confirmations: int = None,
    ):
        self.store = store
        self.intents = intents
        self.chain = chain
        self.deposit_address = deposit_address or Config.DEPOSIT_ADDRESS
        self.min_confirmations = Config.MIN_CONFIRMATIONS if min_confirmations is None else min_confirmations

    async def verify(self, account_id: str, chain_tx_reference: str) -> DepositSettlement:
        # Nodes resolve hashes case-insensitively, so settle on the lowercase spelling
        reference = normalize_tx_hash(chain_tx_reference)
        logger.info(f"🔍 DEPOSIT_VERIFY: account={account_id} reference={reference}")

        try:
            return await self._verify(account_id, reference)
        except SettlementError as e:
            log = logger.info if e.is_retryable else logger.warning
            log(f"DEPOSIT_VERIFY: account={account_id} reference={reference} -> {e.error_code}: {e}")
            if not e.is_retryable:
                financial_audit_logger.log_financial_event(
                    event_type=FinancialEventType.DEPOSIT_REJECTED,
                    account_id=account_id,
                    additional_data={"reference": reference, "error_code": e.error_code},
                )
            raise

    async def _verify(self, account_id: str, reference: str) -> DepositSettlement:
        if not is_valid_tx_hash(reference):
            raise InvalidReference(f"Malformed chain reference: {reference!r}")

        intent = await run_io_task(self.intents.get, account_id)
        if intent is None:
            raise NoOpenIntent(f"No open deposit intent for account {account_id}")

        try:
            receipt = await self.chain.get_receipt(reference)
        except ChainClientError as e:
            raise NotConfirmed(f"Receipt lookup failed for {reference}: {e}") from e
        if receipt is None:
            raise NotConfirmed(f"Transaction {reference} not found or not yet mined")

        if not receipt.succeeded:
            raise NoTransferFound(f"Transaction {reference} reverted")

        try:
            current_height = await self.chain.current_block_height()
        except ChainClientError as e:
            raise NotConfirmed(f"Block height lookup failed: {e}") from e

        confirmations = current_height - receipt.block_number
        if confirmations < self.min_confirmations:
            raise InsufficientConfirmations(
                f"Insufficient confirmations: {confirmations}/{self.min_confirmations}",
                details={"confirmations": confirmations, "required": self.min_confirmations},
            )

        incoming = [
            event for event in self.chain.parse_transfer_events(receipt)
            if addresses_equal(event.to_address, self.deposit_address)
        ]
        if not incoming:
            raise NoTransferFound(f"No token transfer to {self.deposit_address} in {reference}")

        matching = next((event for event in incoming if event.amount == intent.expected_amount), None)
        if matching is None:
            observed = ", ".join(str(event.amount) for event in incoming)
            raise AmountMismatch(
                f"Amount mismatch: expected {intent.expected_amount}, got {observed}",
                details={"expected": str(intent.expected_amount), "observed": observed},
            )

        return await run_io_task(self._settle, account_id, reference, intent, confirmations)

    def _settle(self, account_id: str, reference: str, intent: OpenIntent,
                confirmations: int) -> DepositSettlement:
        with managed_session(self.store.session_factory) as session:
            if session.get(Account, account_id) is None:
                raise AccountNotFound(f"Account {account_id} not found")

            if self.store.find_settled_by_reference(reference, session=session) is not None:
                raise DuplicateSettlement(f"Chain reference {reference} already settled")

            # Consuming the intent first serializes concurrent settlements for this account
            consumed = session.execute(
                delete(DepositIntent).where(
                    DepositIntent.account_id == account_id,
                    DepositIntent.expected_amount == intent.expected_amount,
                    DepositIntent.expires_at > self.intents.clock(),
                )
            ).rowcount
            if consumed != 1:
                raise NoOpenIntent(f"Deposit intent for account {account_id} was already consumed")

            record = self.store.create(
                TransactionKind.DEPOSIT,
                account_id,
                intent.expected_amount,
                status=TransactionStatus.COMPLETED,
                session=session,
                chain_tx_reference=reference,
                confirmation_count=confirmations,
                completed_at=get_naive_utc_now(),
            )

        logger.info(
            f"✅ DEPOSIT_SETTLED: #{record.id} account={account_id} "
            f"amount={MonetaryDecimal.format_token(record.amount)} confirmations={confirmations}"
        )
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.DEPOSIT_SETTLED,
            account_id=account_id,
            transaction_id=record.id,
            financial_context=FinancialContext(amount=intent.expected_amount, currency=Config.TOKEN_SYMBOL),
            previous_state=None,
            new_state=TransactionStatus.COMPLETED.value,
            additional_data={"reference": reference, "confirmations": confirmations},
        )
        return DepositSettlement(
            transaction_id=record.id,
            account_id=account_id,
            amount=intent.expected_amount,
            chain_tx_reference=reference,
            confirmations=confirmations,
        )
