"""
Withdrawal requests and on-chain settlement

WithdrawalService reserves funds by recording a Pending withdrawal (amount plus
network fee) in the same transaction that checks the balance.

WithdrawalSettlementProcessor drives a recorded withdrawal through
Pending -> Processing -> Completed | Failed:

1. claim the record (Pending -> Processing, compare-and-set)
2. convert the amount to token units
3. read fee data, estimate gas, add the safety margin
4. submit the transfer and persist its reference before waiting
5. wait until mined
6. mark Completed

Any failure after step 1 marks the record Failed with the reason in
admin_note. Nothing is retried automatically; a new withdrawal record is
required.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Any, Dict, Optional

from config import Config
from models import TransactionKind, TransactionRecord, TransactionStatus
from services.blockchain.client import BlockchainClient
from services.transaction_store import TransactionStore
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)
from utils.settlement_errors import ChainSubmissionFailed, SettlementError
from utils.transaction_transitions import (
    MarkCompleted, MarkFailed, MarkProcessing, RecordChainSubmission
)
from utils.validation import normalize_address, normalize_tx_hash

logger = logging.getLogger(__name__)


@dataclass
class WithdrawalResult:
    """Outcome of processing a withdrawal; failures carry a reason, never silence"""
    success: bool
    transaction_id: int
    chain_tx_reference: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "chain_tx_reference": self.chain_tx_reference,
            "error_code": self.error_code,
            "message": self.message,
        }


class WithdrawalService:
    """Creates withdrawal requests against the spendable balance"""

    def __init__(self, store: TransactionStore, withdrawal_fee: Decimal = None):
        self.store = store
        self.withdrawal_fee = Config.WITHDRAWAL_FEE if withdrawal_fee is None else withdrawal_fee

    async def request_withdrawal(self, account_id: str, amount, address: str) -> TransactionRecord:
        """Reserve amount + fee as a Pending withdrawal to `address`"""
        amount = MonetaryDecimal.parse_token_amount(amount)
        address = normalize_address(address)
        fee = MonetaryDecimal.quantize_token(self.withdrawal_fee)

        record, balance = await run_io_task(
            self.store.reserve_outgoing,
            TransactionKind.WITHDRAWAL,
            account_id,
            amount,
            external_address=address,
            fee=fee,
        )

        logger.info(
            f"📤 WITHDRAWAL_RESERVED: #{record.id} account={account_id} "
            f"amount={MonetaryDecimal.format_token(amount)} fee={MonetaryDecimal.format_token(fee)} to={address}"
        )
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.WITHDRAWAL_RESERVED,
            account_id=account_id,
            transaction_id=record.id,
            financial_context=FinancialContext(
                amount=amount,
                currency=Config.TOKEN_SYMBOL,
                fee_amount=fee,
                balance_before=balance,
                balance_after=balance - amount - fee,
            ),
            new_state=TransactionStatus.PENDING.value,
        )
        return record


class WithdrawalSettlementProcessor:
    """Executes a Pending withdrawal on chain exactly once"""

    def __init__(self, store: TransactionStore, chain: BlockchainClient, gas_limit_margin: Decimal = None):
        self.store = store
        self.chain = chain
        self.gas_limit_margin = Config.GAS_LIMIT_MARGIN if gas_limit_margin is None else gas_limit_margin

    def apply_gas_margin(self, estimate: int) -> int:
        return int((Decimal(estimate) * self.gas_limit_margin).to_integral_value(rounding=ROUND_CEILING))

    async def process(self, transaction_id: int) -> WithdrawalResult:
        """
        Settle a withdrawal on chain.

        Raises InvalidState (or TransactionNotFound) if the record cannot be
        claimed; every later failure is returned as an unsuccessful result.
        """
        record = await run_io_task(
            self.store.update_status, transaction_id, MarkProcessing(), TransactionStatus.PENDING
        )
        logger.info(f"🔄 WITHDRAWAL_PROCESSING: #{transaction_id} to={record.external_address}")
        self._audit(FinancialEventType.WITHDRAWAL_PROCESSING, record,
                    TransactionStatus.PENDING, TransactionStatus.PROCESSING)

        reference = None
        try:
            raw_amount = await self.chain.to_chain_units(Decimal(record.amount))
            fee_data = await self.chain.get_fee_data()
            estimate = await self.chain.estimate_transfer_gas(record.external_address, raw_amount)
            gas_limit = self.apply_gas_margin(estimate)

            submitted = await self.chain.submit_transfer(record.external_address, raw_amount, gas_limit, fee_data)
            reference = normalize_tx_hash(submitted.reference)
            await run_io_task(
                self.store.update_status,
                transaction_id,
                RecordChainSubmission(chain_tx_reference=reference),
                TransactionStatus.PROCESSING,
            )
            self._audit(FinancialEventType.WITHDRAWAL_SUBMITTED, record,
                        TransactionStatus.PROCESSING, TransactionStatus.PROCESSING,
                        {"reference": reference, "gas_limit": gas_limit})

            receipt = await self.chain.wait_mined(reference)

            completed = await run_io_task(
                self.store.update_status,
                transaction_id,
                MarkCompleted(
                    completed_at=get_naive_utc_now(),
                    chain_tx_reference=reference,
                    confirmation_count=1,
                ),
                TransactionStatus.PROCESSING,
            )
        except Exception as e:
            return await self._fail(record, reference, e)

        logger.info(
            f"✅ WITHDRAWAL_COMPLETED: #{transaction_id} reference={reference} block={receipt.block_number}"
        )
        self._audit(FinancialEventType.WITHDRAWAL_COMPLETED, completed,
                    TransactionStatus.PROCESSING, TransactionStatus.COMPLETED,
                    {"reference": reference, "block_number": receipt.block_number})
        return WithdrawalResult(success=True, transaction_id=transaction_id, chain_tx_reference=reference)

    async def _fail(self, record: TransactionRecord, reference: Optional[str], error: Exception) -> WithdrawalResult:
        reason = f"Failed: {error}"
        if reference:
            reason = f"{reason} (submitted as {reference})"
            logger.critical(
                f"🚨 WITHDRAWAL_FAILED_AFTER_SUBMIT: #{record.id} reference={reference} needs manual reconciliation: {error}"
            )
        else:
            logger.error(f"❌ WITHDRAWAL_FAILED: #{record.id}: {type(error).__name__}: {error}")

        try:
            await run_io_task(
                self.store.update_status, record.id, MarkFailed(reason=reason), TransactionStatus.PROCESSING
            )
        except SettlementError as mark_error:
            logger.critical(
                f"🚨 WITHDRAWAL_FAIL_NOT_RECORDED: #{record.id} left in processing "
                f"({mark_error.error_code}): {reason}"
            )

        self._audit(FinancialEventType.WITHDRAWAL_FAILED, record,
                    TransactionStatus.PROCESSING, TransactionStatus.FAILED,
                    {"reference": reference, "reason": reason})
        return WithdrawalResult(
            success=False,
            transaction_id=record.id,
            chain_tx_reference=reference,
            error_code=ChainSubmissionFailed.error_code,
            message=ChainSubmissionFailed.user_message,
            reason=reason,
        )

    @staticmethod
    def _audit(event_type: FinancialEventType, record: TransactionRecord, previous: TransactionStatus,
               new: TransactionStatus, data: Dict[str, Any] = None):
        financial_audit_logger.log_financial_event(
            event_type=event_type,
            account_id=record.account_id,
            transaction_id=record.id,
            financial_context=FinancialContext(
                amount=record.amount, currency=Config.TOKEN_SYMBOL, fee_amount=record.fee
            ),
            previous_state=previous.value,
            new_state=new.value,
            additional_data=data,
        )
