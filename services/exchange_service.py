"""
Exchange Service for token -> fiat conversions
Exchanges are settled manually: the request reserves the tokens as a Pending
ledger entry and an administrator later completes or rejects it.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from config import Config
from database import managed_session
from models import Account, FiatCurrency, TransactionKind, TransactionRecord, TransactionStatus
from services.exchange_rate_service import ExchangeRateService
from services.transaction_store import TransactionStore
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)
from utils.settlement_errors import InvalidState, TransactionNotFound
from utils.transaction_transitions import MarkCompleted, MarkFailed
from utils.validation import parse_fiat_currency

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Exchange request was rejected by the administrator."


@dataclass
class PendingExchange:
    transaction: TransactionRecord
    account: Optional[Account]


class ExchangeService:
    """Service for handling token to fiat exchange requests"""

    def __init__(self, store: TransactionStore, rates: ExchangeRateService = None):
        self.store = store
        self.rates = rates or ExchangeRateService(store.session_factory)

    async def request_exchange(self, account_id: str, amount,
                               fiat_currency: Union[str, FiatCurrency]) -> TransactionRecord:
        """Reserve `amount` tokens for conversion at the current rate"""
        amount = MonetaryDecimal.parse_token_amount(amount)
        currency = fiat_currency if isinstance(fiat_currency, FiatCurrency) else parse_fiat_currency(fiat_currency)
        return await run_io_task(self._reserve, account_id, amount, currency)

    def _reserve(self, account_id: str, amount, currency: FiatCurrency) -> TransactionRecord:
        with managed_session(self.store.session_factory) as session:
            rate = self.rates.rate_for(currency, session=session)
            fiat_amount = MonetaryDecimal.multiply_rate(amount, rate)
            record, balance = self.store.reserve_outgoing(
                TransactionKind.EXCHANGE,
                account_id,
                amount,
                session=session,
                fiat_amount=fiat_amount,
                fiat_currency=currency.value,
            )

        logger.info(
            f"💱 EXCHANGE_REQUESTED: #{record.id} account={account_id} "
            f"{MonetaryDecimal.format_token(amount)} {Config.TOKEN_SYMBOL} -> "
            f"{MonetaryDecimal.format_fiat(fiat_amount)} {currency.value}"
        )
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.EXCHANGE_REQUESTED,
            account_id=account_id,
            transaction_id=record.id,
            financial_context=FinancialContext(
                amount=amount,
                currency=currency.value,
                fiat_amount=fiat_amount,
                exchange_rate=rate,
                balance_before=balance,
                balance_after=balance - amount,
            ),
            new_state=TransactionStatus.PENDING.value,
        )
        return record

    async def complete_exchange(self, transaction_id: int, admin_note: str = "") -> TransactionRecord:
        """Administrative decision: the fiat was paid out"""
        return await run_io_task(
            self._decide,
            transaction_id,
            MarkCompleted(completed_at=get_naive_utc_now(), admin_note=admin_note or None),
            FinancialEventType.EXCHANGE_COMPLETED,
        )

    async def reject_exchange(self, transaction_id: int, reason: str = None) -> TransactionRecord:
        """Administrative decision: release the reservation"""
        return await run_io_task(
            self._decide,
            transaction_id,
            MarkFailed(reason=reason or DEFAULT_REJECTION_REASON),
            FinancialEventType.EXCHANGE_REJECTED,
        )

    def _decide(self, transaction_id: int, transition, event_type: FinancialEventType) -> TransactionRecord:
        record = self.store.get(transaction_id)
        if record is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        if record.kind != TransactionKind.EXCHANGE.value:
            raise InvalidState(f"Transaction {transaction_id} is not an exchange transaction")
        if record.status != TransactionStatus.PENDING.value:
            raise InvalidState(f"Transaction is not pending, current status: {record.status}")

        updated = self.store.update_status(transaction_id, transition, expected_status=TransactionStatus.PENDING)

        logger.info(f"💱 {event_type.value.upper()}: #{transaction_id} account={updated.account_id}")
        financial_audit_logger.log_financial_event(
            event_type=event_type,
            account_id=updated.account_id,
            transaction_id=transaction_id,
            financial_context=FinancialContext(
                amount=updated.amount, currency=updated.fiat_currency, fiat_amount=updated.fiat_amount
            ),
            previous_state=TransactionStatus.PENDING.value,
            new_state=updated.status,
        )
        return updated

    async def pending_exchange_requests(self) -> List[PendingExchange]:
        """Pending exchanges oldest first, each with its account"""
        records = await run_io_task(self.store.find_pending_by_kind, TransactionKind.EXCHANGE, True)
        return [PendingExchange(transaction=record, account=record.account) for record in records]
