"""
Balance Engine
==============

Spendable balance is derived from the ledger, never stored:

    balance = completed deposits
              - withdrawals (amount + fee) that are pending, processing or completed
              - exchanges that are pending, processing or completed

Outgoing value counts from the moment the request is recorded, so two
concurrent requests cannot jointly overdraw an account while settlement is
still in flight. Unconfirmed deposits never count.
"""

import logging
from decimal import Decimal
from typing import Iterable, List

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import TransactionKind, TransactionRecord, TransactionStatus
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)
from utils.settlement_errors import LedgerInvariantError

logger = logging.getLogger(__name__)

RESERVING_STATUSES = (
    TransactionStatus.PENDING.value,
    TransactionStatus.PROCESSING.value,
    TransactionStatus.COMPLETED.value,
)
OUTGOING_KINDS = (TransactionKind.WITHDRAWAL.value, TransactionKind.EXCHANGE.value)


def outgoing_debit(record: TransactionRecord) -> Decimal:
    """Value a withdrawal or exchange removes from the spendable balance"""
    debit = Decimal(record.amount)
    if record.kind == TransactionKind.WITHDRAWAL.value and record.fee is not None:
        debit += Decimal(record.fee)
    return debit


def counts_toward_balance(record: TransactionRecord) -> bool:
    if record.kind == TransactionKind.DEPOSIT.value:
        return record.status == TransactionStatus.COMPLETED.value
    return record.kind in OUTGOING_KINDS and record.status in RESERVING_STATUSES


def fold_balance(records: Iterable[TransactionRecord]) -> Decimal:
    """Raw (unclamped) balance over an account's ledger entries"""
    balance = Decimal("0")
    for record in records:
        if not counts_toward_balance(record):
            continue
        if record.kind == TransactionKind.DEPOSIT.value:
            balance += Decimal(record.amount)
        else:
            balance -= outgoing_debit(record)
    return balance


def balance_query(account_id: str):
    return select(TransactionRecord).where(
        TransactionRecord.account_id == account_id,
        or_(
            and_(
                TransactionRecord.kind == TransactionKind.DEPOSIT.value,
                TransactionRecord.status == TransactionStatus.COMPLETED.value,
            ),
            and_(
                TransactionRecord.kind.in_(OUTGOING_KINDS),
                TransactionRecord.status.in_(RESERVING_STATUSES),
            ),
        ),
    )


class BalanceEngine:
    """Read-only balance computation over the transaction ledger"""

    def __init__(self, session_factory=None, strict: bool = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.strict = Config.STRICT_LEDGER_INVARIANTS if strict is None else strict

    def compute_balance(self, account_id: str) -> Decimal:
        session = self.session_factory()
        try:
            return self.compute_balance_in_session(session, account_id)
        finally:
            session.close()

    def compute_balance_in_session(self, session: Session, account_id: str) -> Decimal:
        """Balance as seen by an open session (used inside reservations)"""
        records: List[TransactionRecord] = list(session.execute(balance_query(account_id)).scalars())
        raw = fold_balance(records)
        return self._enforce_non_negative(account_id, raw, len(records))

    def _enforce_non_negative(self, account_id: str, raw: Decimal, record_count: int) -> Decimal:
        if raw >= 0:
            return raw

        logger.critical(
            f"🚨 LEDGER_INVARIANT: account {account_id} computed balance {raw} "
            f"over {record_count} entries is negative"
        )
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.LEDGER_INVARIANT_VIOLATION,
            account_id=account_id,
            financial_context=FinancialContext(balance_after=raw),
            additional_data={"record_count": record_count, "strict": self.strict},
        )
        if self.strict:
            raise LedgerInvariantError(
                f"Negative balance {raw} for account {account_id}",
                details={"account_id": account_id, "raw_balance": str(raw)},
            )
        return Decimal("0")
