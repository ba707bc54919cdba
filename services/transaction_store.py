"""
Transaction Record Store
========================

Append/update access to the transaction ledger.

- Status changes are compare-and-set: the UPDATE only matches while the row is
  still in the status the caller observed, so two workers can never both move
  the same record out of Pending.
- A status change and its status-dependent fields are written by one UPDATE.
- Reserving funds for an outgoing request is a single database transaction:
  lock the account row, recompute the balance, insert the Pending record.
- Completed deposits/withdrawals are unique per chain reference (partial unique
  index); violations surface as DuplicateSettlement.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from database import managed_session
from models import Account, TransactionKind, TransactionRecord, TransactionStatus
from services.balance_engine import BalanceEngine
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.settlement_errors import (
    AccountNotFound, DuplicateSettlement, InsufficientBalance, InvalidState, TransactionNotFound
)
from utils.transaction_transitions import TransactionStateValidator, Transition
from utils.validation import normalize_tx_hash

logger = logging.getLogger(__name__)

KIND_FIELDS = {
    TransactionKind.DEPOSIT: {"chain_tx_reference", "confirmation_count", "completed_at", "admin_note"},
    TransactionKind.WITHDRAWAL: {"external_address", "fee", "admin_note"},
    TransactionKind.EXCHANGE: {"fiat_amount", "fiat_currency", "admin_note"},
}
REQUIRED_FIELDS = {
    TransactionKind.DEPOSIT: set(),
    TransactionKind.WITHDRAWAL: {"external_address", "fee"},
    TransactionKind.EXCHANGE: {"fiat_amount", "fiat_currency"},
}


def _is_settlement_conflict(error: IntegrityError) -> bool:
    message = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return "chain_tx_reference" in message or "uq_transactions_settled_chain_reference" in message


class TransactionStore:
    """Persistence gateway for ledger entries"""

    def __init__(self, session_factory=None, balance_engine: BalanceEngine = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.balance_engine = balance_engine or BalanceEngine(session_factory)

    @contextmanager
    def session_scope(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Join the caller's transaction when given one, otherwise own a new one"""
        if session is not None:
            yield session
            return
        with managed_session(self.session_factory) as owned:
            yield owned

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        kind: TransactionKind,
        account_id: str,
        amount,
        status: TransactionStatus = TransactionStatus.PENDING,
        session: Optional[Session] = None,
        **fields,
    ) -> TransactionRecord:
        """Append a ledger entry. Only deposits may be created already Completed."""
        amount = MonetaryDecimal.parse_token_amount(amount)
        self._validate_fields(kind, status, fields)

        now = get_naive_utc_now()
        record = TransactionRecord(
            kind=kind.value,
            account_id=account_id,
            amount=amount,
            status=status.value,
            created_at=now,
            updated_at=now,
            **fields,
        )

        with self.session_scope(session) as active:
            active.add(record)
            try:
                active.flush()
            except IntegrityError as e:
                if _is_settlement_conflict(e):
                    logger.warning(
                        f"⚠️ DUPLICATE_SETTLEMENT: {kind.value} reference "
                        f"{fields.get('chain_tx_reference')} already settled"
                    )
                    raise DuplicateSettlement(
                        f"Chain reference {fields.get('chain_tx_reference')} already settled"
                    ) from e
                raise

        logger.info(
            f"📒 LEDGER_APPEND: #{record.id} {kind.value} {status.value} "
            f"account={account_id} amount={MonetaryDecimal.format_token(amount)}"
        )
        return record

    def reserve_outgoing(
        self,
        kind: TransactionKind,
        account_id: str,
        amount,
        session: Optional[Session] = None,
        **fields,
    ) -> Tuple[TransactionRecord, Decimal]:
        """
        Insert a Pending withdrawal/exchange if the account can cover it.

        The account row is updated first so the transaction holds its write lock
        (row lock on PostgreSQL, database write lock on SQLite) while the balance
        is recomputed and the record inserted. Concurrent reservations for the
        same account therefore serialize.

        Returns:
            (record, balance_before)
        """
        if kind not in (TransactionKind.WITHDRAWAL, TransactionKind.EXCHANGE):
            raise ValueError(f"Cannot reserve funds for {kind.value}")

        amount = MonetaryDecimal.parse_token_amount(amount)
        required = amount + Decimal(fields.get("fee") or 0)

        with self.session_scope(session) as active:
            touched = active.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(last_activity_at=get_naive_utc_now())
                .execution_options(synchronize_session=False)
            )
            if touched.rowcount != 1:
                raise AccountNotFound(f"Account {account_id} not found")

            balance = self.balance_engine.compute_balance_in_session(active, account_id)
            if required > balance:
                logger.info(
                    f"🚫 RESERVE_REJECTED: {kind.value} account={account_id} "
                    f"required={required} balance={balance}"
                )
                raise InsufficientBalance(
                    f"Required {required} exceeds balance {balance}",
                    details={"required": str(required), "balance": str(balance)},
                )

            record = self.create(kind, account_id, amount, session=active, **fields)

        return record, balance

    def update_status(
        self,
        transaction_id: int,
        transition: Transition,
        expected_status: Optional[TransactionStatus] = None,
        session: Optional[Session] = None,
    ) -> TransactionRecord:
        """
        Apply a transition to a record with a compare-and-set UPDATE.

        Raises TransactionNotFound, InvalidState (illegal transition or a
        concurrent change won the race) or DuplicateSettlement.
        """
        with self.session_scope(session) as active:
            record = active.get(TransactionRecord, transaction_id)
            if record is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")

            current = record.status_enum
            if expected_status is not None and current != expected_status:
                raise InvalidState(
                    f"Transaction {transaction_id} is {current.value}, expected {expected_status.value}"
                )

            is_valid, reason = TransactionStateValidator.validate_transition(
                record.kind_enum, current, transition, transaction_id
            )
            if not is_valid:
                raise InvalidState(f"Transaction {transaction_id}: {reason}")

            values = transition.column_values()
            values["updated_at"] = get_naive_utc_now()
            try:
                result = active.execute(
                    update(TransactionRecord)
                    .where(
                        TransactionRecord.id == transaction_id,
                        TransactionRecord.status == current.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                if _is_settlement_conflict(e):
                    raise DuplicateSettlement(
                        f"Chain reference {values.get('chain_tx_reference')} already settled"
                    ) from e
                raise

            if result.rowcount != 1:
                raise InvalidState(f"Transaction {transaction_id} changed concurrently")

            active.refresh(record)

        logger.info(
            f"🔁 LEDGER_TRANSITION: #{transaction_id} {record.kind} {current.value} -> {record.status}"
        )
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transaction_id: int) -> Optional[TransactionRecord]:
        with self.session_scope() as session:
            return session.get(TransactionRecord, transaction_id)

    def find_pending_by_kind(self, kind: TransactionKind, with_account: bool = False) -> List[TransactionRecord]:
        """Pending entries of one kind, oldest first"""
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.kind == kind.value,
                TransactionRecord.status == TransactionStatus.PENDING.value,
            )
            .order_by(TransactionRecord.created_at.asc(), TransactionRecord.id.asc())
        )
        if with_account:
            stmt = stmt.options(joinedload(TransactionRecord.account))
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars().unique())

    def history_for_account(self, account_id: str, limit: int = 10) -> List[TransactionRecord]:
        """Most recent entries first"""
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.account_id == account_id)
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
            .limit(limit)
        )
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    def find_processing_older_than(self, kind: TransactionKind, cutoff: datetime) -> List[TransactionRecord]:
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.kind == kind.value,
                TransactionRecord.status == TransactionStatus.PROCESSING.value,
                TransactionRecord.updated_at < cutoff,
            )
            .order_by(TransactionRecord.updated_at.asc())
        )
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    def find_settled_by_reference(self, chain_tx_reference: str,
                                  session: Optional[Session] = None) -> Optional[TransactionRecord]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.chain_tx_reference == normalize_tx_hash(chain_tx_reference),
            TransactionRecord.status == TransactionStatus.COMPLETED.value,
            TransactionRecord.kind.in_((TransactionKind.DEPOSIT.value, TransactionKind.WITHDRAWAL.value)),
        )
        with self.session_scope(session) as active:
            return active.execute(stmt).scalars().first()

    # ------------------------------------------------------------------

    @staticmethod
    def _validate_fields(kind: TransactionKind, status: TransactionStatus, fields: dict):
        unexpected = set(fields) - KIND_FIELDS[kind]
        if unexpected:
            raise ValueError(f"Fields not valid for {kind.value}: {sorted(unexpected)}")

        missing = {name for name in REQUIRED_FIELDS[kind] if fields.get(name) is None}
        if missing:
            raise ValueError(f"Missing fields for {kind.value}: {sorted(missing)}")

        if status == TransactionStatus.PENDING:
            return
        if kind != TransactionKind.DEPOSIT or status != TransactionStatus.COMPLETED:
            raise ValueError(f"{kind.value} records must be created Pending")
        if not fields.get("chain_tx_reference") or fields.get("confirmation_count") is None \
                or fields.get("completed_at") is None:
            raise ValueError("Completed deposit requires chain reference, confirmations and completed_at")
