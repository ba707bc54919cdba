"""
Settlement Ledger - Database Schema
===================================

Durable state of the settlement and ledger engine:
- Accounts created on first interaction
- Append-only transaction ledger (deposits, withdrawals, exchanges)
- Short-lived deposit intents with an expiry column checked on read
- Singleton exchange rate row

Token amounts are stored with 6 fractional digits, fiat amounts with 2.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text,
    ForeignKey, Index, CheckConstraint, text
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionKind(Enum):
    """Ledger entry kinds"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    EXCHANGE = "exchange"


class TransactionStatus(Enum):
    """Ledger entry lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FiatCurrency(Enum):
    """Fiat currencies supported for manual exchange settlement"""
    USD = "USD"
    UAH = "UAH"


TOKEN_AMOUNT = Numeric(24, 6)
FIAT_AMOUNT = Numeric(24, 2)


# ============================================================================
# MODELS
# ============================================================================

class Account(Base):
    """Account keyed by its external (messaging platform) identifier"""
    __tablename__ = 'accounts'

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    last_activity_at = Column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    transactions = relationship("TransactionRecord", back_populates="account")

    def __repr__(self):
        return f"<Account(id='{self.id}', display_name='{self.display_name}')>"


class TransactionRecord(Base):
    """Financial transaction ledger"""
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False)
    account_id = Column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    amount = Column(TOKEN_AMOUNT, nullable=False)

    # Exchange only
    fiat_amount = Column(FIAT_AMOUNT, nullable=True)
    fiat_currency = Column(String(3), nullable=True)

    # Withdrawal only
    external_address = Column(String(64), nullable=True)
    fee = Column(TOKEN_AMOUNT, nullable=True)

    # Set once the transfer is observed (deposit) or submitted (withdrawal)
    chain_tx_reference = Column(String(66), nullable=True)
    confirmation_count = Column(Integer, nullable=True)

    status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False)
    admin_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime(timezone=False), nullable=True)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        CheckConstraint(
            f"kind IN ('{TransactionKind.DEPOSIT.value}', '{TransactionKind.WITHDRAWAL.value}', "
            f"'{TransactionKind.EXCHANGE.value}')",
            name='ck_transactions_kind_valid'
        ),
        CheckConstraint(
            f"status IN ('{TransactionStatus.PENDING.value}', '{TransactionStatus.PROCESSING.value}', "
            f"'{TransactionStatus.COMPLETED.value}', '{TransactionStatus.FAILED.value}')",
            name='ck_transactions_status_valid'
        ),
        CheckConstraint('fee IS NULL OR fee >= 0', name='ck_transactions_fee_non_negative'),
        CheckConstraint(
            'chain_tx_reference IS NULL OR chain_tx_reference = lower(chain_tx_reference)',
            name='ck_transactions_reference_lowercase'
        ),
        Index('ix_transactions_account_created', 'account_id', 'created_at'),
        Index('ix_transactions_kind_status_created', 'kind', 'status', 'created_at'),
        # DOUBLE-SETTLEMENT GUARD: one completed deposit/withdrawal per on-chain transfer
        Index(
            'uq_transactions_settled_chain_reference',
            'chain_tx_reference',
            unique=True,
            postgresql_where=text(
                "status = 'completed' AND kind IN ('deposit', 'withdrawal') AND chain_tx_reference IS NOT NULL"
            ),
            sqlite_where=text(
                "status = 'completed' AND kind IN ('deposit', 'withdrawal') AND chain_tx_reference IS NOT NULL"
            ),
        ),
    )

    @property
    def kind_enum(self) -> TransactionKind:
        return TransactionKind(self.kind)

    @property
    def status_enum(self) -> TransactionStatus:
        return TransactionStatus(self.status)

    def __repr__(self):
        return (
            f"<TransactionRecord(id={self.id}, kind='{self.kind}', account_id='{self.account_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class DepositIntent(Base):
    """Expected deposit fingerprint; at most one per account"""
    __tablename__ = 'deposit_intents'

    account_id = Column(String(64), ForeignKey('accounts.id'), primary_key=True)
    expected_amount = Column(TOKEN_AMOUNT, nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False)
    expires_at = Column(DateTime(timezone=False), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint('expected_amount > 0', name='ck_deposit_intents_amount_positive'),
        # Amount is the only thing identifying the sender on the shared deposit address
        Index('uq_deposit_intents_expected_amount', 'expected_amount', unique=True),
    )

    def __repr__(self):
        return f"<DepositIntent(account_id='{self.account_id}', expected_amount={self.expected_amount})>"


class ExchangeRate(Base):
    """Current token to fiat rates (singleton row, id=1)"""
    __tablename__ = 'exchange_rates'

    id = Column(Integer, primary_key=True)
    rate_usd = Column(TOKEN_AMOUNT, nullable=False)
    rate_uah = Column(TOKEN_AMOUNT, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('id = 1', name='ck_exchange_rates_singleton'),
        CheckConstraint('rate_usd > 0 AND rate_uah > 0', name='ck_exchange_rates_positive'),
    )

    def rate_for(self, currency: FiatCurrency):
        return self.rate_usd if currency == FiatCurrency.USD else self.rate_uah

    def __repr__(self):
        return f"<ExchangeRate(usd={self.rate_usd}, uah={self.rate_uah})>"
