"""
Deposit Intent Registry

All accounts deposit to one shared address, so an incoming transfer is matched
to its account by amount alone. Each intent therefore expects a base amount plus
a random 4-digit fractional suffix, unique across stored intents, and lives for
a fixed TTL measured from creation. Intents are durable rows checked on read so
they survive restarts and are shared by every worker process.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import Account, DepositIntent
from utils.datetime_helpers import Clock, get_naive_utc_now, is_expired
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)
from utils.settlement_errors import AccountNotFound, InvalidAmount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenIntent:
    """Snapshot of an open deposit intent"""
    account_id: str
    expected_amount: Decimal
    created_at: datetime
    expires_at: datetime


def _snapshot(row: DepositIntent) -> OpenIntent:
    return OpenIntent(
        account_id=row.account_id,
        expected_amount=MonetaryDecimal.quantize_token(row.expected_amount),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


class DepositIntentRegistry:
    """Durable, TTL-bound store of expected deposit fingerprints"""

    SUFFIX_DIGITS = 4
    MAX_DRAW_ATTEMPTS = 25

    def __init__(self, session_factory=None, ttl: timedelta = None, base_amount: Decimal = None,
                 clock: Clock = get_naive_utc_now, rng: random.Random = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.ttl = ttl or timedelta(hours=Config.DEPOSIT_INTENT_TTL_HOURS)
        self.base_amount = base_amount if base_amount is not None else Config.DEPOSIT_BASE_AMOUNT
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    def draw_amount(self, base_amount: Decimal = None) -> Decimal:
        """Base amount plus a random suffix in [0.0000, 0.9999]"""
        base = MonetaryDecimal.parse_token_amount(base_amount if base_amount is not None else self.base_amount)
        suffix = Decimal(self.rng.randrange(10 ** self.SUFFIX_DIGITS)).scaleb(-self.SUFFIX_DIGITS)
        return MonetaryDecimal.quantize_token(base + suffix)

    def open(self, account_id: str, expected_amount: Decimal = None, base_amount: Decimal = None) -> OpenIntent:
        """
        Open a new intent for the account, replacing any existing one.

        When no expected amount is given one is drawn, redrawing on collision
        with another account's intent. An explicit amount that collides raises
        InvalidAmount.
        """
        explicit = expected_amount is not None
        if explicit:
            expected_amount = MonetaryDecimal.parse_token_amount(expected_amount)

        for attempt in range(1, self.MAX_DRAW_ATTEMPTS + 1):
            amount = expected_amount if explicit else self.draw_amount(base_amount)
            try:
                intent = self._store(account_id, amount)
            except IntegrityError:
                if explicit:
                    raise InvalidAmount(f"Amount {amount} is already expected from another account")
                logger.debug(f"DEPOSIT_INTENT: amount {amount} in use, redrawing (attempt {attempt})")
                continue

            logger.info(
                f"📥 DEPOSIT_INTENT_OPENED: account={account_id} "
                f"expected={MonetaryDecimal.format_token(intent.expected_amount)} expires={intent.expires_at.isoformat()}"
            )
            financial_audit_logger.log_financial_event(
                event_type=FinancialEventType.DEPOSIT_INTENT_OPENED,
                account_id=account_id,
                financial_context=FinancialContext(amount=intent.expected_amount, currency=Config.TOKEN_SYMBOL),
            )
            return intent

        raise InvalidAmount(f"Could not allocate a unique deposit amount after {self.MAX_DRAW_ATTEMPTS} attempts")

    def _store(self, account_id: str, amount: Decimal) -> OpenIntent:
        now = self.clock()
        with managed_session(self.session_factory) as session:
            if session.get(Account, account_id) is None:
                raise AccountNotFound(f"Account {account_id} not found")

            session.execute(delete(DepositIntent).where(DepositIntent.account_id == account_id))
            # An expired intent must not block a live one from reusing its amount
            session.execute(
                delete(DepositIntent).where(
                    DepositIntent.expected_amount == amount,
                    DepositIntent.expires_at <= now,
                )
            )
            row = DepositIntent(
                account_id=account_id,
                expected_amount=amount,
                created_at=now,
                expires_at=now + self.ttl,
            )
            session.add(row)
            session.flush()
            return _snapshot(row)

    def get(self, account_id: str) -> Optional[OpenIntent]:
        """Open intent for the account, or None if absent or expired (expired rows are cleared)"""
        with managed_session(self.session_factory) as session:
            row = session.get(DepositIntent, account_id)
            if row is None:
                return None

            if is_expired(row.expires_at, self.clock()):
                logger.info(f"⌛ DEPOSIT_INTENT_EXPIRED: account={account_id} created={row.created_at.isoformat()}")
                session.delete(row)
                return None

            return _snapshot(row)

    def clear(self, account_id: str, session: Optional[Session] = None) -> bool:
        """Remove the account's intent; joins the caller's transaction when given a session"""
        stmt = delete(DepositIntent).where(DepositIntent.account_id == account_id)
        if session is not None:
            return session.execute(stmt).rowcount > 0
        with managed_session(self.session_factory) as owned:
            return owned.execute(stmt).rowcount > 0

    def purge_expired(self) -> int:
        with managed_session(self.session_factory) as session:
            removed = session.execute(
                delete(DepositIntent).where(DepositIntent.expires_at <= self.clock())
            ).rowcount
        if removed:
            logger.info(f"🧹 DEPOSIT_INTENT_PURGE: removed {removed} expired intents")
        return removed

    def count_open(self) -> int:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(DepositIntent.account_id).where(DepositIntent.expires_at > self.clock())
            ).all()
        return len(rows)
