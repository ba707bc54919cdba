"""
Exchange Rate Service
Current token -> USD/UAH rates kept in a singleton row (id=1); no history is retained.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import ExchangeRate, FiatCurrency
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import FinancialEventType, financial_audit_logger
from utils.settlement_errors import InvalidAmount

logger = logging.getLogger(__name__)

SINGLETON_ID = 1


class ExchangeRateService:
    """Reads and administers the singleton rate row"""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def get_current_rates(self, session: Optional[Session] = None) -> ExchangeRate:
        """Current rates, creating the row with configured defaults on first read"""
        if session is not None:
            return self._load_or_create(session)
        try:
            with managed_session(self.session_factory) as owned:
                return self._load_or_create(owned)
        except IntegrityError:
            # Another worker created the row first
            with managed_session(self.session_factory) as owned:
                return owned.get(ExchangeRate, SINGLETON_ID)

    @staticmethod
    def _load_or_create(session: Session) -> ExchangeRate:
        rates = session.get(ExchangeRate, SINGLETON_ID)
        if rates is None:
            rates = ExchangeRate(
                id=SINGLETON_ID,
                rate_usd=Config.DEFAULT_RATE_USD,
                rate_uah=Config.DEFAULT_RATE_UAH,
                updated_at=get_naive_utc_now(),
            )
            session.add(rates)
            session.flush()
            logger.info(f"💱 EXCHANGE_RATES: initialized defaults USD={rates.rate_usd} UAH={rates.rate_uah}")
        return rates

    def update_rates(self, rate_usd=None, rate_uah=None) -> ExchangeRate:
        """Update only the supplied rates; each must be a positive decimal"""
        new_usd = MonetaryDecimal.parse_token_amount(rate_usd) if rate_usd is not None else None
        new_uah = MonetaryDecimal.parse_token_amount(rate_uah) if rate_uah is not None else None
        if new_usd is None and new_uah is None:
            raise InvalidAmount("No rate supplied")

        with managed_session(self.session_factory) as session:
            rates = self._load_or_create(session)
            previous = f"USD={rates.rate_usd} UAH={rates.rate_uah}"
            if new_usd is not None:
                rates.rate_usd = new_usd
            if new_uah is not None:
                rates.rate_uah = new_uah
            rates.updated_at = get_naive_utc_now()
            session.flush()

        logger.info(f"💱 EXCHANGE_RATES_UPDATED: {previous} -> USD={rates.rate_usd} UAH={rates.rate_uah}")
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.EXCHANGE_RATE_UPDATED,
            previous_state=previous,
            new_state=f"USD={rates.rate_usd} UAH={rates.rate_uah}",
        )
        return rates

    def rate_for(self, currency: FiatCurrency, session: Optional[Session] = None) -> Decimal:
        return Decimal(self.get_current_rates(session).rate_for(currency))

    def convert_to_fiat(self, amount, currency: FiatCurrency, session: Optional[Session] = None) -> Decimal:
        """Token amount in fiat, 2 places rounded half-up"""
        return MonetaryDecimal.multiply_rate(amount, self.rate_for(currency, session))
