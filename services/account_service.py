"""Account registration keyed by the messaging platform's external id"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from database import managed_session
from models import Account
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class AccountService:
    """Accounts are created on first interaction and never deleted"""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def get(self, account_id: str) -> Optional[Account]:
        with managed_session(self.session_factory) as session:
            return session.get(Account, account_id)

    def find_or_create(self, account_id: str, display_name: Optional[str] = None) -> Account:
        """Create the account if missing; refresh the display name when a new one is supplied"""
        try:
            return self._find_or_create(account_id, display_name)
        except IntegrityError:
            # Concurrent first interaction created the row
            logger.debug(f"ACCOUNT: concurrent creation for {account_id}, reloading")
            return self._find_or_create(account_id, display_name)

    def _find_or_create(self, account_id: str, display_name: Optional[str]) -> Account:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            account = session.get(Account, account_id)
            if account is None:
                account = Account(
                    id=account_id,
                    display_name=display_name,
                    created_at=now,
                    last_activity_at=now,
                )
                session.add(account)
                session.flush()
                logger.info(f"👤 ACCOUNT_CREATED: {account_id} ({display_name or 'no name'})")
                return account

            if display_name and display_name != account.display_name:
                logger.info(f"👤 ACCOUNT_RENAMED: {account_id} '{account.display_name}' -> '{display_name}'")
                account.display_name = display_name
            account.last_activity_at = now
            return account
