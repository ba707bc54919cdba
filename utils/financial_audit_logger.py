"""
Financial Audit Logger
Emits one structured JSON line per state-changing ledger event on the
`financial_audit` logger so the hosting process can route it to a durable sink.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("financial_audit")


class FinancialEventType(Enum):
    """Types of financial events for ledger tracking"""

    # Deposit events
    DEPOSIT_INTENT_OPENED = "deposit_intent_opened"
    DEPOSIT_SETTLED = "deposit_settled"
    DEPOSIT_REJECTED = "deposit_rejected"

    # Withdrawal events
    WITHDRAWAL_RESERVED = "withdrawal_reserved"
    WITHDRAWAL_PROCESSING = "withdrawal_processing"
    WITHDRAWAL_SUBMITTED = "withdrawal_submitted"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"

    # Exchange events
    EXCHANGE_REQUESTED = "exchange_requested"
    EXCHANGE_COMPLETED = "exchange_completed"
    EXCHANGE_REJECTED = "exchange_rejected"
    EXCHANGE_RATE_UPDATED = "exchange_rate_updated"

    # System events
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"
    STALE_WITHDRAWAL_DETECTED = "stale_withdrawal_detected"


@dataclass
class FinancialContext:
    """Financial context for audit events"""
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    fee_amount: Optional[Decimal] = None
    fiat_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        """Decimal values are rendered as strings so no precision is lost"""
        result = {}
        for key, value in self.__dict__.items():
            if value is not None:
                result[key] = str(value) if isinstance(value, Decimal) else value
        return result


class FinancialAuditLogger:
    """Structured audit trail for ledger state changes"""

    def __init__(self, sink: logging.Logger = None):
        self.sink = sink or audit_logger

    def log_financial_event(
        self,
        event_type: FinancialEventType,
        account_id: Optional[str] = None,
        transaction_id: Optional[int] = None,
        financial_context: Optional[FinancialContext] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Emit a financial event.

        Returns:
            Event ID for correlation
        """
        event_id = str(uuid.uuid4())
        payload = {
            "event_id": event_id,
            "event_type": event_type.value,
            "timestamp": get_naive_utc_now().isoformat(),
            "account_id": account_id,
            "transaction_id": transaction_id,
            "previous_state": previous_state,
            "new_state": new_state,
        }
        if financial_context is not None:
            payload["financial"] = financial_context.to_dict()
        if additional_data:
            payload["data"] = additional_data

        level = logging.CRITICAL if event_type == FinancialEventType.LEDGER_INVARIANT_VIOLATION else logging.INFO
        try:
            self.sink.log(level, json.dumps(payload, default=str, sort_keys=True))
        except (TypeError, ValueError) as e:
            logger.error(f"❌ AUDIT_SERIALIZE_FAILED: {event_type.value} {transaction_id}: {e}")
            self.sink.log(level, f"{event_type.value} account={account_id} transaction={transaction_id}")
        return event_id


financial_audit_logger = FinancialAuditLogger()
