"""
Ledger Entry State Transitions
==============================

Each status change is expressed as a transition value carrying exactly the fields
that are valid for the target status. The store applies the status and those
fields in one UPDATE, so a record is never observed with a status whose
sub-fields are missing or stale.

Lifecycles:
- Deposit:    Pending -> Completed (only after chain verification)
- Withdrawal: Pending -> Processing -> Completed | Failed
- Exchange:   Pending -> Completed | Failed (administrative decision)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple, Union

from models import TransactionKind, TransactionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarkProcessing:
    """Withdrawal picked up for on-chain settlement"""
    target = TransactionStatus.PROCESSING

    def column_values(self) -> Dict[str, Any]:
        return {"status": self.target.value}


@dataclass(frozen=True)
class RecordChainSubmission:
    """Transfer broadcast; reference persisted before mining so a crash can be reconciled"""
    chain_tx_reference: str
    target = TransactionStatus.PROCESSING

    def column_values(self) -> Dict[str, Any]:
        return {"status": self.target.value, "chain_tx_reference": self.chain_tx_reference}


@dataclass(frozen=True)
class MarkCompleted:
    completed_at: datetime
    chain_tx_reference: Optional[str] = None
    confirmation_count: Optional[int] = None
    admin_note: Optional[str] = None
    target = TransactionStatus.COMPLETED

    def column_values(self) -> Dict[str, Any]:
        values = {"status": self.target.value, "completed_at": self.completed_at}
        if self.chain_tx_reference is not None:
            values["chain_tx_reference"] = self.chain_tx_reference
        if self.confirmation_count is not None:
            values["confirmation_count"] = self.confirmation_count
        if self.admin_note:
            values["admin_note"] = self.admin_note
        return values


@dataclass(frozen=True)
class MarkFailed:
    reason: str
    target = TransactionStatus.FAILED

    def column_values(self) -> Dict[str, Any]:
        return {"status": self.target.value, "admin_note": self.reason}


Transition = Union[MarkProcessing, RecordChainSubmission, MarkCompleted, MarkFailed]


class TransactionStateValidator:
    """Validates ledger entry transitions per transaction kind"""

    VALID_TRANSITIONS: Dict[TransactionKind, Dict[TransactionStatus, Set[TransactionStatus]]] = {
        TransactionKind.DEPOSIT: {
            TransactionStatus.PENDING: {TransactionStatus.COMPLETED},
            TransactionStatus.COMPLETED: set(),
        },
        TransactionKind.WITHDRAWAL: {
            TransactionStatus.PENDING: {TransactionStatus.PROCESSING},
            TransactionStatus.PROCESSING: {
                TransactionStatus.PROCESSING,  # chain reference recorded
                TransactionStatus.COMPLETED,
                TransactionStatus.FAILED,
            },
            TransactionStatus.COMPLETED: set(),
            TransactionStatus.FAILED: set(),
        },
        TransactionKind.EXCHANGE: {
            TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
            TransactionStatus.COMPLETED: set(),
            TransactionStatus.FAILED: set(),
        },
    }

    TERMINAL_STATES: Set[TransactionStatus] = {TransactionStatus.COMPLETED, TransactionStatus.FAILED}

    @classmethod
    def validate_transition(
        cls,
        kind: TransactionKind,
        from_status: TransactionStatus,
        transition: Transition,
        transaction_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a transition is allowed for a record of this kind.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"{kind.value} {transaction_id}" if transaction_id else kind.value
        to_status = transition.target

        if from_status == to_status and not isinstance(transition, RecordChainSubmission):
            return False, f"Record already {from_status.value}"

        valid_next_states = cls.VALID_TRANSITIONS.get(kind, {}).get(from_status, set())
        if to_status not in valid_next_states:
            logger.warning(
                f"❌ INVALID_TRANSITION: {ref} {from_status.value} -> {to_status.value} "
                f"Valid options: {sorted(s.value for s in valid_next_states)}"
            )
            return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

        if isinstance(transition, RecordChainSubmission) and kind != TransactionKind.WITHDRAWAL:
            return False, "Only withdrawals record a submitted chain reference"

        if isinstance(transition, MarkCompleted):
            if kind == TransactionKind.DEPOSIT and (
                not transition.chain_tx_reference or transition.confirmation_count is None
            ):
                return False, "Completed deposit requires chain reference and confirmation count"
            if kind == TransactionKind.WITHDRAWAL and (transition.confirmation_count or 0) < 1:
                return False, "Completed withdrawal requires at least one confirmation"

        logger.debug(f"✅ VALID_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
        return True, "Valid state transition"
