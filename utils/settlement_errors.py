"""
Settlement error taxonomy

Every failure the ledger surfaces to callers is a SettlementError carrying a stable
upper-snake error code, a stable human-readable message safe to show to end users,
and whether the caller may retry the same request unchanged.
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for settlement and ledger errors"""

    error_code = "SETTLEMENT_ERROR"
    user_message = "The request could not be completed."
    is_retryable = False

    def __init__(self, message: str = None, error_code: str = None, is_retryable: bool = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.user_message)
        if error_code is not None:
            self.error_code = error_code
        if is_retryable is not None:
            self.is_retryable = is_retryable
        # Internal context for logs only, never rendered to users
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.user_message,
            "retryable": self.is_retryable,
        }


class InvalidAmount(SettlementError):
    error_code = "INVALID_AMOUNT"
    user_message = "Invalid amount. Please enter a positive number."


class InvalidReference(SettlementError):
    error_code = "INVALID_REFERENCE"
    user_message = "Invalid transaction hash format."


class InvalidAddress(SettlementError):
    error_code = "INVALID_ADDRESS"
    user_message = "Invalid wallet address format."


class InvalidCurrency(SettlementError):
    error_code = "INVALID_CURRENCY"
    user_message = "Unsupported fiat currency. Please use USD or UAH."


class NoOpenIntent(SettlementError):
    error_code = "NO_OPEN_INTENT"
    user_message = "No active deposit request found. Please start a new deposit."


class NotConfirmed(SettlementError):
    error_code = "NOT_CONFIRMED"
    user_message = "Transaction not found or not yet confirmed."
    is_retryable = True


class InsufficientConfirmations(SettlementError):
    error_code = "INSUFFICIENT_CONFIRMATIONS"
    user_message = "Transaction does not have enough confirmations yet. Please try again shortly."
    is_retryable = True


class NoTransferFound(SettlementError):
    error_code = "NO_TRANSFER_FOUND"
    user_message = "No token transfer to the deposit address was found in this transaction."


class AmountMismatch(SettlementError):
    error_code = "AMOUNT_MISMATCH"
    user_message = "The transferred amount does not match the expected deposit amount."


class DuplicateSettlement(SettlementError):
    error_code = "DUPLICATE_SETTLEMENT"
    user_message = "This transaction has already been processed."


class InsufficientBalance(SettlementError):
    error_code = "INSUFFICIENT_BALANCE"
    user_message = "Insufficient balance for this operation."


class InvalidState(SettlementError):
    error_code = "INVALID_STATE"
    user_message = "This transaction cannot be processed in its current state."


class ChainSubmissionFailed(SettlementError):
    error_code = "CHAIN_SUBMISSION_FAILED"
    user_message = "The on-chain transfer failed. Our team has been notified."


class AccountNotFound(SettlementError):
    error_code = "ACCOUNT_NOT_FOUND"
    user_message = "Account not found. Please start the bot first."


class TransactionNotFound(SettlementError):
    error_code = "TRANSACTION_NOT_FOUND"
    user_message = "Transaction not found."


class LedgerInvariantError(SettlementError):
    """Raised when the ledger is internally inconsistent (e.g. negative balance)"""
    error_code = "LEDGER_INVARIANT_VIOLATION"
    user_message = "An internal ledger error occurred. Our team has been notified."
