"""Plain-text rendering of ledger entries for the messaging front-end"""

from datetime import datetime
from typing import Optional

from config import Config
from models import Account, TransactionKind, TransactionRecord, TransactionStatus
from utils.decimal_precision import MonetaryDecimal

STATUS_LABELS = {
    TransactionStatus.PENDING.value: "⏳ Pending",
    TransactionStatus.COMPLETED.value: "✅ Completed",
    TransactionStatus.FAILED.value: "❌ Failed",
    TransactionStatus.PROCESSING.value: "🔄 Processing",
}

KIND_LABELS = {
    TransactionKind.DEPOSIT.value: "📥 Deposit",
    TransactionKind.WITHDRAWAL.value: "📤 Withdrawal",
    TransactionKind.EXCHANGE.value: "💱 Exchange",
}


def format_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%b %d, %Y %H:%M:%S")


def transaction_summary(record: TransactionRecord, token_symbol: str = None) -> str:
    """Multi-line summary of a single ledger entry"""
    symbol = token_symbol or Config.TOKEN_SYMBOL
    lines = [
        f"🧾 Transaction #{record.id}",
        f"Type: {KIND_LABELS.get(record.kind, record.kind)}",
        f"Status: {format_status(record.status)}",
        f"Amount: {MonetaryDecimal.format_token(record.amount)} {symbol}",
    ]

    if record.kind == TransactionKind.EXCHANGE.value and record.fiat_amount is not None:
        lines.append(f"Fiat: {MonetaryDecimal.format_fiat(record.fiat_amount)} {record.fiat_currency}")

    if record.kind == TransactionKind.WITHDRAWAL.value:
        if record.fee is not None:
            lines.append(f"Fee: {MonetaryDecimal.format_token(record.fee)} {symbol}")
        if record.external_address:
            lines.append(f"Wallet: {record.external_address}")

    if record.chain_tx_reference:
        lines.append(f"TX Hash: {record.chain_tx_reference}")

    lines.append(f"Date: {format_date(record.created_at)}")
    return "\n".join(lines)


def exchange_request_summary(record: TransactionRecord, account: Optional[Account], token_symbol: str = None) -> str:
    """Admin notification for a pending exchange, with the commands that decide it"""
    symbol = token_symbol or Config.TOKEN_SYMBOL
    if account is not None:
        who = f"{account.display_name or 'No username'} (ID: {account.id})"
    else:
        who = f"Unknown (ID: {record.account_id})"

    lines = [
        "💱 NEW EXCHANGE REQUEST",
        "",
        f"Transaction ID: #{record.id}",
        f"User: {who}",
        f"Amount: {MonetaryDecimal.format_token(record.amount)} {symbol}",
        f"Fiat: {MonetaryDecimal.format_fiat(record.fiat_amount)} {record.fiat_currency}",
        f"Requested: {format_date(record.created_at)}",
        "",
        "Use these commands to process:",
        f"/complete_exchange {record.id} - Mark as completed",
        f"/reject_exchange {record.id} - Reject this exchange",
    ]
    return "\n".join(lines)
