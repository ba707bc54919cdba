"""Input validation for addresses, chain references, currencies and command payloads"""

import re
from decimal import Decimal
from typing import Tuple

from models import FiatCurrency
from utils.decimal_precision import MonetaryDecimal
from utils.settlement_errors import InvalidAddress, InvalidAmount, InvalidCurrency

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")


def is_valid_address(address: str) -> bool:
    """EVM account address: 0x followed by 40 hex digits"""
    if not address or not isinstance(address, str):
        return False
    return ADDRESS_PATTERN.match(address.strip()) is not None


def is_valid_tx_hash(reference: str) -> bool:
    """EVM transaction hash: 0x followed by 64 hex digits"""
    if not reference or not isinstance(reference, str):
        return False
    return TX_HASH_PATTERN.match(reference) is not None


def normalize_tx_hash(reference: str) -> str:
    """Canonical form of a chain reference: trimmed, lowercase hex"""
    return (reference or "").strip().lower()


def normalize_address(address: str) -> str:
    if not is_valid_address(address):
        raise InvalidAddress(f"Invalid address: {address!r}")
    return address.strip()


def addresses_equal(left: str, right: str) -> bool:
    """Case-insensitive comparison (checksummed vs lowercase hex)"""
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def parse_fiat_currency(value: str) -> FiatCurrency:
    try:
        return FiatCurrency((value or "").strip().upper())
    except ValueError:
        raise InvalidCurrency(f"Unsupported fiat currency: {value!r}")


def _split_pair(payload: str, usage: str) -> Tuple[str, str]:
    parts = (payload or "").split(",")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise InvalidAmount(f"Invalid format. Use: {usage}")
    return parts[0].strip(), parts[1].strip()


def parse_withdraw_command(payload: str) -> Tuple[Decimal, str]:
    """'amount,address' -> (amount, address)"""
    amount_text, address = _split_pair(payload, "/withdraw amount,walletAddress")
    return MonetaryDecimal.parse_token_amount(amount_text), normalize_address(address)


def parse_exchange_command(payload: str) -> Tuple[Decimal, FiatCurrency]:
    """'amount,fiat' -> (amount, currency)"""
    amount_text, fiat = _split_pair(payload, "/exchange amount,fiatType")
    return MonetaryDecimal.parse_token_amount(amount_text), parse_fiat_currency(fiat)
