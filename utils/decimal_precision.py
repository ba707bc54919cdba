#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from utils.settlement_errors import InvalidAmount

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 40

AmountLike = Union[str, int, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    TOKEN_PLACES = 6
    FIAT_PLACES = 2
    TOKEN_PRECISION = Decimal("0.000001")  # 6 decimal places for token amounts
    FIAT_PRECISION = Decimal("0.01")  # 2 decimal places for USD/UAH

    @classmethod
    def to_decimal(cls, value: AmountLike, context: str = "monetary") -> Decimal:
        """
        Convert a string, int or Decimal to Decimal.

        Floats are rejected outright: a float has already lost the exact value.
        """
        if isinstance(value, bool) or isinstance(value, float):
            logger.error(f"Refusing binary float for {context}: {value!r}")
            raise InvalidAmount(f"Float value not allowed for {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        elif isinstance(value, int):
            decimal_value = Decimal(value)
        elif isinstance(value, str):
            try:
                decimal_value = Decimal(value.strip())
            except InvalidOperation:
                raise InvalidAmount(f"Malformed amount for {context}: {value!r}")
        else:
            raise InvalidAmount(f"Unsupported amount type for {context}: {type(value).__name__}")

        if not decimal_value.is_finite():
            raise InvalidAmount(f"Non-finite amount for {context}: {value!r}")

        return decimal_value

    @classmethod
    def quantize_token(cls, amount: AmountLike) -> Decimal:
        """Quantize amount to token precision (6 decimal places)"""
        return cls.to_decimal(amount, "token").quantize(cls.TOKEN_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_fiat(cls, amount: AmountLike) -> Decimal:
        """Quantize amount to fiat precision (2 decimal places)"""
        return cls.to_decimal(amount, "fiat").quantize(cls.FIAT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def parse_token_amount(cls, text: AmountLike, allow_zero: bool = False) -> Decimal:
        """
        Parse a user or chain supplied token amount.

        Raises InvalidAmount for malformed, non-positive (or negative when
        allow_zero is set) values and for values finer than token precision.
        """
        amount = cls.to_decimal(text, "token_amount")

        if amount < 0 or (amount == 0 and not allow_zero):
            raise InvalidAmount(f"Amount must be positive: {text!r}")

        if amount != amount.quantize(cls.TOKEN_PRECISION, rounding=ROUND_HALF_UP):
            raise InvalidAmount(f"Amount has more than {cls.TOKEN_PLACES} decimal places: {text!r}")

        return amount.quantize(cls.TOKEN_PRECISION)

    @classmethod
    def multiply_rate(cls, amount: AmountLike, rate: AmountLike) -> Decimal:
        """Token amount times a fiat rate, quantized to fiat precision"""
        amount_decimal = cls.to_decimal(amount, "multiply_amount")
        rate_decimal = cls.to_decimal(rate, "multiply_rate")
        return (amount_decimal * rate_decimal).quantize(cls.FIAT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def format_token(cls, amount: AmountLike) -> str:
        """Token amount with exactly 6 fractional digits, e.g. '10.123400'"""
        return f"{cls.quantize_token(amount):f}"

    @classmethod
    def format_fiat(cls, amount: AmountLike) -> str:
        """Fiat amount with exactly 2 fractional digits, e.g. '395.00'"""
        return f"{cls.quantize_fiat(amount):f}"

    @classmethod
    def to_chain_units(cls, amount: AmountLike, decimals: int) -> int:
        """Ledger amount to the token's smallest on-chain unit"""
        scaled = cls.to_decimal(amount, "chain_units").scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(f"Amount {amount} not representable with {decimals} token decimals")
        return int(scaled)

    @classmethod
    def from_chain_units(cls, raw_value: int, decimals: int) -> Decimal:
        """Smallest on-chain unit to an exact Decimal token amount"""
        return Decimal(int(raw_value)).scaleb(-decimals)
