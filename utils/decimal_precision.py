#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from typing import Union, Optional

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for USD
    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places for crypto
    RATE_PRECISION = Decimal("0.00000001")  # 8 decimal places for prices
    PERCENT_PRECISION = Decimal("0.00000001")

    @classmethod
    def to_decimal(cls, value: Optional[Numeric], context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal; invalid input raises ValueError"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValueError(f"Invalid {context} amount: {value!r}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Invalid {context} amount: {value!r}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize amount to USD precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_crypto(cls, amount: Numeric) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        return cls.to_decimal(amount, "crypto").quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        """Quantize a price to 8 decimal places"""
        return cls.to_decimal(rate, "exchange_rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_percent(cls, pct: Numeric) -> Decimal:
        return cls.to_decimal(pct, "percent").quantize(cls.PERCENT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def usd_to_asset(cls, usd_amount: Numeric, price: Numeric) -> Decimal:
        """Convert a USD value to an asset amount at the given asset/USD price, rounded down"""
        price_decimal = cls.to_decimal(price, "price")
        if price_decimal <= 0:
            raise ValueError(f"Price must be positive, got {price_decimal}")
        usd_decimal = cls.to_decimal(usd_amount, "USD")
        return (usd_decimal / price_decimal).quantize(cls.CRYPTO_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def percent_of(cls, part: Numeric, whole: Numeric) -> Decimal:
        """|part| / whole * 100, quantized; 0/0 is 0 and x/0 is 100"""
        part_decimal = abs(cls.to_decimal(part, "percent_part"))
        whole_decimal = cls.to_decimal(whole, "percent_whole")
        if whole_decimal == 0:
            return Decimal("0") if part_decimal == 0 else Decimal("100")
        return cls.quantize_percent(part_decimal / abs(whole_decimal) * Decimal("100"))

    @classmethod
    def is_positive(cls, amount: Numeric) -> bool:
        try:
            return cls.to_decimal(amount) > 0
        except ValueError:
            return False
