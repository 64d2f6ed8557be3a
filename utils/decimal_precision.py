"""
Decimal Precision Utilities for ledger amounts
Every monetary value crossing a module boundary is a Decimal
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Union

from utils.ledger_exceptions import InvalidAmount

logger = logging.getLogger(__name__)

# 38 significant digits matches NUMERIC(38, 18)
getcontext().prec = 38

Number = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    AMOUNT_PRECISION = Decimal("0.000000000000000001")  # 18 places, widest token decimals
    USD_PRECISION = Decimal("0.01")
    USD_VALUE_PRECISION = Decimal("0.00000001")  # stored advisory value
    CRYPTO_DISPLAY_PRECISION = Decimal("0.00000001")

    @classmethod
    def to_decimal(cls, value: Number, context: str = "amount") -> Decimal:
        """Convert to Decimal, raising InvalidAmount for anything unparseable"""
        if value is None:
            raise InvalidAmount(f"Missing {context}")
        if isinstance(value, bool):
            raise InvalidAmount(f"Invalid {context}: {value!r}")
        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value))
            except (InvalidOperation, ValueError) as e:
                raise InvalidAmount(f"Invalid {context}: {value!r}") from e

        if not decimal_value.is_finite():
            raise InvalidAmount(f"Invalid {context}: {value!r}")
        return decimal_value

    @classmethod
    def to_positive_amount(cls, value: Number, context: str = "amount") -> Decimal:
        """Parse an amount that must be strictly positive, quantized to storage precision"""
        decimal_value = cls.quantize_amount(cls.to_decimal(value, context))
        if decimal_value <= 0:
            raise InvalidAmount(f"{context.capitalize()} must be positive, got {value}")
        return decimal_value

    @classmethod
    def quantize_amount(cls, amount: Number) -> Decimal:
        """Quantize to storage precision, never rounding up"""
        return cls.to_decimal(amount).quantize(cls.AMOUNT_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def from_base_units(cls, raw: Union[int, str], decimals: int) -> Decimal:
        """Exact conversion of an integer on-chain amount (wei, satoshi, sun) to token units"""
        if isinstance(raw, str):
            raw = int(raw, 16) if raw.lower().startswith("0x") else int(raw)
        return (Decimal(raw) / (Decimal(10) ** decimals)).quantize(
            cls.AMOUNT_PRECISION, rounding=ROUND_DOWN
        )

    @classmethod
    def usd_value(cls, amount: Number, price: Union[float, Decimal]) -> Decimal:
        """Advisory USD value of amount at price"""
        return (cls.to_decimal(amount) * cls.to_decimal(price, "price")).quantize(
            cls.USD_VALUE_PRECISION, rounding=ROUND_HALF_UP
        )

    @classmethod
    def format_usd(cls, amount: Number) -> str:
        """Format amount as USD string with proper precision"""
        amount_decimal = cls.to_decimal(amount).quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)
        return f"${amount_decimal:,.2f}"

    @classmethod
    def format_crypto(cls, amount: Number, currency: str) -> str:
        """Format amount as crypto string with trailing zeros removed"""
        amount_decimal = cls.to_decimal(amount).quantize(
            cls.CRYPTO_DISPLAY_PRECISION, rounding=ROUND_DOWN
        )
        formatted = f"{amount_decimal:f}".rstrip("0").rstrip(".")
        return f"{formatted or '0'} {currency}"

    @classmethod
    def plain(cls, amount: Number) -> str:
        """Non-exponent string form without trailing zeros"""
        formatted = f"{cls.to_decimal(amount):f}"
        if "." in formatted:
            formatted = formatted.rstrip("0").rstrip(".")
        return formatted or "0"
