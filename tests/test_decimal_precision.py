"""
Regression Tests for Decimal Precision in ledger amounts
Amounts stay Decimal end-to-end and are never rounded up
"""

from datetime import datetime
from decimal import Decimal

import pytest

from database import managed_session
from utils.decimal_precision import MonetaryDecimal
from utils.id_generator import generate_deposit_id, generate_withdrawal_id
from utils.ledger_exceptions import InvalidAmount


class TestAmountParsing:
    """Parsing rejects anything that is not a finite number"""

    def test_float_goes_through_str(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1"), "float must not leak binary error"

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", ""])
    def test_unparseable(self, value):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.to_decimal(value)

    @pytest.mark.parametrize("value", ["0", "-1", "0.0000000000000000001"])
    def test_non_positive_after_quantize(self, value):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.to_positive_amount(value)

    def test_quantize_rounds_down(self):
        assert MonetaryDecimal.quantize_amount("1.9999999999999999999") == Decimal("1.999999999999999999")


class TestBaseUnits:
    """Integer on-chain amounts convert exactly"""

    def test_wei(self):
        assert MonetaryDecimal.from_base_units("1500000000000000000", 18) == Decimal("1.5")

    def test_hex_log_data(self):
        assert MonetaryDecimal.from_base_units(hex(25_000_000), 6) == Decimal("25")

    def test_satoshi(self):
        assert MonetaryDecimal.from_base_units(1, 8) == Decimal("0.00000001")

    def test_one_wei_survives(self):
        assert MonetaryDecimal.from_base_units(1, 18) == Decimal("0.000000000000000001")


class TestFormatting:

    def test_usd_value_precision(self):
        assert MonetaryDecimal.usd_value(Decimal("0.123456789"), 2000) == Decimal("246.91357800")

    def test_format_usd(self):
        assert MonetaryDecimal.format_usd(Decimal("1234.565")) == "$1,234.57"

    def test_format_crypto(self):
        assert MonetaryDecimal.format_crypto(Decimal("0.500000000000"), "ETH") == "0.5 ETH"
        assert MonetaryDecimal.format_crypto(Decimal("0"), "BTC") == "0 BTC"

    @pytest.mark.parametrize("amount,expected", [
        (Decimal("25.500000"), "25.5"),
        (Decimal("100"), "100"),
        (Decimal("1E-18"), "0.000000000000000001"),
        (Decimal("0.000"), "0"),
    ])
    def test_plain(self, amount, expected):
        assert MonetaryDecimal.plain(amount) == expected


class TestDailyIds:
    """PREFIX + YYYYMMDD + 6-digit daily sequence"""

    def test_sequence_per_prefix(self, session_factory):
        day = datetime(2024, 5, 1, 9, 30)
        with managed_session(session_factory) as session:
            assert generate_deposit_id(session, day) == "DEP20240501000001"
            assert generate_deposit_id(session, day) == "DEP20240501000002"
            assert generate_withdrawal_id(session, day) == "WD20240501000001"

    def test_sequence_restarts_each_day(self, session_factory):
        with managed_session(session_factory) as session:
            generate_deposit_id(session, datetime(2024, 5, 1, 23, 59))
            assert generate_deposit_id(session, datetime(2024, 5, 2, 0, 1)) == "DEP20240502000001"

    def test_sequence_survives_transactions(self, session_factory):
        day = datetime(2024, 5, 1)
        with managed_session(session_factory) as session:
            generate_deposit_id(session, day)
        with managed_session(session_factory) as session:
            assert generate_deposit_id(session, day) == "DEP20240501000002"
