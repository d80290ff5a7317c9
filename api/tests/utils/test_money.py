"""
Unit tests for money helpers.
"""
from decimal import Decimal

import pytest

from portal.utils.money import format_cents, to_cents


class TestToCents:
    def test_decimal(self):
        assert to_cents(Decimal("1234.56")) == 123456

    def test_negative(self):
        assert to_cents(Decimal("-25.00")) == -2500

    def test_half_up_rounding(self):
        assert to_cents(Decimal("0.005")) == 1
        assert to_cents(Decimal("0.004")) == 0
        assert to_cents(Decimal("-0.005")) == -1

    def test_int_and_numeric_string(self):
        assert to_cents(12) == 1200
        assert to_cents("19.99") == 1999

    def test_no_float_drift(self):
        # 0.1 + 0.2 style errors cannot happen on Decimal input
        assert to_cents(Decimal("0.1") + Decimal("0.2")) == 30

    def test_rejects_float(self):
        with pytest.raises(TypeError):
            to_cents(19.99)

    def test_rejects_bool(self):
        with pytest.raises(TypeError):
            to_cents(True)

    @pytest.mark.parametrize("bad", ["abc", "NaN", "Infinity"])
    def test_rejects_non_amounts(self, bad):
        with pytest.raises(ValueError):
            to_cents(bad)


class TestFormatCents:
    def test_thousands(self):
        assert format_cents(123456) == "$1,234.56"

    def test_negative(self):
        assert format_cents(-2500) == "-$25.00"

    def test_show_sign(self):
        assert format_cents(500, show_sign=True) == "+$5.00"
        assert format_cents(0, show_sign=True) == "$0.00"

    def test_small_amount(self):
        assert format_cents(7) == "$0.07"
