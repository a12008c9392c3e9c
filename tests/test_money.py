"""Tests for utils.money (Decimal helpers)."""

from decimal import Decimal

import pytest

from liquidity_engine.utils.money import (
    decimal_sum, is_dust, money_close, percent_change, percentage_of,
    quantize_money, quantize_shares, safe_divide, shares_close, to_decimal,
)


class TestToDecimal:
    def test_float_goes_through_repr(self) -> None:
        assert to_decimal(0.1) == Decimal("0.1")

    def test_decimal_passes_through(self) -> None:
        value = Decimal("12.5")
        assert to_decimal(value) is value

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValueError):
            to_decimal("twelve")

    def test_bool_rejected(self) -> None:
        with pytest.raises(TypeError):
            to_decimal(True)


class TestArithmetic:
    def test_quantize_money_rounds_half_up(self) -> None:
        assert quantize_money("2.345") == Decimal("2.35")
        assert quantize_money("2.344") == Decimal("2.34")

    def test_quantize_shares_keeps_eight_places(self) -> None:
        assert quantize_shares("1.123456789") == Decimal("1.12345679")

    def test_safe_divide_by_zero_is_zero(self) -> None:
        assert safe_divide(5, 0) == Decimal("0")

    def test_percentage_of(self) -> None:
        assert percentage_of("400", "25") == Decimal("100")

    def test_percent_change(self) -> None:
        assert percent_change("50", "40") == Decimal("25")
        assert percent_change("30", "40") == Decimal("-25")
        assert percent_change("30", "0") == Decimal("0")

    def test_decimal_sum_of_mixed_inputs(self) -> None:
        assert decimal_sum(["0.1", 0.2, Decimal("0.3")]) == Decimal("0.6")


class TestTolerances:
    def test_money_close(self) -> None:
        assert money_close("100.00", "100.01")
        assert not money_close("100.00", "100.02")

    def test_shares_close(self) -> None:
        assert shares_close("1", "1.0001")
        assert not shares_close("1", "1.001")

    def test_dust(self) -> None:
        assert is_dust("0.00005")
        assert is_dust("-0.00005")
        assert not is_dust("0.001")
