from decimal import Decimal

import pytest

from money import from_units, parse_amount, present, to_units


def test_parse_amount_accepts_symbols_and_comma_decimals() -> None:
    assert parse_amount("₹1 250,50") == Decimal("1250.50")
    assert parse_amount("$10.005") == Decimal("10.005")
    assert parse_amount(10.005) == Decimal("10.005")
    assert parse_amount(200) == Decimal("200")


def test_parse_amount_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        parse_amount("abc")
    with pytest.raises(ValueError):
        parse_amount("-5")
    with pytest.raises(ValueError):
        parse_amount("1.00001")
    with pytest.raises(ValueError):
        parse_amount("100000000")
    with pytest.raises(ValueError):
        parse_amount(True)


def test_scaled_units_are_exact() -> None:
    assert to_units(Decimal("10.005")) == 100050
    assert from_units(to_units(Decimal("10.005")) * 2) == Decimal("20.01")


def test_present_rounds_half_up_to_cents() -> None:
    assert present(Decimal("20.010")) == Decimal("20.01")
    assert present(Decimal("10.005")) == Decimal("10.01")
    assert present(Decimal("-0.125")) == Decimal("-0.13")
    assert str(present(Decimal("3"))) == "3.00"
