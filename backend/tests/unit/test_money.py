"""Unit tests for credit amount normalization."""
from decimal import Decimal

import pytest

from credit_ledger.exceptions import InvalidAmountError
from credit_ledger.utils.money import ZERO, positive_credits, to_credits


@pytest.mark.parametrize(
    "value,expected",
    [
        (Decimal("10"), Decimal("10.00")),
        (0.1, Decimal("0.10")),
        (3, Decimal("3.00")),
        ("12.345", Decimal("12.34")),
        (None, ZERO),
    ],
)
def test_to_credits_normalizes(value, expected) -> None:
    assert to_credits(value) == expected


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", float("inf")])
def test_to_credits_rejects_non_numbers(value) -> None:
    with pytest.raises(InvalidAmountError):
        to_credits(value)


@pytest.mark.parametrize("value", [0, "-0.01", "0.001"])
def test_positive_credits_rejects_empty_amounts(value) -> None:
    with pytest.raises(InvalidAmountError):
        positive_credits(value)


def test_positive_credits_is_a_value_error() -> None:
    """Callers validating generic input can catch ValueError."""
    with pytest.raises(ValueError):
        positive_credits(-1)
