"""Credit amount normalization."""
from decimal import Decimal, InvalidOperation
from typing import Union

from credit_ledger.exceptions import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_credits(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """
    Normalize a stored or requested amount to two decimal places.

    Floats go through ``str`` so 0.1 stays 0.10 instead of its binary expansion.
    ``None`` (an empty SUM) becomes zero.

    Raises:
        InvalidAmountError: If the value is not a finite number
    """
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid credit amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid credit amount: {value!r}")
    return amount.quantize(CENT)


def positive_credits(value: Union[Decimal, int, float, str], field: str = "amount") -> Decimal:
    """Normalize and require a strictly positive amount."""
    amount = to_credits(value)
    if amount <= ZERO:
        raise InvalidAmountError(f"{field} must be positive, got {amount}")
    return amount
