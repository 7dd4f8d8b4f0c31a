from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

# Amounts are kept in ten-thousandths so that SQL SUM stays exact on every
# engine; anything finer than that is rejected at the input boundary.
AMOUNT_PLACES = 4
AMOUNT_SCALE = Decimal(10) ** AMOUNT_PLACES
AMOUNT_LIMIT = Decimal("100000000")
CENT = Decimal("0.01")

AmountLike = Union[Decimal, int, float, str]


def parse_amount(value: AmountLike, *, allow_negative: bool = False) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(repr(value))
    else:
        clean = str(value).strip()
        for symbol in ("₹", "€", "$", " "):
            clean = clean.replace(symbol, "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if amount < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    if abs(amount) >= AMOUNT_LIMIT:
        raise ValueError("Amount is too large")
    if amount != amount.quantize(Decimal(1).scaleb(-AMOUNT_PLACES)):
        raise ValueError(f"Amount supports at most {AMOUNT_PLACES} decimal places")
    return amount


def to_units(amount: AmountLike) -> int:
    if not isinstance(amount, Decimal):
        amount = Decimal(repr(amount)) if isinstance(amount, float) else Decimal(amount)
    return int((amount * AMOUNT_SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def from_units(units: Union[int, Decimal]) -> Decimal:
    return Decimal(units).scaleb(-AMOUNT_PLACES)


def present(amount: Decimal) -> Decimal:
    """Round an exact amount to cents for display."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """Exact decimal amount persisted as a scaled integer."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_units(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return from_units(value)
