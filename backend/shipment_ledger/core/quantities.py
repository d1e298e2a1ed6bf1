"""
Units of account

Stock moves in whole cartons; sales are priced by weight from the scale.
The two are kept as distinct types so a type checker flags a weight passed
where a carton count is expected (and the other way round).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import NewType, Union

Cartons = NewType("Cartons", int)
Kilograms = NewType("Kilograms", Decimal)
Money = NewType("Money", Decimal)

WEIGHT_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.01")


def cartons(value: int) -> Cartons:
    """Coerce to a carton count. Rejects fractional and non-finite values."""
    try:
        whole = int(value)
    except (OverflowError, ValueError) as exc:
        raise TypeError(f"Carton counts must be whole numbers, got {value!r}") from exc
    if isinstance(value, bool) or whole != value:
        raise TypeError(f"Carton counts must be whole numbers, got {value!r}")
    return Cartons(whole)


def kilograms(value: Union[Decimal, int, str, float]) -> Kilograms:
    """Coerce to a weight rounded to grams."""
    return Kilograms(Decimal(str(value)).quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP))


def money(value: Union[Decimal, int, str, float]) -> Money:
    """Coerce to a monetary amount rounded to cents."""
    return Money(Decimal(str(value)).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP))


def weight_of(count: Cartons, weight_per_unit: Kilograms) -> Kilograms:
    """Nominal weight of a carton count."""
    return kilograms(Decimal(count) * Decimal(str(weight_per_unit)))
