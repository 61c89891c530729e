"""
Money value object for peso amounts.

Money(amount="25.00") == Money(amount=Decimal("25")) ✓

Rules:
- Backed by Decimal, arithmetic in a private context (38 digits, HALF_UP)
- Full precision is kept through arithmetic; precision is only reduced by
  quantized()/format_pesos() and by the 2-place storage columns
- Floats are accepted only when they are exact binary values (0.5, 25.0);
  0.1 and friends must come in as strings
"""

from __future__ import annotations

import re
from decimal import (
    ROUND_HALF_UP,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
)
from typing import Any, Dict, Iterable, Union

from pydantic import BaseModel, ConfigDict, field_validator

from .formatting import ES_MX, FormatContext

MoneyInput = Union["Money", Decimal, int, float, str]

_CONTEXT = Context(
    prec=38,
    rounding=ROUND_HALF_UP,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

CENT = Decimal("0.01")

# Largest float magnitude whose integer part is still exact in a double
MAX_SAFE_FLOAT = 2**53

_DENOMINATIONS = tuple(
    Decimal(d)
    for d in (
        "500", "200", "100", "50", "20", "10", "5", "2", "1",
        "0.50", "0.20", "0.10", "0.05", "0.01",
    )
)

_PARSE_PATTERN = re.compile(r"^-?\d+(\.\d{1,2})?$")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, bool):
        raise ValueError("Booleans are not monetary amounts")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError("Monetary amount must be finite")
        if abs(value) > MAX_SAFE_FLOAT:
            raise ValueError(f"Float amount {value!r} exceeds the safe magnitude; use a string")
        exact = Decimal(value)
        if exact != Decimal(repr(value)):
            raise ValueError(f"Float amount {value!r} is not exact in binary; use a string")
        result = exact
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid monetary amount: {value!r}") from e
    else:
        raise ValueError(f"Unsupported monetary type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError("Monetary amount must be finite")
    return result


class Money(BaseModel):
    """
    Immutable peso amount.

    Arithmetic returns new instances; comparisons are exact decimal
    comparisons (Money("1.0") == Money("1.00")).
    """

    model_config = ConfigDict(frozen=True)

    amount: Decimal

    def __init__(self, amount: MoneyInput = 0, **data: Any) -> None:
        super().__init__(amount=amount, **data)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Decimal:
        """Convert and guard the raw input. No rounding happens here."""
        return _to_decimal(v)

    # Construction helpers

    @classmethod
    def coerce(cls, value: Any) -> Money:
        """Return value as Money, building one when needed."""
        if isinstance(value, Money):
            return value
        return cls(value)

    @classmethod
    def zero(cls) -> Money:
        return cls("0.00")

    @classmethod
    def from_centavos(cls, centavos: int) -> Money:
        """Build from an integer count of centavos (1250 -> 12.50)."""
        if isinstance(centavos, bool) or not isinstance(centavos, int):
            raise ValueError("Centavos must be an integer")
        return cls(Decimal(centavos).scaleb(-2))

    @classmethod
    def parse(cls, text: str) -> Money:
        """
        Parse operator input such as ``$1,234.50`` or ``150``.

        Raises:
            ValueError: If the text is not a plain amount with at most 2 decimals
        """
        cleaned = re.sub(r"[\$\s,]", "", text)
        if cleaned.lower().endswith("pesos"):
            cleaned = cleaned[: -len("pesos")]
        if not _PARSE_PATTERN.match(cleaned):
            raise ValueError(f"Invalid money format: {text!r}")
        return cls(cleaned)

    @classmethod
    def sum(cls, amounts: Iterable[Money]) -> Money:
        total = cls.zero()
        for amount in amounts:
            total = total + amount
        return total

    # Arithmetic

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(_CONTEXT.add(self.amount, other.amount))

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(_CONTEXT.subtract(self.amount, other.amount))

    def __mul__(self, factor: Union[int, Decimal, str]) -> Money:
        """
        Scale by a period count or exact decimal factor.

        Floats are refused; money times an inexact factor is how drift starts.
        """
        if isinstance(factor, (bool, float)) or isinstance(factor, Money):
            return NotImplemented
        if isinstance(factor, str):
            factor = _to_decimal(factor)
        if not isinstance(factor, (int, Decimal)):
            return NotImplemented
        return Money(_CONTEXT.multiply(self.amount, Decimal(factor)))

    __rmul__ = __mul__

    def __truediv__(self, divisor: Union[int, Decimal, str]) -> Money:
        """Divide by a scalar. Reporting only; never applied to ledger totals."""
        if isinstance(divisor, (bool, float)) or isinstance(divisor, Money):
            return NotImplemented
        divisor = _to_decimal(divisor)
        if divisor == 0:
            raise ZeroDivisionError("Cannot divide money by zero")
        return Money(_CONTEXT.divide(self.amount, divisor))

    def __neg__(self) -> Money:
        return Money(_CONTEXT.minus(self.amount))

    def __abs__(self) -> Money:
        return Money(_CONTEXT.abs(self.amount))

    def ratio(self, other: Money) -> Decimal:
        """self / other as a plain Decimal (e.g. savings percentage)."""
        if other.amount == 0:
            raise ZeroDivisionError("Cannot compute a ratio against zero")
        return _CONTEXT.divide(self.amount, other.amount)

    # Comparisons

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount

    def __hash__(self) -> int:
        return hash(self.amount)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    # Cash handling

    def calculate_change(self, amount_paid: Money) -> Money:
        """
        Change owed when amount_paid is handed over for this amount.

        Raises:
            ValueError: If amount_paid does not cover this amount
        """
        if amount_paid < self:
            raise ValueError("Amount paid is insufficient")
        return amount_paid - self

    def split_into_denominations(self) -> Dict[str, int]:
        """
        Break a (change) amount into bills and coins, largest first.

        Example: Money("37.50") -> {"$20": 1, "$10": 1, "$5": 1, "$2": 1, "$0.50": 1}
        """
        remaining = self.quantized().amount
        if remaining < 0:
            raise ValueError("Cannot split a negative amount")

        result: Dict[str, int] = {}
        for denomination in _DENOMINATIONS:
            count = int(remaining // denomination)
            if count > 0:
                result[f"${denomination}"] = count
                remaining -= denomination * count
        return result

    # Precision reduction and rendering

    def quantized(self) -> Money:
        """Round HALF_UP to centavos."""
        return Money(self.amount.quantize(CENT, rounding=ROUND_HALF_UP, context=_CONTEXT))

    def is_centavo_exact(self) -> bool:
        """True when no precision is lost by storing two decimal places."""
        return self.amount == self.quantized().amount

    def to_database(self) -> str:
        """Fixed two-place string used by storage and JSON payloads."""
        return f"{self.quantized().amount:.2f}"

    def format_pesos(self, ctx: FormatContext = ES_MX) -> str:
        """
        Render for receipts and responses, e.g. ``$1,234.50 pesos``.

        Args:
            ctx: Formatting context (separators, symbol, suffix)
        """
        value = self.quantized().amount
        sign = "-" if value < 0 else ""
        grouped = ctx.group_number(f"{abs(value):,.2f}")
        return f"{sign}{ctx.currency_symbol}{grouped}{ctx.currency_suffix}"

    def __str__(self) -> str:
        return self.to_database()

    def __repr__(self) -> str:
        return f"Money({self.amount})"
