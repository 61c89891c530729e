"""Column types shared by the models."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

from parking_core.domain.money import Money


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


class MoneyColumn(TypeDecorator):
    """
    Fixed two-place money column.

    NUMERIC(12, 2) where the backend has an exact decimal type. SQLite stores
    REAL for NUMERIC, so there the value is kept as its two-place string.
    Amounts that would lose centavos on the way in are refused, not rounded.
    """

    impl = Numeric(12, 2)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(20))
        return dialect.type_descriptor(Numeric(12, 2, asdecimal=True))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        money = Money.coerce(value)
        if not money.is_centavo_exact():
            raise ValueError(f"Amount {money.amount} has more than two decimal places")
        if dialect.name == "sqlite":
            return money.to_database()
        return Decimal(money.to_database())

    def process_result_value(self, value: Any, dialect: Dialect) -> Money | None:
        if value is None:
            return None
        return Money(str(value))


class UTCDateTime(TypeDecorator):
    """DateTime that only accepts aware values and always returns UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not stored; attach a timezone")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
