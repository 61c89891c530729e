"""
Fee calculation.

calculate_fee is a pure function of (duration, policy): no I/O, no clock, no
mutation. Calling it repeatedly for an ACTIVE ticket's running estimate is
always safe.
"""
from __future__ import annotations

from typing import Annotated, List, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from .errors import ValidationError
from .money import Money

MoneyField = Annotated[Money, BeforeValidator(Money.coerce)]


class PricingPolicy(BaseModel):
    """
    Snapshot of the active pricing configuration.

    increment_rates, when non-empty, replaces the flat increment_rate: the
    i-th increment period is charged increment_rates[min(i, last)].
    """

    model_config = ConfigDict(frozen=True)

    minimum_hours: int = Field(..., ge=0)
    minimum_rate: MoneyField
    increment_minutes: int = Field(..., gt=0)
    increment_rate: MoneyField
    increment_rates: Tuple[MoneyField, ...] = ()
    daily_special_hours: Optional[int] = Field(default=None, gt=0)
    daily_special_rate: Optional[MoneyField] = None
    monthly_rate: MoneyField
    lost_ticket_fee: MoneyField

    @model_validator(mode="after")
    def validate_daily_special(self) -> "PricingPolicy":
        if (self.daily_special_hours is None) != (self.daily_special_rate is None):
            raise ValueError("daily_special_hours and daily_special_rate must be set together")
        for rate in (self.minimum_rate, self.increment_rate, self.monthly_rate, self.lost_ticket_fee):
            if rate.is_negative():
                raise ValueError("Rates cannot be negative")
        return self

    @property
    def minimum_minutes(self) -> int:
        return self.minimum_hours * 60

    @property
    def has_daily_special(self) -> bool:
        return self.daily_special_hours is not None and self.daily_special_rate is not None


class IncrementCharge(BaseModel):
    """One line of incremental charges (a run of periods at the same rate)."""

    model_config = ConfigDict(frozen=True)

    periods: int
    period_minutes: int
    rate: Money
    amount: Money

    @property
    def label(self) -> str:
        return f"{self.periods} × {self.period_minutes} min"


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    minimum: Money
    increments: Tuple[IncrementCharge, ...] = ()
    subtotal: Money
    daily_special_applied: bool = False

    @property
    def increment_periods(self) -> int:
        return sum(charge.periods for charge in self.increments)


class FeeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration_minutes: int
    total: Money
    breakdown: FeeBreakdown


def _tiered_charges(periods: int, policy: PricingPolicy) -> List[IncrementCharge]:
    """Group consecutive periods that share a tier rate into one line."""
    rates = policy.increment_rates
    last = len(rates) - 1
    charges: List[IncrementCharge] = []

    run_rate: Optional[Money] = None
    run_length = 0
    for i in range(periods):
        rate = rates[min(i, last)]
        if run_rate is not None and rate != run_rate:
            charges.append(
                IncrementCharge(
                    periods=run_length,
                    period_minutes=policy.increment_minutes,
                    rate=run_rate,
                    amount=run_rate * run_length,
                )
            )
            run_length = 0
        run_rate = rate
        run_length += 1

    if run_rate is not None:
        charges.append(
            IncrementCharge(
                periods=run_length,
                period_minutes=policy.increment_minutes,
                rate=run_rate,
                amount=run_rate * run_length,
            )
        )
    return charges


def calculate_fee(duration_minutes: int, policy: PricingPolicy) -> FeeResult:
    """
    Amount owed for a stay of duration_minutes under policy.

    Args:
        duration_minutes: Whole minutes parked
        policy: Pricing policy snapshot

    Returns:
        FeeResult: total and itemized breakdown

    Raises:
        ValidationError: If the duration is negative
    """
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise ValidationError("Duration must be a whole number of minutes")
    if duration_minutes < 0:
        raise ValidationError(
            "Exit time is before entry time",
            context={"duration_minutes": duration_minutes},
        )

    minimum = policy.minimum_rate

    if duration_minutes <= policy.minimum_minutes:
        return FeeResult(
            duration_minutes=duration_minutes,
            total=minimum,
            breakdown=FeeBreakdown(minimum=minimum, increments=(), subtotal=minimum),
        )

    excess_minutes = duration_minutes - policy.minimum_minutes
    periods = -(-excess_minutes // policy.increment_minutes)

    if policy.increment_rates:
        charges = _tiered_charges(periods, policy)
    else:
        charges = [
            IncrementCharge(
                periods=periods,
                period_minutes=policy.increment_minutes,
                rate=policy.increment_rate,
                amount=policy.increment_rate * periods,
            )
        ]

    subtotal = minimum + Money.sum(charge.amount for charge in charges)
    total = subtotal
    special_applied = False

    if (
        policy.has_daily_special
        and duration_minutes <= policy.daily_special_hours * 60
        and total > policy.daily_special_rate
    ):
        total = policy.daily_special_rate
        special_applied = True

    return FeeResult(
        duration_minutes=duration_minutes,
        total=total,
        breakdown=FeeBreakdown(
            minimum=minimum,
            increments=tuple(charges),
            subtotal=subtotal,
            daily_special_applied=special_applied,
        ),
    )
