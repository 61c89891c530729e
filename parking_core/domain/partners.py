"""
Partner-business pricing.

A partner profile is a flat or hourly rate with a day/time validity window.
It never touches the regular PricingPolicy; at exit both amounts are
computed and the operator picks which one to charge.
"""
from __future__ import annotations

from datetime import datetime, time
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import BusinessLogicError, ErrorCode
from .money import Money
from .pricing import MoneyField

WEEKDAYS: Tuple[str, ...] = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


class PartnerRate(BaseModel):
    """Alternate pricing profile of a partner business."""

    model_config = ConfigDict(frozen=True)

    flat_rate: Optional[MoneyField] = None
    hourly_rate: Optional[MoneyField] = None
    max_hours: Optional[int] = Field(default=None, gt=0)
    valid_days: Tuple[str, ...] = WEEKDAYS
    valid_time_start: Optional[time] = None
    valid_time_end: Optional[time] = None

    @field_validator("valid_days", mode="before")
    @classmethod
    def normalize_days(cls, v):
        if isinstance(v, str):
            v = [v]
        days = tuple(str(d).strip().upper() for d in v)
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekdays: {unknown}")
        if not days:
            raise ValueError("At least one valid day is required")
        return days

    @model_validator(mode="after")
    def validate_rates(self) -> "PartnerRate":
        has_flat = self.flat_rate is not None and self.flat_rate.is_positive()
        has_hourly = self.hourly_rate is not None and self.hourly_rate.is_positive()
        if has_flat == has_hourly:
            raise ValueError("Exactly one of flat_rate or hourly_rate must be set")
        if (self.valid_time_start is None) != (self.valid_time_end is None):
            raise ValueError("valid_time_start and valid_time_end must be set together")
        if self.valid_time_start is not None and self.valid_time_start >= self.valid_time_end:
            raise ValueError("valid_time_start must be before valid_time_end")
        return self

    @property
    def is_flat(self) -> bool:
        return self.flat_rate is not None and self.flat_rate.is_positive()

    def ensure_valid_at(self, moment: datetime) -> None:
        """
        Raises:
            BusinessLogicError: INVALID_DAY or INVALID_TIME outside the window
        """
        day = WEEKDAYS[moment.weekday()]
        if day not in self.valid_days:
            raise BusinessLogicError(
                ErrorCode.INVALID_DAY,
                f"Partner rate is not valid on {day}",
                {"day": day, "valid_days": ",".join(self.valid_days)},
            )
        if self.valid_time_start is not None:
            # Minute resolution, both ends inclusive
            current = moment.time().replace(second=0, microsecond=0)
            if not (self.valid_time_start <= current <= self.valid_time_end):
                raise BusinessLogicError(
                    ErrorCode.INVALID_TIME,
                    f"Partner rate is valid only from {self.valid_time_start:%H:%M} "
                    f"to {self.valid_time_end:%H:%M}",
                    {"time": f"{current:%H:%M}"},
                )


def billable_hours(duration_minutes: int) -> int:
    """Started hours, at least one."""
    return max(1, -(-duration_minutes // 60))


def partner_amount(rate: PartnerRate, duration_minutes: int) -> Money:
    if duration_minutes < 0:
        raise ValueError("Duration cannot be negative")
    if rate.is_flat:
        return rate.flat_rate
    hours = billable_hours(duration_minutes)
    if rate.max_hours is not None:
        hours = min(hours, rate.max_hours)
    return rate.hourly_rate * hours


class RateComparison(BaseModel):
    """Both candidate amounts for a partner ticket exit."""

    model_config = ConfigDict(frozen=True)

    duration_minutes: int
    partner_amount: Money
    regular_amount: Money
    savings: Money
    savings_percentage: Decimal

    @classmethod
    def build(cls, duration_minutes: int, partner: Money, regular: Money) -> "RateComparison":
        savings = regular - partner
        if regular.is_zero():
            percentage = Decimal("0")
        else:
            percentage = (savings.ratio(regular) * 100).quantize(Decimal("0.01"))
        return cls(
            duration_minutes=duration_minutes,
            partner_amount=partner,
            regular_amount=regular,
            savings=savings,
            savings_percentage=percentage,
        )
