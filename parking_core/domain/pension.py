"""
Pension (monthly subscription) date arithmetic and status rules.

Months are calendar months clamped to the end of the target month:
Jan 31 + 1 month = Feb 28/29.
"""
from __future__ import annotations

import math
from datetime import datetime
from enum import Enum

from dateutil.relativedelta import relativedelta

from .money import Money


class PensionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"


def add_months(moment: datetime, months: int) -> datetime:
    if months < 0:
        raise ValueError("months must be non-negative")
    return moment + relativedelta(months=months)


def elapsed_months(start: datetime, end: datetime) -> int:
    """
    Whole billing months between start and end, rounding a partial month up.

    elapsed_months(Jan 15, Apr 15) == 3; elapsed_months(Jan 15, Apr 16) == 4.
    """
    if end < start:
        raise ValueError("end must not be before start")
    delta = relativedelta(end, start)
    months = delta.years * 12 + delta.months
    if add_months(start, months) < end:
        months += 1
    return months


def pending_balance(monthly_rate: Money, start: datetime, end: datetime) -> Money:
    """Amount owed for the whole registered term of an unpaid customer."""
    return monthly_rate * max(elapsed_months(start, end), 1)


def days_remaining(end: datetime, now: datetime) -> int:
    return math.ceil((end - now).total_seconds() / 86400)


def pension_status(is_active: bool, end: datetime, now: datetime, expiring_days: int = 7) -> PensionStatus:
    if not is_active:
        return PensionStatus.INACTIVE
    remaining = days_remaining(end, now)
    if remaining < 0:
        return PensionStatus.EXPIRED
    if remaining <= expiring_days:
        return PensionStatus.EXPIRING_SOON
    return PensionStatus.ACTIVE


def pension_barcode(plate_number: str) -> str:
    return f"PENSION-{plate_number.strip().upper()}"
