"""
Partner-business pricing tests.
"""
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import select

from parking_core.database.models import PartnerBusiness, Transaction
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.money import Money
from parking_core.domain.partners import (
    PartnerRate,
    RateComparison,
    billable_hours,
    partner_amount,
)

from tests.conftest import sqlite_settings

OPERATOR = "op-1"

WORKDAYS = ("MON", "TUE", "WED", "THU", "FRI")


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestPartnerRate:
    """Test suite for partner rate profiles."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"flat_rate": "30.00", "hourly_rate": "10.00"},
            {},
            {"flat_rate": "0"},
            {"flat_rate": "30.00", "valid_time_start": time(8, 0)},
            {"flat_rate": "30.00", "valid_time_start": time(20, 0), "valid_time_end": time(8, 0)},
            {"flat_rate": "30.00", "valid_days": ("MON", "FUNDAY")},
            {"flat_rate": "30.00", "valid_days": ()},
            {"hourly_rate": "10.00", "max_hours": 0},
        ],
    )
    def test_invalid_profiles(self, kwargs: dict) -> None:
        """Test the rate and window combinations that are refused."""
        with pytest.raises(ValueError):
            PartnerRate(**kwargs)

    @pytest.mark.unit
    def test_days_normalized(self) -> None:
        """Test that weekday names are upper-cased."""
        rate = PartnerRate(flat_rate="30.00", valid_days=["mon", " tue "])
        assert rate.valid_days == ("MON", "TUE")

    @pytest.mark.unit
    def test_flat_amount(self) -> None:
        """Test a flat rate ignores duration."""
        rate = PartnerRate(flat_rate="30.00")
        assert partner_amount(rate, 0) == Money("30.00")
        assert partner_amount(rate, 600) == Money("30.00")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "minutes,expected", [(0, "10.00"), (60, "10.00"), (61, "20.00"), (150, "30.00"), (600, "40.00")]
    )
    def test_hourly_amount(self, minutes: int, expected: str) -> None:
        """Test started hours, at least one, capped at max_hours."""
        rate = PartnerRate(hourly_rate="10.00", max_hours=4)
        assert partner_amount(rate, minutes) == Money(expected)

    @pytest.mark.unit
    def test_billable_hours(self) -> None:
        """Test started hours rounding."""
        assert billable_hours(0) == 1
        assert billable_hours(120) == 2
        assert billable_hours(121) == 3

    @pytest.mark.unit
    def test_valid_day(self) -> None:
        """Test the weekday window."""
        rate = PartnerRate(flat_rate="30.00", valid_days=WORKDAYS)
        rate.ensure_valid_at(_utc(2025, 3, 3, 12))  # Monday

        with pytest.raises(BusinessLogicError) as exc_info:
            rate.ensure_valid_at(_utc(2025, 3, 8, 12))  # Saturday
        assert exc_info.value.code == ErrorCode.INVALID_DAY

    @pytest.mark.unit
    def test_valid_time_inclusive_to_the_minute(self) -> None:
        """Test both window ends are inclusive at minute resolution."""
        rate = PartnerRate(
            flat_rate="30.00", valid_time_start=time(8, 0), valid_time_end=time(20, 0)
        )
        rate.ensure_valid_at(_utc(2025, 3, 3, 8, 0))
        rate.ensure_valid_at(_utc(2025, 3, 3, 20, 0, 59))

        for moment in (_utc(2025, 3, 3, 7, 59, 59), _utc(2025, 3, 3, 20, 1)):
            with pytest.raises(BusinessLogicError) as exc_info:
                rate.ensure_valid_at(moment)
            assert exc_info.value.code == ErrorCode.INVALID_TIME

    @pytest.mark.unit
    def test_rate_comparison(self) -> None:
        """Test savings and percentage against the regular fee."""
        comparison = RateComparison.build(150, Money("30.00"), Money("76.00"))

        assert comparison.savings == Money("46.00")
        assert comparison.savings_percentage == Decimal("60.53")

    @pytest.mark.unit
    def test_rate_comparison_zero_regular(self) -> None:
        """Test the percentage is zero when the regular fee is zero."""
        comparison = RateComparison.build(0, Money("0"), Money("0"))
        assert comparison.savings_percentage == Decimal("0")


@pytest.fixture
async def restaurant(partners: Any) -> Any:
    """Flat 30.00 partner valid on weekdays."""
    return await partners.create_partner_business(
        "La Fonda", "restaurant", flat_rate="30.00", valid_days=WORKDAYS
    )


class TestPartnerService:
    """Test suite for partner tickets."""

    @pytest.mark.integration
    async def test_create_business(self, partners: Any) -> None:
        """Test an hourly partner with a time window."""
        business = await partners.create_partner_business(
            "Cine Centro",
            "cinema",
            hourly_rate="12.00",
            max_hours=3,
            valid_time_start="10:00",
            valid_time_end="23:00",
        )

        assert business.hourly_rate == Money("12.00")
        assert business.flat_rate is None
        assert business.max_hours == 3
        assert business.valid_days == ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

    @pytest.mark.integration
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"flat_rate": "30.00", "hourly_rate": "10.00"},
            {"flat_rate": "-1.00"},
            {"flat_rate": "30.00", "valid_time_start": "25:00", "valid_time_end": "26:00"},
        ],
    )
    async def test_create_business_invalid(self, partners: Any, kwargs: dict) -> None:
        """Test partner validation surfaces as ValidationError."""
        with pytest.raises(ValidationError):
            await partners.create_partner_business("Bad", "shop", **kwargs)

    @pytest.mark.integration
    async def test_partner_ticket_and_comparison(
        self, partners: Any, restaurant: Any, clock: Any
    ) -> None:
        """Test both amounts are shown at exit."""
        ticket = await partners.create_partner_ticket(
            "abc123", restaurant.business_id, OPERATOR, customer_name="Ana"
        )
        assert ticket.ticket_number.startswith("PT-")
        assert ticket.barcode == f"{ticket.ticket_number}-ABC123"
        assert ticket.partner_name == "La Fonda"
        assert ticket.status == "ACTIVE"

        clock.advance(minutes=150)
        comparison = await partners.compare_rates(ticket.partner_ticket_id)

        assert comparison.duration_minutes == 150
        assert comparison.partner_amount == Money("30.00")
        assert comparison.regular_amount == Money("76.00")
        assert comparison.savings == Money("46.00")

    @pytest.mark.integration
    async def test_pay_partner_rate(
        self, parking_engine: Any, restaurant: Any, clock: Any, open_register: Any
    ) -> None:
        """Test the partner rate is booked as a PARTNER transaction."""
        partners = parking_engine.partners
        ticket = await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)
        clock.advance(minutes=150)

        result = await partners.process_partner_payment(
            ticket.partner_ticket_id,
            "50.00",
            OPERATOR,
            charge_regular_rate=False,
            has_business_stamp=True,
        )

        assert result.total_amount == Money("30.00")
        assert result.change_given == Money("20.00")
        transaction = await parking_engine.executor.read(
            lambda session: session.get(Transaction, result.transaction_id)
        )
        assert transaction.type == "PARTNER"
        assert transaction.partner_ticket_id == ticket.partner_ticket_id

        with pytest.raises(BusinessLogicError) as exc_info:
            await partners.process_partner_payment(
                ticket.partner_ticket_id, "50.00", OPERATOR, False, True
            )
        assert exc_info.value.code == ErrorCode.TICKET_ALREADY_PROCESSED

    @pytest.mark.integration
    async def test_pay_regular_rate(
        self, parking_engine: Any, restaurant: Any, clock: Any, open_register: Any
    ) -> None:
        """Test the operator can charge the regular fee, booked as PARKING."""
        partners = parking_engine.partners
        ticket = await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)
        clock.advance(minutes=150)

        result = await partners.process_partner_payment(
            ticket.partner_ticket_id,
            "100.00",
            OPERATOR,
            charge_regular_rate=True,
            has_business_stamp=False,
        )

        assert result.total_amount == Money("76.00")

        async def _types(session: Any) -> list:
            rows = await session.execute(select(Transaction.type))
            return list(rows.scalars())

        assert await parking_engine.executor.read(_types) == ["PARKING"]
        status = await parking_engine.ledger.get_status(OPERATOR)
        assert status.current_balance == Money("576.00")

    @pytest.mark.integration
    async def test_operator_must_choose(
        self, partners: Any, restaurant: Any, open_register: Any
    ) -> None:
        """Test that the rate flags have no default."""
        ticket = await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)

        with pytest.raises(ValidationError):
            await partners.process_partner_payment(
                ticket.partner_ticket_id, "50.00", OPERATOR, None, True
            )

    @pytest.mark.integration
    async def test_invalid_day(self, partners: Any, restaurant: Any, clock: Any) -> None:
        """Test a weekday-only partner on Saturday."""
        clock.set(_utc(2025, 3, 8, 12))

        with pytest.raises(BusinessLogicError) as exc_info:
            await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)
        assert exc_info.value.code == ErrorCode.INVALID_DAY

    @pytest.mark.integration
    async def test_window_uses_lot_timezone(
        self, engine_factory: Any, clock: Any, tmp_path: Path
    ) -> None:
        """Test the time window is checked in the lot's local time."""
        engine = await engine_factory(
            sqlite_settings(tmp_path / "mx.db", lot_timezone="America/Mexico_City")
        )
        business = await engine.partners.create_partner_business(
            "Cafe", "cafe", flat_rate="20.00", valid_time_start="08:00", valid_time_end="20:00"
        )

        # 12:00 UTC is 06:00 in Mexico City
        with pytest.raises(BusinessLogicError) as exc_info:
            await engine.partners.create_partner_ticket("ABC123", business.business_id, OPERATOR)
        assert exc_info.value.code == ErrorCode.INVALID_TIME

        clock.advance(hours=3)
        ticket = await engine.partners.create_partner_ticket(
            "ABC123", business.business_id, OPERATOR
        )
        assert ticket.entry_time == clock()

    @pytest.mark.integration
    async def test_one_active_partner_ticket_per_plate(
        self, partners: Any, restaurant: Any
    ) -> None:
        """Test VEHICLE_ALREADY_INSIDE for a second partner ticket."""
        await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)

        with pytest.raises(BusinessLogicError) as exc_info:
            await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)
        assert exc_info.value.code == ErrorCode.VEHICLE_ALREADY_INSIDE

    @pytest.mark.integration
    async def test_unknown_partner_and_ticket(self, partners: Any) -> None:
        """Test PARTNER_NOT_FOUND and PARTNER_TICKET_NOT_FOUND."""
        with pytest.raises(BusinessLogicError) as exc_info:
            await partners.create_partner_ticket("ABC123", "missing", OPERATOR)
        assert exc_info.value.code == ErrorCode.PARTNER_NOT_FOUND

        with pytest.raises(BusinessLogicError) as exc_info:
            await partners.compare_rates("missing", _utc(2025, 3, 3, 13))
        assert exc_info.value.code == ErrorCode.PARTNER_TICKET_NOT_FOUND

    @pytest.mark.integration
    async def test_hourly_partner_after_max_hours(
        self, partners: Any, clock: Any
    ) -> None:
        """Test the hourly amount stops at max_hours."""
        business = await partners.create_partner_business(
            "Gym", "gym", hourly_rate="10.00", max_hours=2
        )
        ticket = await partners.create_partner_ticket("GYM1", business.business_id, OPERATOR)

        exit_time = clock() + timedelta(hours=5)
        comparison = await partners.compare_rates(ticket.partner_ticket_id, exit_time)

        assert comparison.partner_amount == Money("20.00")

    @pytest.mark.integration
    async def test_rate_fixed_at_entry(
        self, parking_engine: Any, restaurant: Any, clock: Any
    ) -> None:
        """Test a later change to the partner's rate does not reprice open tickets."""
        partners = parking_engine.partners
        ticket = await partners.create_partner_ticket("ABC123", restaurant.business_id, OPERATOR)

        async def _raise_rate(session: Any) -> None:
            business = await session.get(PartnerBusiness, restaurant.business_id)
            business.flat_rate = Money("45.00")

        await parking_engine.executor.run(_raise_rate, operation="raise_partner_rate")
        clock.advance(minutes=90)

        comparison = await partners.compare_rates(ticket.partner_ticket_id)

        assert comparison.partner_amount == Money("30.00")
