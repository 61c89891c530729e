"""
Pension (monthly subscriber) billing.

A customer is created inactive and becomes active when the first payment
commits. That first payment covers the whole registered term. Later payments
buy one month each; renewals buy an explicit number of months.
"""
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.database.models import PensionCustomer
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.money import Money, MoneyInput
from parking_core.domain.pension import (
    add_months,
    days_remaining,
    elapsed_months,
    pension_barcode,
    pension_status,
    pending_balance,
)
from parking_core.domain.records import (
    PensionCustomerRecord,
    PensionPaymentResult,
    PensionStatusReport,
)
from parking_core.monitoring.logging import audit_log

from .base import BaseService, TransactionType, parse_cash, parse_moment, require_operator
from .parking_service import validate_plate
from .pricing_store import get_active_policy

logger = structlog.get_logger(__name__)

MAX_DURATION_MONTHS = 24


def to_record(customer: PensionCustomer) -> PensionCustomerRecord:
    return PensionCustomerRecord(
        customer_id=customer.id,
        name=customer.name,
        plate_number=customer.plate_number,
        barcode=pension_barcode(customer.plate_number),
        monthly_rate=customer.monthly_rate,
        start_date=customer.start_date,
        end_date=customer.end_date,
        is_active=customer.is_active,
        phone=customer.phone,
        vehicle_make=customer.vehicle_make,
        vehicle_model=customer.vehicle_model,
    )


def _validate_months(duration_months: Any) -> int:
    if isinstance(duration_months, bool) or not isinstance(duration_months, int):
        raise ValidationError("duration_months must be a whole number")
    if not 1 <= duration_months <= MAX_DURATION_MONTHS:
        raise ValidationError(
            f"duration_months must be between 1 and {MAX_DURATION_MONTHS}",
            context={"duration_months": duration_months},
        )
    return duration_months


async def _get_customer(session: AsyncSession, customer_id: str) -> PensionCustomer:
    customer = await session.get(PensionCustomer, customer_id)
    if customer is None:
        raise BusinessLogicError(
            ErrorCode.PENSION_CUSTOMER_NOT_FOUND,
            "Pension customer not found",
            {"customer_id": customer_id},
        )
    return customer


async def _active_for_plate(
    session: AsyncSession, plate: str, exclude_id: str | None = None
) -> PensionCustomer | None:
    stmt = select(PensionCustomer).where(
        PensionCustomer.plate_number == plate, PensionCustomer.is_active.is_(True)
    )
    if exclude_id is not None:
        stmt = stmt.where(PensionCustomer.id != exclude_id)
    return (await session.execute(stmt)).scalars().first()


async def _ensure_plate_free(session: AsyncSession, customer: PensionCustomer) -> None:
    if await _active_for_plate(session, customer.plate_number, exclude_id=customer.id):
        raise BusinessLogicError(
            ErrorCode.PENSION_CUSTOMER_EXISTS,
            "Another active pension customer has this plate",
            {"plate_number": customer.plate_number},
        )


async def _resolve(session: AsyncSession, identifier: str) -> PensionCustomer:
    """Find by id, plate, or PENSION-<PLATE> barcode, preferring active rows."""
    term = str(identifier).strip()
    customer = await session.get(PensionCustomer, term)
    if customer is not None:
        return customer

    plate = term.upper()
    if plate.startswith("PENSION-"):
        plate = plate[len("PENSION-"):]
    stmt = (
        select(PensionCustomer)
        .where(PensionCustomer.plate_number == plate)
        .order_by(PensionCustomer.is_active.desc(), PensionCustomer.created_at.desc())
    )
    customer = (await session.execute(stmt)).scalars().first()
    if customer is None:
        raise BusinessLogicError(
            ErrorCode.PENSION_CUSTOMER_NOT_FOUND,
            "Pension customer not found",
            {"identifier": term},
        )
    return customer


class PensionService(BaseService):
    """Monthly subscriber registration, billing and status."""

    async def create_customer(
        self,
        name: str,
        plate_number: str,
        duration_months: int = 1,
        monthly_rate: MoneyInput | None = None,
        start_date: datetime | str | None = None,
        phone: str | None = None,
        vehicle_make: str | None = None,
        vehicle_model: str | None = None,
        operator_id: str | None = None,
    ) -> PensionCustomerRecord:
        """
        Register a subscriber. No money moves and the customer stays inactive.

        Args:
            name: Customer name
            plate_number: Vehicle plate
            duration_months: Registered term in calendar months
            monthly_rate: Agreed rate; the active pricing monthly rate if omitted
            start_date: Term start, now if omitted

        Raises:
            ValidationError: Malformed input
            BusinessLogicError: PENSION_CUSTOMER_EXISTS, PRICING_NOT_CONFIGURED
        """
        if not name or not name.strip():
            raise ValidationError("Customer name is required", context={"field": "name"})
        plate = validate_plate(plate_number)
        months = _validate_months(duration_months)
        rate = None
        if monthly_rate is not None:
            rate = parse_cash(monthly_rate, "monthly_rate")
            if rate.is_zero():
                raise ValidationError("monthly_rate must be positive")
        start = parse_moment(start_date, default=None)

        async def _create(session: AsyncSession) -> PensionCustomerRecord:
            if await _active_for_plate(session, plate) is not None:
                raise BusinessLogicError(
                    ErrorCode.PENSION_CUSTOMER_EXISTS,
                    "An active pension customer already has this plate",
                    {"plate_number": plate},
                )
            agreed = rate if rate is not None else (await get_active_policy(session)).monthly_rate
            begins = start or self.now()
            customer = PensionCustomer(
                name=name.strip(),
                phone=phone,
                plate_number=plate,
                vehicle_make=vehicle_make,
                vehicle_model=vehicle_model,
                monthly_rate=agreed,
                start_date=begins,
                end_date=add_months(begins, months),
                is_active=False,
            )
            session.add(customer)
            await session.flush()
            return to_record(customer)

        record = await self.executor.run(_create, operation="create_pension_customer")
        logger.info(
            "pension_customer_created",
            customer_id=record.customer_id,
            plate_number=plate,
            months=months,
            monthly_rate=str(record.monthly_rate),
        )
        audit_log("pension_customer_created", operator_id, customer_id=record.customer_id)
        return record

    async def process_payment(
        self, customer_id: str, cash_received: Any, operator_id: str
    ) -> PensionPaymentResult:
        """
        Take a pension payment.

        Inactive customer: the full registered term is due,
        monthly_rate x elapsed_months(start, end), and the customer is
        activated. Its dates stay as registered, unless the term ran out before
        the payment; then the same number of months restarts at now. Active
        customer: one monthly_rate; end_date moves one month forward while in
        term, or the term restarts at now when it already expired.

        Raises:
            BusinessLogicError: PENSION_CUSTOMER_NOT_FOUND, PENSION_CUSTOMER_EXISTS,
                INSUFFICIENT_PAYMENT, NO_OPEN_CASH_REGISTER
        """
        cash = parse_cash(cash_received)
        operator = require_operator(operator_id)

        async def _pay(session: AsyncSession):
            customer = await _get_customer(session, customer_id)
            now = self.now()
            activating = not customer.is_active

            if activating:
                months = max(elapsed_months(customer.start_date, customer.end_date), 1)
                await _ensure_plate_free(session, customer)
            else:
                months = 1
            amount = customer.monthly_rate * months

            settlement = await self.settle(
                session,
                kind=TransactionType.PENSION,
                amount=amount,
                cash_received=cash,
                operator_id=operator,
                reference_id=customer.id,
                plate_number=customer.plate_number,
                description=f"Pension payment {customer.plate_number} ({months} months)",
                now=now,
                details={"months": str(months), "customer": customer.name},
                pension_customer_id=customer.id,
            )

            if activating:
                customer.is_active = True
                if customer.end_date < now:
                    customer.start_date = now
                    customer.end_date = add_months(now, months)
            elif customer.end_date >= now:
                customer.end_date = add_months(customer.end_date, 1)
            else:
                customer.start_date = now
                customer.end_date = add_months(now, 1)
            return to_record(customer), months, activating, settlement

        record, months, activated, settlement = await self.executor.run(
            _pay, operation="pension_payment"
        )
        payment = await self.deliver(settlement, "pension_paid", operator)
        logger.info(
            "pension_payment_processed",
            customer_id=record.customer_id,
            months=months,
            amount=str(payment.total_amount),
            activated=activated,
            end_date=record.end_date.isoformat(),
        )
        return PensionPaymentResult(
            customer=record, months_charged=months, payment=payment, activated=activated
        )

    async def renew_customer(
        self, customer_id: str, duration_months: int, cash_received: Any, operator_id: str
    ) -> PensionPaymentResult:
        """
        Buy duration_months more, priced monthly_rate x duration_months.

        The extension starts at max(now, end_date); an expired term also
        restarts start_date at now. The customer ends up active.

        Raises:
            BusinessLogicError: PENSION_CUSTOMER_NOT_FOUND, PENSION_CUSTOMER_EXISTS,
                INSUFFICIENT_PAYMENT, NO_OPEN_CASH_REGISTER
        """
        months = _validate_months(duration_months)
        cash = parse_cash(cash_received)
        operator = require_operator(operator_id)

        async def _renew(session: AsyncSession):
            customer = await _get_customer(session, customer_id)
            now = self.now()
            activating = not customer.is_active
            if activating:
                await _ensure_plate_free(session, customer)
            amount = customer.monthly_rate * months

            settlement = await self.settle(
                session,
                kind=TransactionType.PENSION,
                amount=amount,
                cash_received=cash,
                operator_id=operator,
                reference_id=customer.id,
                plate_number=customer.plate_number,
                description=f"Pension renewal {customer.plate_number} ({months} months)",
                now=now,
                details={"months": str(months), "customer": customer.name},
                pension_customer_id=customer.id,
            )

            base = max(now, customer.end_date)
            if customer.end_date < now:
                customer.start_date = now
            customer.end_date = add_months(base, months)
            customer.is_active = True
            return to_record(customer), activating, settlement

        record, activated, settlement = await self.executor.run(
            _renew, operation="pension_renewal"
        )
        payment = await self.deliver(settlement, "pension_renewed", operator)
        logger.info(
            "pension_renewed",
            customer_id=record.customer_id,
            months=months,
            amount=str(payment.total_amount),
            end_date=record.end_date.isoformat(),
        )
        return PensionPaymentResult(
            customer=record, months_charged=months, payment=payment, activated=activated
        )

    async def deactivate_customer(
        self, customer_id: str, operator_id: str, reason: str | None = None
    ) -> PensionCustomerRecord:
        """Stop access. Customers are never deleted."""
        operator = require_operator(operator_id)

        async def _deactivate(session: AsyncSession) -> PensionCustomerRecord:
            customer = await _get_customer(session, customer_id)
            customer.is_active = False
            return to_record(customer)

        record = await self.executor.run(_deactivate, operation="deactivate_pension_customer")
        audit_log(
            "pension_customer_deactivated",
            operator,
            customer_id=record.customer_id,
            reason=reason,
        )
        return record

    async def check_status(self, identifier: str) -> PensionStatusReport:
        """Access check at the gate: status, days remaining, access allowed."""

        async def _status(session: AsyncSession) -> PensionStatusReport:
            customer = await _resolve(session, identifier)
            now = self.now()
            return PensionStatusReport(
                customer_id=customer.id,
                plate_number=customer.plate_number,
                status=pension_status(
                    customer.is_active,
                    customer.end_date,
                    now,
                    self.settings.pension_expiring_soon_days,
                ),
                days_remaining=days_remaining(customer.end_date, now),
                end_date=customer.end_date,
            )

        return await self.executor.read(_status)

    async def lookup_customer(self, identifier: str) -> PensionCustomerRecord:
        """Find by id, plate or PENSION-<PLATE> barcode."""

        async def _lookup(session: AsyncSession) -> PensionCustomerRecord:
            return to_record(await _resolve(session, identifier))

        return await self.executor.read(_lookup)

    async def pending_amount(self, customer_id: str) -> Money:
        """What process_payment would charge right now."""

        async def _pending(session: AsyncSession) -> Money:
            customer = await _get_customer(session, customer_id)
            if customer.is_active:
                return customer.monthly_rate
            return pending_balance(customer.monthly_rate, customer.start_date, customer.end_date)

        return await self.executor.read(_pending)
