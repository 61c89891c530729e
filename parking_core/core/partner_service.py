"""
Partner-business parking.

Partner tickets are priced by the partner profile, but at exit both the
partner amount and the regular Fee Calculator amount are shown. Which one is
charged is the operator's call; nothing here falls back on its own.
"""
import uuid
from datetime import datetime, time
from typing import Any, Iterable

import pydantic
import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.database.models import PartnerBusiness, PartnerTicket
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.money import MoneyInput
from parking_core.domain.partners import WEEKDAYS, PartnerRate, RateComparison, partner_amount
from parking_core.domain.pricing import calculate_fee
from parking_core.domain.records import PartnerBusinessRecord, PartnerTicketRecord, PaymentResult
from parking_core.domain.tickets import generate_barcode
from parking_core.monitoring.logging import audit_log

from .base import BaseService, TransactionType, parse_cash, parse_moment, require_operator
from .parking_service import duration_minutes, validate_plate
from .pricing_store import get_active_policy

logger = structlog.get_logger(__name__)


def _parse_time(value: time | str | None, field: str) -> time | None:
    if value is None or isinstance(value, time):
        return value
    try:
        return datetime.strptime(value.strip(), "%H:%M").time()
    except ValueError as e:
        raise ValidationError(f"{field} must be HH:MM", context={"field": field}) from e


def rate_of(business: PartnerBusiness) -> PartnerRate:
    return PartnerRate(
        flat_rate=business.flat_rate,
        hourly_rate=business.hourly_rate,
        max_hours=business.max_hours,
        valid_days=tuple(business.valid_days),
        valid_time_start=_parse_time(business.valid_time_start, "valid_time_start"),
        valid_time_end=_parse_time(business.valid_time_end, "valid_time_end"),
    )


def agreed_rate_of(ticket: PartnerTicket) -> PartnerRate:
    """Partner rate with the amount fixed when the ticket was issued."""
    rate = rate_of(ticket.partner_business)
    field = "flat_rate" if rate.is_flat else "hourly_rate"
    return rate.model_copy(update={field: ticket.agreed_rate})


def _business_record(business: PartnerBusiness) -> PartnerBusinessRecord:
    return PartnerBusinessRecord(
        business_id=business.id,
        name=business.name,
        business_type=business.business_type,
        flat_rate=business.flat_rate,
        hourly_rate=business.hourly_rate,
        max_hours=business.max_hours,
        valid_days=tuple(business.valid_days),
        is_active=business.is_active,
    )


def _ticket_record(ticket: PartnerTicket) -> PartnerTicketRecord:
    return PartnerTicketRecord(
        partner_ticket_id=ticket.id,
        ticket_number=ticket.ticket_number,
        barcode=ticket.barcode,
        plate_number=ticket.plate_number,
        partner_business_id=ticket.partner_business_id,
        partner_name=ticket.partner_business.name,
        entry_time=ticket.entry_time,
        status=ticket.status,
    )


async def _find_partner_ticket(session: AsyncSession, ref: str) -> PartnerTicket:
    term = str(ref).strip()
    stmt = select(PartnerTicket).where(
        or_(PartnerTicket.id == term, PartnerTicket.barcode == term.upper())
    )
    ticket = (await session.execute(stmt)).scalars().first()
    if ticket is None:
        raise BusinessLogicError(
            ErrorCode.PARTNER_TICKET_NOT_FOUND,
            "Partner ticket not found",
            {"partner_ticket_id": term},
        )
    return ticket


def _ensure_active(ticket: PartnerTicket) -> None:
    if ticket.status != "ACTIVE":
        raise BusinessLogicError(
            ErrorCode.TICKET_ALREADY_PROCESSED,
            "Partner ticket was already paid or cancelled",
            {"partner_ticket_id": ticket.id, "status": ticket.status},
        )


class PartnerService(BaseService):
    """Partner businesses and their discounted tickets."""

    async def create_partner_business(
        self,
        name: str,
        business_type: str,
        flat_rate: MoneyInput | None = None,
        hourly_rate: MoneyInput | None = None,
        max_hours: int | None = None,
        valid_days: Iterable[str] = WEEKDAYS,
        valid_time_start: time | str | None = None,
        valid_time_end: time | str | None = None,
        operator_id: str | None = None,
    ) -> PartnerBusinessRecord:
        """
        Register a partner. Exactly one of flat_rate and hourly_rate is set.

        Raises:
            ValidationError: Bad rate combination, days or time window
        """
        if not name or not name.strip():
            raise ValidationError("Partner name is required", context={"field": "name"})
        try:
            rate = PartnerRate(
                flat_rate=parse_cash(flat_rate, "flat_rate") if flat_rate is not None else None,
                hourly_rate=(
                    parse_cash(hourly_rate, "hourly_rate") if hourly_rate is not None else None
                ),
                max_hours=max_hours,
                valid_days=tuple(valid_days),
                valid_time_start=_parse_time(valid_time_start, "valid_time_start"),
                valid_time_end=_parse_time(valid_time_end, "valid_time_end"),
            )
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid partner rate", context={"errors": e.errors(include_url=False)}
            ) from e

        async def _create(session: AsyncSession) -> PartnerBusinessRecord:
            business = PartnerBusiness(
                name=name.strip(),
                business_type=business_type,
                flat_rate=rate.flat_rate if rate.is_flat else None,
                hourly_rate=None if rate.is_flat else rate.hourly_rate,
                max_hours=rate.max_hours,
                valid_days=list(rate.valid_days),
                valid_time_start=(
                    rate.valid_time_start.strftime("%H:%M") if rate.valid_time_start else None
                ),
                valid_time_end=rate.valid_time_end.strftime("%H:%M") if rate.valid_time_end else None,
                is_active=True,
            )
            session.add(business)
            await session.flush()
            return _business_record(business)

        record = await self.executor.run(_create, operation="create_partner_business")
        audit_log("partner_business_created", operator_id, business_id=record.business_id)
        return record

    async def create_partner_ticket(
        self,
        plate_number: str,
        partner_business_id: str,
        operator_id: str,
        customer_name: str | None = None,
        business_reference: str | None = None,
    ) -> PartnerTicketRecord:
        """
        Issue a partner ticket at entry.

        Raises:
            BusinessLogicError: PARTNER_NOT_FOUND, INVALID_DAY, INVALID_TIME,
                VEHICLE_ALREADY_INSIDE
        """
        plate = validate_plate(plate_number)
        operator = require_operator(operator_id)

        async def _create(session: AsyncSession) -> PartnerTicketRecord:
            business = await session.get(PartnerBusiness, partner_business_id)
            if business is None or not business.is_active:
                raise BusinessLogicError(
                    ErrorCode.PARTNER_NOT_FOUND,
                    "Partner business not found or inactive",
                    {"partner_business_id": partner_business_id},
                )
            rate = rate_of(business)
            now = self.now()
            rate.ensure_valid_at(now.astimezone(self.settings.zone))

            existing = await session.execute(
                select(PartnerTicket.id).where(
                    PartnerTicket.plate_number == plate, PartnerTicket.status == "ACTIVE"
                )
            )
            if existing.first() is not None:
                raise BusinessLogicError(
                    ErrorCode.VEHICLE_ALREADY_INSIDE,
                    "Vehicle already has an active partner ticket",
                    {"plate_number": plate},
                )

            ticket_number = f"PT-{uuid.uuid4().hex[:12].upper()}"
            ticket = PartnerTicket(
                ticket_number=ticket_number,
                barcode=generate_barcode(ticket_number, plate),
                plate_number=plate,
                partner_business_id=business.id,
                entry_time=now,
                status="ACTIVE",
                agreed_rate=rate.flat_rate if rate.is_flat else rate.hourly_rate,
                customer_name=customer_name,
                business_reference=business_reference,
                operator_id=operator,
            )
            ticket.partner_business = business
            session.add(ticket)
            await session.flush()
            return _ticket_record(ticket)

        record = await self.executor.run(_create, operation="create_partner_ticket")
        logger.info(
            "partner_ticket_created",
            partner_ticket_id=record.partner_ticket_id,
            partner=record.partner_name,
            plate_number=plate,
        )
        return record

    async def compare_rates(
        self, partner_ticket_id: str, exit_time: datetime | str | None = None
    ) -> RateComparison:
        """
        Partner amount, full regular fee and the savings between them.

        Raises:
            BusinessLogicError: PARTNER_TICKET_NOT_FOUND, TICKET_ALREADY_PROCESSED,
                PRICING_NOT_CONFIGURED
        """
        requested_exit = parse_moment(exit_time, default=None)

        async def _compare(session: AsyncSession) -> RateComparison:
            ticket = await _find_partner_ticket(session, partner_ticket_id)
            _ensure_active(ticket)
            return await self._comparison(session, ticket, requested_exit or self.now())

        return await self.executor.read(_compare)

    async def process_partner_payment(
        self,
        partner_ticket_id: str,
        cash_received: Any,
        operator_id: str,
        charge_regular_rate: bool,
        has_business_stamp: bool,
    ) -> PaymentResult:
        """
        Charge a partner ticket at the rate the operator chose.

        Args:
            charge_regular_rate: True to charge the regular fee (e.g. no stamp)
            has_business_stamp: Whether the customer showed the partner stamp

        Raises:
            BusinessLogicError: PARTNER_TICKET_NOT_FOUND, TICKET_ALREADY_PROCESSED,
                INSUFFICIENT_PAYMENT, NO_OPEN_CASH_REGISTER
        """
        if not isinstance(charge_regular_rate, bool) or not isinstance(has_business_stamp, bool):
            raise ValidationError("charge_regular_rate and has_business_stamp must be explicit")
        cash = parse_cash(cash_received)
        operator = require_operator(operator_id)

        async def _pay(session: AsyncSession):
            ticket = await _find_partner_ticket(session, partner_ticket_id)
            _ensure_active(ticket)
            now = self.now()
            comparison = await self._comparison(session, ticket, now)
            amount = comparison.regular_amount if charge_regular_rate else comparison.partner_amount
            kind = TransactionType.PARKING if charge_regular_rate else TransactionType.PARTNER

            settlement = await self.settle(
                session,
                kind=kind,
                amount=amount,
                cash_received=cash,
                operator_id=operator,
                reference_id=ticket.id,
                plate_number=ticket.plate_number,
                description=(
                    f"Partner ticket ({'regular rate' if charge_regular_rate else 'partner rate'})"
                    f" - {ticket.partner_business.name}"
                ),
                now=now,
                details={
                    "partner": ticket.partner_business.name,
                    "ticket_number": ticket.ticket_number,
                    "stamp": "yes" if has_business_stamp else "no",
                },
                partner_ticket_id=ticket.id,
            )
            ticket.status = "PAID"
            ticket.exit_time = now
            ticket.paid_amount = amount
            ticket.charged_regular_rate = charge_regular_rate
            ticket.has_business_stamp = has_business_stamp
            return settlement

        settlement = await self.executor.run(_pay, operation="partner_payment")
        result = await self.deliver(settlement, "partner_ticket_paid", operator)
        logger.info(
            "partner_payment_processed",
            partner_ticket_id=result.reference_id,
            amount=str(result.total_amount),
            charged_regular_rate=charge_regular_rate,
            has_business_stamp=has_business_stamp,
        )
        return result

    async def _comparison(
        self, session: AsyncSession, ticket: PartnerTicket, exit_at: datetime
    ) -> RateComparison:
        minutes = duration_minutes(ticket.entry_time, exit_at)
        policy = await get_active_policy(session)
        regular = calculate_fee(minutes, policy).total
        partner = partner_amount(agreed_rate_of(ticket), minutes)
        return RateComparison.build(minutes, partner, regular)
