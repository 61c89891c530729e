"""
Ticket operations: entry, fee quotes, payment, lost tickets and the admin
cancel/refund side channel.

Every mutation runs inside one AtomicExecutor unit of work together with its
ledger rows. Receipts are printed only after commit.
"""
import re
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.database.models import Ticket, Transaction, new_id
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.formatting import format_duration
from parking_core.domain.money import Money
from parking_core.domain.pricing import calculate_fee
from parking_core.domain.records import (
    EntryTicket,
    FeeQuote,
    PaymentResult,
    Receipt,
    RefundResult,
    TicketRecord,
)
from parking_core.domain.tickets import (
    TicketStatus,
    ensure_transition,
    generate_barcode,
    normalize_plate,
)
from parking_core.monitoring.logging import audit_log
from parking_core.monitoring.metrics import metrics

from .base import BaseService, TransactionType, parse_cash, parse_moment, require_operator
from .pricing_store import get_active_policy
from .receipts import enqueue_receipt

logger = structlog.get_logger(__name__)

_PLATE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9 -]{0,18}[A-Z0-9]$|^[A-Z0-9]$")


def validate_plate(plate_number: Any) -> str:
    """
    Raises:
        ValidationError: If the plate is empty or has unexpected characters
    """
    if not isinstance(plate_number, str):
        raise ValidationError("Plate number must be text", context={"field": "plate_number"})
    plate = normalize_plate(plate_number)
    if not _PLATE_PATTERN.match(plate):
        raise ValidationError(
            "Invalid plate number",
            context={"field": "plate_number", "value": plate_number},
        )
    return plate


def duration_minutes(entry_time: datetime, exit_time: datetime) -> int:
    """
    Whole minutes parked, rounded down.

    Raises:
        ValidationError: INVALID_EXIT_TIME if exit precedes entry
    """
    if exit_time < entry_time:
        raise ValidationError(
            "Exit time is before entry time",
            code=ErrorCode.INVALID_EXIT_TIME,
            context={"entry_time": entry_time.isoformat(), "exit_time": exit_time.isoformat()},
        )
    return int((exit_time - entry_time).total_seconds() // 60)


async def find_ticket(session: AsyncSession, ticket_ref: str) -> Ticket:
    """
    Resolve a ticket by id or barcode.

    Raises:
        BusinessLogicError: TICKET_NOT_FOUND
    """
    ref = str(ticket_ref).strip()
    stmt = select(Ticket).where(or_(Ticket.id == ref, Ticket.barcode == ref.upper()))
    ticket = (await session.execute(stmt)).scalars().first()
    if ticket is None:
        raise BusinessLogicError(
            ErrorCode.TICKET_NOT_FOUND, "Ticket not found", {"ticket_ref": ref}
        )
    return ticket


async def find_active_by_plate(session: AsyncSession, plate: str) -> Ticket | None:
    stmt = select(Ticket).where(
        Ticket.plate_number == plate, Ticket.status == TicketStatus.ACTIVE.value
    )
    return (await session.execute(stmt)).scalar_one_or_none()


def to_record(ticket: Ticket, estimate: Money | None = None) -> TicketRecord:
    return TicketRecord(
        ticket_id=ticket.id,
        barcode=ticket.barcode,
        plate_number=ticket.plate_number,
        status=TicketStatus(ticket.status),
        entry_time=ticket.entry_time,
        exit_time=ticket.exit_time,
        total_amount=ticket.total_amount,
        current_estimate=estimate,
    )


class ParkingService(BaseService):
    """Regular ticket lifecycle."""

    async def create_entry(
        self,
        plate_number: str,
        vehicle_type: str = "car",
        notes: str | None = None,
        operator_id: str | None = None,
    ) -> EntryTicket:
        """
        Register a vehicle entering the lot.

        Args:
            plate_number: Vehicle plate, any case
            vehicle_type: Free-form vehicle class
            notes: Optional operator notes
            operator_id: Operator at the entry booth

        Returns:
            EntryTicket: The new ACTIVE ticket

        Raises:
            ValidationError: Malformed plate
            BusinessLogicError: VEHICLE_ALREADY_INSIDE, PRICING_NOT_CONFIGURED
            TransientConflictError: Storage contention outlasted the retries
        """
        plate = validate_plate(plate_number)

        async def _create(session: AsyncSession):
            policy = await get_active_policy(session)
            if await find_active_by_plate(session, plate) is not None:
                raise BusinessLogicError(
                    ErrorCode.VEHICLE_ALREADY_INSIDE,
                    "Vehicle already has an active ticket",
                    {"plate_number": plate},
                )
            now = self.now()
            ticket_id = new_id()
            ticket = Ticket(
                id=ticket_id,
                plate_number=plate,
                entry_time=now,
                status=TicketStatus.ACTIVE.value,
                barcode=generate_barcode(ticket_id, plate),
                vehicle_type=vehicle_type or "car",
                notes=notes,
                operator_id=operator_id,
            )
            session.add(ticket)
            # A concurrent entry for the plate fails here on the partial unique index
            await session.flush()

            receipt = Receipt(
                kind="ENTRY",
                reference_id=ticket.id,
                plate_number=plate,
                amount=policy.minimum_rate,
                issued_at=now,
                lot_name=self.settings.lot_name,
                details={
                    "barcode": ticket.barcode,
                    "minimum_hours": str(policy.minimum_hours),
                },
            )
            outbox = await enqueue_receipt(session, receipt)
            entry = EntryTicket(
                ticket_id=ticket.id,
                barcode=ticket.barcode,
                plate_number=plate,
                entry_time=now,
                vehicle_type=ticket.vehicle_type,
            )
            return entry, outbox.id, receipt

        entry, outbox_id, receipt = await self.executor.run(_create, operation="create_entry")
        printed = await self.dispatcher.dispatch(outbox_id, receipt)

        logger.info(
            "ticket_created",
            ticket_id=entry.ticket_id,
            plate_number=plate,
            receipt_printed=printed,
        )
        return entry.model_copy(update={"receipt_printed": printed})

    async def calculate_fee(
        self, ticket_ref: str, exit_time: datetime | str | None = None
    ) -> FeeQuote:
        """
        Quote the fee for an ACTIVE ticket without changing anything.

        Raises:
            ValidationError: Unparsable exit_time (before any storage access)
                or exit before entry
            BusinessLogicError: TICKET_NOT_FOUND, TICKET_ALREADY_PROCESSED,
                PRICING_NOT_CONFIGURED
        """
        requested_exit = parse_moment(exit_time, default=None)

        async def _quote(session: AsyncSession) -> FeeQuote:
            ticket = await find_ticket(session, ticket_ref)
            if ticket.status != TicketStatus.ACTIVE.value:
                raise BusinessLogicError(
                    ErrorCode.TICKET_ALREADY_PROCESSED,
                    "Ticket was already processed",
                    {"ticket_id": ticket.id, "status": ticket.status},
                )
            policy = await get_active_policy(session)
            exit_at = requested_exit or self.now()
            minutes = duration_minutes(ticket.entry_time, exit_at)
            fee = calculate_fee(minutes, policy)
            return FeeQuote(
                ticket_id=ticket.id,
                plate_number=ticket.plate_number,
                entry_time=ticket.entry_time,
                exit_time=exit_at,
                duration_minutes=minutes,
                duration_text=format_duration(minutes, self.fmt),
                breakdown=fee.breakdown,
                total=fee.total,
                total_formatted=fee.total.format_pesos(self.fmt),
            )

        return await self.executor.read(_quote)

    async def process_payment(
        self, ticket_ref: str, cash_received: Any, operator_id: str
    ) -> PaymentResult:
        """
        Charge an ACTIVE ticket and mark it PAID.

        The fee is computed from now - entry_time inside the unit of work.
        The ticket update, the ledger Transaction and the register deposit
        commit together or not at all.

        Raises:
            BusinessLogicError: TICKET_NOT_FOUND, TICKET_ALREADY_PROCESSED,
                INSUFFICIENT_PAYMENT, NO_OPEN_CASH_REGISTER
            TransientConflictError: Storage contention outlasted the retries
        """
        cash = parse_cash(cash_received)
        operator = require_operator(operator_id)

        async def _pay(session: AsyncSession):
            ticket = await find_ticket(session, ticket_ref)
            ensure_transition(ticket.id, TicketStatus(ticket.status), TicketStatus.PAID)
            policy = await get_active_policy(session)
            now = self.now()
            minutes = duration_minutes(ticket.entry_time, now)
            fee = calculate_fee(minutes, policy).total

            settlement = await self.settle(
                session,
                kind=TransactionType.PARKING,
                amount=fee,
                cash_received=cash,
                operator_id=operator,
                reference_id=ticket.id,
                plate_number=ticket.plate_number,
                description=f"Parking payment {ticket.plate_number}",
                now=now,
                details={
                    "barcode": ticket.barcode,
                    "duration": format_duration(minutes, self.fmt),
                },
                ticket_id=ticket.id,
            )
            ticket.status = TicketStatus.PAID.value
            ticket.exit_time = now
            ticket.total_amount = fee
            ticket.paid_at = now
            ticket.payment_method = "CASH"
            return settlement

        settlement = await self.executor.run(_pay, operation="process_payment")
        result = await self.deliver(settlement, "ticket_paid", operator)
        logger.info(
            "ticket_payment_processed",
            ticket_id=result.reference_id,
            amount=str(result.total_amount),
            change=str(result.change_given),
            receipt_printed=result.receipt_printed,
        )
        return result

    async def process_lost_ticket(
        self, plate_number: str, cash_received: Any, operator_id: str
    ) -> PaymentResult:
        """
        Charge the lost-ticket fee for the plate's ACTIVE ticket.

        No ticket is fabricated: a plate without an ACTIVE ticket is rejected.

        Raises:
            BusinessLogicError: NO_ACTIVE_TICKET_FOUND, INSUFFICIENT_PAYMENT,
                NO_OPEN_CASH_REGISTER
        """
        plate = validate_plate(plate_number)
        cash = parse_cash(cash_received)
        operator = require_operator(operator_id)

        async def _lost(session: AsyncSession):
            ticket = await find_active_by_plate(session, plate)
            if ticket is None:
                raise BusinessLogicError(
                    ErrorCode.NO_ACTIVE_TICKET_FOUND,
                    "No active ticket for this plate",
                    {"plate_number": plate},
                )
            ensure_transition(ticket.id, TicketStatus(ticket.status), TicketStatus.LOST)
            policy = await get_active_policy(session)
            now = self.now()
            fee = policy.lost_ticket_fee

            settlement = await self.settle(
                session,
                kind=TransactionType.LOST_TICKET,
                amount=fee,
                cash_received=cash,
                operator_id=operator,
                reference_id=ticket.id,
                plate_number=plate,
                description=f"Lost ticket fee {plate}",
                now=now,
                details={"barcode": ticket.barcode},
                ticket_id=ticket.id,
            )
            ticket.status = TicketStatus.LOST.value
            ticket.exit_time = now
            ticket.total_amount = fee
            ticket.paid_at = now
            ticket.payment_method = "CASH"
            return settlement

        settlement = await self.executor.run(_lost, operation="process_lost_ticket")
        result = await self.deliver(settlement, "lost_ticket_paid", operator)
        logger.info(
            "lost_ticket_processed",
            ticket_id=result.reference_id,
            plate_number=plate,
            amount=str(result.total_amount),
        )
        return result

    async def cancel_ticket(self, ticket_ref: str, operator_id: str, reason: str) -> TicketRecord:
        """
        Void a ticket. No money moves.

        Raises:
            BusinessLogicError: TICKET_NOT_FOUND, INVALID_TRANSITION
        """
        operator = require_operator(operator_id)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to cancel a ticket")

        async def _cancel(session: AsyncSession) -> TicketRecord:
            ticket = await find_ticket(session, ticket_ref)
            ensure_transition(ticket.id, TicketStatus(ticket.status), TicketStatus.CANCELLED)
            previous = ticket.status
            ticket.status = TicketStatus.CANCELLED.value
            ticket.notes = _append_note(ticket.notes, f"Cancelled: {reason.strip()}")
            if ticket.exit_time is None:
                ticket.exit_time = self.now()
            logger.info("ticket_cancelled", ticket_id=ticket.id, previous_status=previous)
            return to_record(ticket)

        record = await self.executor.run(_cancel, operation="cancel_ticket")
        audit_log("ticket_cancelled", operator, ticket_id=record.ticket_id, reason=reason)
        return record

    async def refund_ticket(self, ticket_ref: str, operator_id: str, reason: str) -> RefundResult:
        """
        Return the charged amount of a PAID or LOST ticket.

        Books a REFUND transaction and a register WITHDRAWAL in the same unit
        of work as the status change.

        Raises:
            BusinessLogicError: TICKET_NOT_FOUND, INVALID_TRANSITION,
                NO_OPEN_CASH_REGISTER, INSUFFICIENT_FUNDS
        """
        operator = require_operator(operator_id)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to refund a ticket")

        async def _refund(session: AsyncSession) -> RefundResult:
            ticket = await find_ticket(session, ticket_ref)
            ensure_transition(ticket.id, TicketStatus(ticket.status), TicketStatus.REFUNDED)
            amount = ticket.total_amount or Money.zero()
            now = self.now()
            transaction = Transaction(
                id=new_id(),
                type=TransactionType.REFUND.value,
                amount=amount,
                ticket_id=ticket.id,
                operator_id=operator,
                description=f"Refund {ticket.plate_number}: {reason.strip()}",
                timestamp=now,
            )
            await self.ledger.record_withdrawal(
                session, operator, amount, transaction.description, transaction
            )
            ticket.status = TicketStatus.REFUNDED.value
            ticket.notes = _append_note(ticket.notes, f"Refunded: {reason.strip()}")
            return RefundResult(
                ticket_id=ticket.id,
                transaction_id=transaction.id,
                amount_refunded=amount,
                refunded_at=now,
            )

        result = await self.executor.run(_refund, operation="refund_ticket")
        metrics.record_money_event(TransactionType.REFUND.value, float(result.amount_refunded.amount))
        audit_log(
            "ticket_refunded",
            operator,
            ticket_id=result.ticket_id,
            transaction_id=result.transaction_id,
            amount=result.amount_refunded.to_database(),
            reason=reason,
        )
        return result

    async def lookup_ticket(self, term: str) -> TicketRecord:
        """
        Find a ticket by id, barcode, or the plate of an ACTIVE ticket.

        ACTIVE tickets carry the fee they would owe right now.

        Raises:
            BusinessLogicError: TICKET_NOT_FOUND
        """
        if not term or not str(term).strip():
            raise ValidationError("Search term is required")

        async def _lookup(session: AsyncSession) -> TicketRecord:
            try:
                ticket = await find_ticket(session, term)
            except BusinessLogicError:
                ticket = await find_active_by_plate(session, normalize_plate(term))
                if ticket is None:
                    raise
            if ticket.status != TicketStatus.ACTIVE.value:
                return to_record(ticket)
            policy = await get_active_policy(session)
            minutes = duration_minutes(ticket.entry_time, max(self.now(), ticket.entry_time))
            return to_record(ticket, calculate_fee(minutes, policy).total)

        return await self.executor.read(_lookup)


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note
