"""
Ticket lifecycle tests: entry, quotes, payment, lost tickets, cancel and refund.
"""
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import func, select, update

from parking_core.database.models import PricingConfig, Ticket, Transaction
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.money import Money
from parking_core.domain.tickets import (
    TicketStatus,
    ensure_transition,
    generate_barcode,
    normalize_plate,
)

OPERATOR = "op-1"


class TestTransitions:
    """Test suite for the ticket state machine."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (TicketStatus.ACTIVE, TicketStatus.PAID),
            (TicketStatus.ACTIVE, TicketStatus.LOST),
            (TicketStatus.ACTIVE, TicketStatus.CANCELLED),
            (TicketStatus.PAID, TicketStatus.REFUNDED),
            (TicketStatus.LOST, TicketStatus.REFUNDED),
            (TicketStatus.PAID, TicketStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current: TicketStatus, target: TicketStatus) -> None:
        """Test the legal moves."""
        ensure_transition("t-1", current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current", [TicketStatus.PAID, TicketStatus.LOST, TicketStatus.CANCELLED, TicketStatus.REFUNDED]
    )
    def test_charging_processed_ticket(self, current: TicketStatus) -> None:
        """Test that charging a ticket that left ACTIVE is already processed."""
        with pytest.raises(BusinessLogicError) as exc_info:
            ensure_transition("t-1", current, TicketStatus.PAID)
        assert exc_info.value.code == ErrorCode.TICKET_ALREADY_PROCESSED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (TicketStatus.ACTIVE, TicketStatus.REFUNDED),
            (TicketStatus.CANCELLED, TicketStatus.CANCELLED),
            (TicketStatus.REFUNDED, TicketStatus.CANCELLED),
        ],
    )
    def test_invalid(self, current: TicketStatus, target: TicketStatus) -> None:
        """Test other illegal moves."""
        with pytest.raises(BusinessLogicError) as exc_info:
            ensure_transition("t-1", current, target)
        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.unit
    def test_barcode_and_plate_normalization(self) -> None:
        """Test plate and barcode formats."""
        assert normalize_plate("  abc123 ") == "ABC123"
        assert generate_barcode("3f2a", "abc123") == "3F2A-ABC123"


class TestEntry:
    """Test suite for vehicle entry."""

    @pytest.mark.integration
    async def test_create_entry(self, parking: Any, clock: Any) -> None:
        """Test that entry creates an ACTIVE ticket stamped with the clock."""
        entry = await parking.create_entry(" abc123 ", operator_id=OPERATOR)

        assert entry.plate_number == "ABC123"
        assert entry.entry_time == clock()
        assert entry.barcode == f"{entry.ticket_id}-ABC123".upper()
        assert entry.receipt_printed

        record = await parking.lookup_ticket(entry.barcode)
        assert record.status == TicketStatus.ACTIVE
        assert record.current_estimate == Money("25.00")

    @pytest.mark.integration
    async def test_duplicate_entry_rejected(self, parking: Any) -> None:
        """Test that a plate can hold only one ACTIVE ticket."""
        await parking.create_entry("ABC123")

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.create_entry("abc123")
        assert exc_info.value.code == ErrorCode.VEHICLE_ALREADY_INSIDE

    @pytest.mark.integration
    @pytest.mark.parametrize("plate", ["", "   ", "AB$12", "X" * 25])
    async def test_invalid_plate(self, parking: Any, plate: str) -> None:
        """Test plate validation before any storage access."""
        with pytest.raises(ValidationError):
            await parking.create_entry(plate)

    @pytest.mark.integration
    async def test_entry_requires_pricing(self, parking_engine: Any) -> None:
        """Test that entry is refused when no pricing is active."""

        async def _deactivate(session: Any) -> None:
            await session.execute(update(PricingConfig).values(is_active=False))

        await parking_engine.executor.run(_deactivate, operation="deactivate_pricing")

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking_engine.parking.create_entry("ABC123")
        assert exc_info.value.code == ErrorCode.PRICING_NOT_CONFIGURED

    @pytest.mark.integration
    async def test_reentry_after_payment(self, parking: Any, clock: Any, open_register: Any) -> None:
        """Test that a plate may enter again once its ticket left ACTIVE."""
        first = await parking.create_entry("ABC123")
        clock.advance(minutes=30)
        await parking.process_payment(first.ticket_id, "25.00", OPERATOR)

        second = await parking.create_entry("ABC123")

        assert second.ticket_id != first.ticket_id


class TestCalculateFee:
    """Test suite for fee quotes."""

    @pytest.mark.integration
    async def test_quote_after_two_and_a_half_hours(self, parking: Any, clock: Any) -> None:
        """Test the running fee of an ACTIVE ticket."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=150)

        quote = await parking.calculate_fee(entry.ticket_id)

        assert quote.duration_minutes == 150
        assert quote.total == Money("76.00")
        assert quote.total_formatted == "$76.00 pesos"
        assert quote.duration_text == "2 horas 30 minutos"

    @pytest.mark.integration
    async def test_quote_is_read_only(self, parking: Any, clock: Any) -> None:
        """Test that quoting five times gives the same result and changes nothing."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=59)

        quotes = [await parking.calculate_fee(entry.barcode) for _ in range(5)]

        assert all(q == quotes[0] for q in quotes)
        assert quotes[0].total == Money("25.00")
        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.ACTIVE
        assert record.exit_time is None

    @pytest.mark.integration
    async def test_quote_with_explicit_exit_time(self, parking: Any, clock: Any) -> None:
        """Test an ISO-8601 exit time."""
        entry = await parking.create_entry("ABC123")
        exit_time = (clock() + timedelta(minutes=61)).isoformat()

        quote = await parking.calculate_fee(entry.ticket_id, exit_time)

        assert quote.total == Money("33.50")

    @pytest.mark.integration
    async def test_quote_bad_exit_time(self, parking: Any, clock: Any) -> None:
        """Test unparsable and earlier-than-entry exit times."""
        entry = await parking.create_entry("ABC123")

        with pytest.raises(ValidationError) as exc_info:
            await parking.calculate_fee(entry.ticket_id, "not-a-date")
        assert exc_info.value.code == ErrorCode.INVALID_EXIT_TIME

        with pytest.raises(ValidationError) as exc_info:
            await parking.calculate_fee(entry.ticket_id, clock() - timedelta(minutes=5))
        assert exc_info.value.code == ErrorCode.INVALID_EXIT_TIME

    @pytest.mark.integration
    async def test_quote_unknown_ticket(self, parking: Any) -> None:
        """Test TICKET_NOT_FOUND."""
        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.calculate_fee("does-not-exist")
        assert exc_info.value.code == ErrorCode.TICKET_NOT_FOUND


class TestPayment:
    """Test suite for paying a ticket."""

    @pytest.mark.integration
    async def test_payment(
        self, parking: Any, ledger: Any, clock: Any, open_register: Any
    ) -> None:
        """Test a payment with change, ticket update and register deposit."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=150)

        result = await parking.process_payment(entry.ticket_id, "100.00", OPERATOR)

        assert result.total_amount == Money("76.00")
        assert result.change_given == Money("24.00")
        assert result.denominations == {"$20": 1, "$2": 2}
        assert result.paid_at == clock()
        assert not result.needs_reconciliation
        assert result.receipt_printed

        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.PAID
        assert record.total_amount == Money("76.00")
        assert record.exit_time == clock()

        status = await ledger.get_status(OPERATOR)
        assert status.current_balance == Money("576.00")

    @pytest.mark.integration
    async def test_insufficient_payment(
        self, parking: Any, ledger: Any, clock: Any, open_register: Any
    ) -> None:
        """Test that underpayment reports the exact shortfall and writes nothing."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=150)

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.process_payment(entry.ticket_id, "50.00", OPERATOR)

        error = exc_info.value
        assert error.code == ErrorCode.INSUFFICIENT_PAYMENT
        assert error.context["shortfall"] == Money("26.00")
        assert error.context["amount_due"] == Money("76.00")

        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.ACTIVE
        status = await ledger.get_status(OPERATOR)
        assert status.current_balance == Money("500.00")
        assert status.flow_count == 1

    @pytest.mark.integration
    async def test_double_payment_rejected(
        self, parking: Any, clock: Any, open_register: Any
    ) -> None:
        """Test that a PAID ticket cannot be charged again."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=30)
        await parking.process_payment(entry.ticket_id, "25.00", OPERATOR)

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.process_payment(entry.ticket_id, "25.00", OPERATOR)
        assert exc_info.value.code == ErrorCode.TICKET_ALREADY_PROCESSED

    @pytest.mark.integration
    async def test_payment_without_register_rejected(self, parking: Any, clock: Any) -> None:
        """Test the default policy refuses payments with no OPEN register."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=30)

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.process_payment(entry.ticket_id, "25.00", OPERATOR)
        assert exc_info.value.code == ErrorCode.NO_OPEN_CASH_REGISTER

        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.ACTIVE

    @pytest.mark.integration
    @pytest.mark.parametrize("cash", ["-1.00", "10.005", "abc"])
    async def test_invalid_cash(self, parking: Any, cash: str) -> None:
        """Test cash validation before any storage access."""
        with pytest.raises(ValidationError):
            await parking.process_payment("any", cash, OPERATOR)

    @pytest.mark.integration
    async def test_operator_required(self, parking: Any) -> None:
        """Test that payments need an operator."""
        with pytest.raises(ValidationError):
            await parking.process_payment("any", "25.00", "  ")


class TestLostTicket:
    """Test suite for lost tickets."""

    @pytest.mark.integration
    async def test_lost_ticket(
        self, parking: Any, ledger: Any, clock: Any, open_register: Any
    ) -> None:
        """Test the flat lost-ticket fee against the plate's ACTIVE ticket."""
        entry = await parking.create_entry("ABC123")
        clock.advance(hours=5)

        result = await parking.process_lost_ticket("abc123", "200.00", OPERATOR)

        assert result.reference_id == entry.ticket_id
        assert result.total_amount == Money("150.00")
        assert result.change_given == Money("50.00")
        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.LOST
        status = await ledger.get_status(OPERATOR)
        assert status.current_balance == Money("650.00")

    @pytest.mark.integration
    async def test_lost_ticket_without_active_ticket(
        self, parking_engine: Any, open_register: Any
    ) -> None:
        """Test that no ticket is fabricated for an unknown plate."""
        with pytest.raises(BusinessLogicError) as exc_info:
            await parking_engine.parking.process_lost_ticket("ZZZ999", "200.00", OPERATOR)
        assert exc_info.value.code == ErrorCode.NO_ACTIVE_TICKET_FOUND

        async def _counts(session: Any) -> tuple:
            tickets = await session.execute(select(func.count(Ticket.id)))
            transactions = await session.execute(select(func.count(Transaction.id)))
            return tickets.scalar_one(), transactions.scalar_one()

        assert await parking_engine.executor.read(_counts) == (0, 0)


class TestCancelAndRefund:
    """Test suite for the admin side channel."""

    @pytest.mark.integration
    async def test_cancel_active_ticket(self, parking: Any) -> None:
        """Test cancelling a ticket and that it can no longer be paid."""
        entry = await parking.create_entry("ABC123")

        record = await parking.cancel_ticket(entry.ticket_id, OPERATOR, "Entered by mistake")

        assert record.status == TicketStatus.CANCELLED
        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.process_payment(entry.ticket_id, "25.00", OPERATOR)
        assert exc_info.value.code == ErrorCode.TICKET_ALREADY_PROCESSED
        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.cancel_ticket(entry.ticket_id, OPERATOR, "Again")
        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.integration
    async def test_cancel_requires_reason(self, parking: Any) -> None:
        """Test that cancelling needs a reason."""
        with pytest.raises(ValidationError):
            await parking.cancel_ticket("any", OPERATOR, " ")

    @pytest.mark.integration
    async def test_refund_paid_ticket(
        self, parking: Any, ledger: Any, clock: Any, open_register: Any
    ) -> None:
        """Test a refund withdraws the charged amount from the register."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=150)
        await parking.process_payment(entry.ticket_id, "76.00", OPERATOR)

        refund = await parking.refund_ticket(entry.ticket_id, OPERATOR, "Barrier malfunction")

        assert refund.amount_refunded == Money("76.00")
        record = await parking.lookup_ticket(entry.ticket_id)
        assert record.status == TicketStatus.REFUNDED
        status = await ledger.get_status(OPERATOR)
        assert status.current_balance == Money("500.00")
        verification = await ledger.verify_register(status.register_id)
        assert verification.consistent

    @pytest.mark.integration
    async def test_refund_active_ticket_rejected(self, parking: Any, open_register: Any) -> None:
        """Test that an ACTIVE ticket has nothing to refund."""
        entry = await parking.create_entry("ABC123")

        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.refund_ticket(entry.ticket_id, OPERATOR, "No reason")
        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION


class TestLookup:
    """Test suite for ticket lookup."""

    @pytest.mark.integration
    async def test_lookup_by_plate(self, parking: Any, clock: Any) -> None:
        """Test that the plate finds the ACTIVE ticket with its running estimate."""
        entry = await parking.create_entry("ABC123")
        clock.advance(minutes=76)

        record = await parking.lookup_ticket("abc123")

        assert record.ticket_id == entry.ticket_id
        assert record.current_estimate == Money("42.00")

    @pytest.mark.integration
    async def test_lookup_missing(self, parking: Any) -> None:
        """Test TICKET_NOT_FOUND for unknown terms."""
        with pytest.raises(BusinessLogicError) as exc_info:
            await parking.lookup_ticket("NOPE")
        assert exc_info.value.code == ErrorCode.TICKET_NOT_FOUND
