"""
Receipt outbox tests: a failing printer never undoes a committed payment.
"""
from typing import Any

import pytest
from sqlalchemy import select

from parking_core.database.models import ReceiptOutbox
from parking_core.domain.money import Money

OPERATOR = "op-1"


async def _outbox_row(engine: Any, kind: str) -> ReceiptOutbox:
    async def _fetch(session: Any) -> ReceiptOutbox:
        stmt = select(ReceiptOutbox).where(ReceiptOutbox.kind == kind)
        return (await session.execute(stmt)).scalar_one()

    return await engine.executor.read(_fetch)


class TestReceiptDelivery:
    """Test suite for printing after commit."""

    @pytest.mark.integration
    async def test_entry_receipt_printed(self, parking_engine: Any, printer: Any) -> None:
        """Test the entry ticket goes through the outbox to the printer."""
        entry = await parking_engine.parking.create_entry("ABC123")

        assert entry.receipt_printed
        assert [r.kind for r in printer.printed] == ["ENTRY"]
        assert printer.printed[0].reference_id == entry.ticket_id

        row = await _outbox_row(parking_engine, "ENTRY")
        assert row.delivered
        assert row.attempts == 1
        assert await parking_engine.receipts.pending_count() == 0

    @pytest.mark.integration
    async def test_payment_receipt_contents(
        self, parking_engine: Any, printer: Any, clock: Any, open_register: Any
    ) -> None:
        """Test amounts on the printed payment receipt."""
        entry = await parking_engine.parking.create_entry("ABC123")
        clock.advance(minutes=150)

        result = await parking_engine.parking.process_payment(entry.ticket_id, "100.00", OPERATOR)

        assert result.receipt_printed
        receipt = printer.printed[-1]
        assert receipt.kind == "PARKING"
        assert receipt.plate_number == "ABC123"
        assert receipt.amount == Money("76.00")
        assert receipt.cash_received == Money("100.00")
        assert receipt.change_given == Money("24.00")

    @pytest.mark.integration
    async def test_printer_failure_keeps_payment(
        self, parking_engine: Any, printer: Any, clock: Any, open_register: Any
    ) -> None:
        """Test a hardware failure leaves the receipt queued and the money booked."""
        entry = await parking_engine.parking.create_entry("ABC123")
        clock.advance(minutes=150)
        printer.fail = True

        result = await parking_engine.parking.process_payment(entry.ticket_id, "100.00", OPERATOR)

        assert not result.receipt_printed
        assert result.total_amount == Money("76.00")
        status = await parking_engine.ledger.get_status(OPERATOR)
        assert status.current_balance == Money("576.00")
        ticket = await parking_engine.parking.lookup_ticket(entry.ticket_id)
        assert ticket.status == "PAID"

        assert await parking_engine.receipts.pending_count() == 1
        row = await _outbox_row(parking_engine, "PARKING")
        assert not row.delivered
        assert row.attempts == 1
        assert row.last_error == "Printer out of paper"

    @pytest.mark.integration
    async def test_driver_error_keeps_payment(
        self, parking_engine: Any, printer: Any, clock: Any, open_register: Any, mocker: Any
    ) -> None:
        """Test a printer fault that is not a HardwareError also degrades to queued."""
        entry = await parking_engine.parking.create_entry("ABC123")
        clock.advance(minutes=150)
        mocker.patch.object(
            printer, "print_receipt", side_effect=OSError("usb device vanished")
        )

        result = await parking_engine.parking.process_payment(entry.ticket_id, "100.00", OPERATOR)

        assert not result.receipt_printed
        assert result.total_amount == Money("76.00")
        ticket = await parking_engine.parking.lookup_ticket(entry.ticket_id)
        assert ticket.status == "PAID"
        row = await _outbox_row(parking_engine, "PARKING")
        assert not row.delivered
        assert row.attempts == 1
        assert "usb device vanished" in row.last_error

    @pytest.mark.integration
    async def test_pending_receipts_retried(
        self, parking_engine: Any, printer: Any, clock: Any, open_register: Any
    ) -> None:
        """Test process_pending delivers once the printer is back."""
        entry = await parking_engine.parking.create_entry("ABC123")
        clock.advance(minutes=150)
        printer.fail = True
        await parking_engine.parking.process_payment(entry.ticket_id, "100.00", OPERATOR)

        assert await parking_engine.receipts.process_pending() == 0

        printer.fail = False
        delivered = await parking_engine.receipts.process_pending()

        assert delivered == 1
        assert await parking_engine.receipts.pending_count() == 0
        assert printer.printed[-1].kind == "PARKING"
        row = await _outbox_row(parking_engine, "PARKING")
        assert row.delivered
        assert row.attempts == 3
        assert row.last_error is None
