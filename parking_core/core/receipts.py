"""
Receipt outbox.

Money events write their receipt to the outbox inside the same transaction.
After commit the dispatcher hands it to the printer. A printer failure leaves
the row queued for process_pending(); it never reaches back into the
committed money event.
"""
from typing import Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.database.models import ReceiptOutbox
from parking_core.database.types import Clock, utcnow
from parking_core.domain.errors import HardwareError, TransientConflictError
from parking_core.domain.records import Receipt
from parking_core.monitoring.metrics import metrics

from .executor import AtomicExecutor

logger = structlog.get_logger(__name__)


class ReceiptPrinter(Protocol):
    """Printer collaborator. Raises HardwareError when the device fails."""

    async def print_receipt(self, receipt: Receipt) -> None: ...


class LoggingPrinter:
    """
    Default printer that just logs receipts.

    Replace with the thermal printer driver in a kiosk deployment.
    """

    async def print_receipt(self, receipt: Receipt) -> None:
        logger.info(
            "receipt_printed_default",
            kind=receipt.kind,
            reference_id=receipt.reference_id,
            plate_number=receipt.plate_number,
            amount=receipt.amount.to_database(),
        )


async def enqueue_receipt(session: AsyncSession, receipt: Receipt) -> ReceiptOutbox:
    """Queue a receipt inside the caller's unit of work."""
    row = ReceiptOutbox(
        kind=receipt.kind,
        aggregate_id=receipt.reference_id,
        payload=receipt.to_payload(),
        delivered=False,
        attempts=0,
        created_at=receipt.issued_at,
    )
    session.add(row)
    await session.flush()
    return row


class ReceiptDispatcher:
    """Delivers queued receipts after commit."""

    def __init__(
        self,
        executor: AtomicExecutor,
        printer: ReceiptPrinter | None = None,
        clock: Clock = utcnow,
    ):
        self.executor = executor
        self.printer = printer or LoggingPrinter()
        self.clock = clock

    async def dispatch(self, outbox_id: int, receipt: Receipt) -> bool:
        """
        Print one committed receipt.

        Returns:
            bool: True if printed, False if it stays queued
        """
        try:
            await self.printer.print_receipt(receipt)
        except HardwareError as e:
            metrics.record_receipt_failure(receipt.kind)
            logger.warning(
                "receipt_print_failed",
                outbox_id=outbox_id,
                kind=receipt.kind,
                reference_id=receipt.reference_id,
                error=e.message,
            )
            await self._record_attempt(outbox_id, delivered=False, error=e.message)
            return False
        except Exception as e:
            # Driver faults outside HardwareError still leave the row queued
            metrics.record_receipt_failure(receipt.kind)
            logger.error(
                "receipt_printer_error",
                outbox_id=outbox_id,
                kind=receipt.kind,
                reference_id=receipt.reference_id,
                error=repr(e),
            )
            await self._record_attempt(outbox_id, delivered=False, error=repr(e))
            return False

        await self._record_attempt(outbox_id, delivered=True, error=None)
        return True

    async def process_pending(self, batch_size: int = 50) -> int:
        """
        Retry queued receipts, oldest first.

        Returns:
            int: Number delivered in this pass
        """

        async def _fetch(session: AsyncSession) -> list:
            stmt = (
                select(ReceiptOutbox)
                .where(ReceiptOutbox.delivered.is_(False))
                .order_by(ReceiptOutbox.created_at, ReceiptOutbox.id)
                .limit(batch_size)
            )
            return list((await session.execute(stmt)).scalars().all())

        pending = await self.executor.read(_fetch)
        delivered = 0
        for row in pending:
            if await self.dispatch(row.id, Receipt.from_payload(row.payload)):
                delivered += 1

        metrics.set_receipt_queue_depth(await self.pending_count())
        logger.info("receipt_outbox_processed", fetched=len(pending), delivered=delivered)
        return delivered

    async def pending_count(self) -> int:
        async def _count(session: AsyncSession) -> int:
            stmt = select(func.count(ReceiptOutbox.id)).where(ReceiptOutbox.delivered.is_(False))
            return int((await session.execute(stmt)).scalar_one())

        return await self.executor.read(_count)

    async def _record_attempt(self, outbox_id: int, delivered: bool, error: str | None) -> None:
        async def _update(session: AsyncSession) -> None:
            row = await session.get(ReceiptOutbox, outbox_id)
            if row is None:
                return
            row.attempts += 1
            row.last_error = error
            if delivered:
                row.delivered = True
                row.delivered_at = self.clock()

        try:
            await self.executor.run(_update, operation="receipt_outbox_update")
        except TransientConflictError as e:
            # The money event is already committed; the row is retried later
            logger.error("receipt_outbox_update_failed", outbox_id=outbox_id, error=str(e))
