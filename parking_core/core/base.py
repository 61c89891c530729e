"""Plumbing shared by the services that take cash."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple

import structlog
from dateutil import parser as date_parser
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.config import Settings
from parking_core.database.models import Transaction, new_id
from parking_core.database.types import Clock, utcnow
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.formatting import ES_MX, FormatContext
from parking_core.domain.money import Money
from parking_core.domain.records import PaymentResult, Receipt
from parking_core.monitoring.logging import audit_log
from parking_core.monitoring.metrics import metrics

from .executor import AtomicExecutor
from .ledger import CashLedger
from .receipts import ReceiptDispatcher, enqueue_receipt

logger = structlog.get_logger(__name__)


class TransactionType(str, Enum):
    PARKING = "PARKING"
    LOST_TICKET = "LOST_TICKET"
    PENSION = "PENSION"
    PARTNER = "PARTNER"
    REFUND = "REFUND"


class Settlement(NamedTuple):
    """A committed-to-be payment and the receipt queued with it."""

    result: PaymentResult
    outbox_id: int
    receipt: Receipt


def parse_cash(value: Any, field: str = "cash_received") -> Money:
    """
    Validate a cash amount at the boundary.

    Raises:
        ValidationError: If the amount is malformed, negative or sub-centavo
    """
    try:
        money = Money.coerce(value)
    except ValueError as e:
        raise ValidationError(f"Invalid amount for {field}", context={"field": field}) from e
    if money.is_negative():
        raise ValidationError(f"{field} cannot be negative", context={field: money})
    if not money.is_centavo_exact():
        raise ValidationError(f"{field} has more than two decimals", context={field: money})
    return money


def parse_moment(value: datetime | str | None, default: datetime | None) -> datetime | None:
    """
    Parse an optional timestamp. Naive values are taken as UTC.

    Raises:
        ValidationError: INVALID_EXIT_TIME when the text is not ISO-8601
    """
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ValidationError(
                f"Invalid timestamp: {value!r}",
                code=ErrorCode.INVALID_EXIT_TIME,
                context={"value": value},
            ) from e
    if not isinstance(value, datetime):
        raise ValidationError(
            "Timestamp must be a datetime or ISO-8601 string",
            code=ErrorCode.INVALID_EXIT_TIME,
        )
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_operator(operator_id: str | None) -> str:
    if not operator_id or not str(operator_id).strip():
        raise ValidationError("operator_id is required", context={"field": "operator_id"})
    return str(operator_id).strip()


def ensure_covers(amount_due: Money, cash_received: Money, reference_id: str) -> None:
    """
    Raises:
        BusinessLogicError: INSUFFICIENT_PAYMENT carrying the exact shortfall
    """
    if cash_received < amount_due:
        raise BusinessLogicError(
            ErrorCode.INSUFFICIENT_PAYMENT,
            "Cash received does not cover the amount due",
            {
                "reference_id": reference_id,
                "amount_due": amount_due,
                "cash_received": cash_received,
                "shortfall": amount_due - cash_received,
            },
        )


class BaseService:
    """Executor, ledger, receipts, clock and formatting shared by services."""

    def __init__(
        self,
        executor: AtomicExecutor,
        ledger: CashLedger,
        dispatcher: ReceiptDispatcher,
        settings: Settings,
        clock: Clock = utcnow,
        fmt: FormatContext = ES_MX,
    ):
        self.executor = executor
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock
        self.fmt = fmt

    def now(self) -> datetime:
        moment = self.clock()
        if moment.tzinfo is None:
            raise ValueError("Clock must return timezone-aware datetimes")
        return moment.astimezone(timezone.utc)

    async def settle(
        self,
        session: AsyncSession,
        *,
        kind: TransactionType,
        amount: Money,
        cash_received: Money,
        operator_id: str,
        reference_id: str,
        plate_number: str,
        description: str,
        now: datetime,
        details: Dict[str, str] | None = None,
        **links: str,
    ) -> Settlement:
        """
        Book a cash payment inside the caller's unit of work.

        Inserts the ledger Transaction, the register DEPOSIT and the queued
        receipt. links are the Transaction foreign keys (ticket_id,
        pension_customer_id, partner_ticket_id).
        """
        ensure_covers(amount, cash_received, reference_id)
        transaction = Transaction(
            id=new_id(),
            type=kind.value,
            amount=amount,
            operator_id=operator_id,
            description=description,
            timestamp=now,
            **links,
        )
        register = await self.ledger.record_deposit(
            session, operator_id, amount, description, transaction
        )
        change = amount.calculate_change(cash_received)
        receipt = Receipt(
            kind=kind.value,
            reference_id=reference_id,
            plate_number=plate_number,
            amount=amount,
            cash_received=cash_received,
            change_given=change,
            issued_at=now,
            lot_name=self.settings.lot_name,
            details=details or {},
        )
        outbox = await enqueue_receipt(session, receipt)
        result = PaymentResult(
            reference_id=reference_id,
            plate_number=plate_number,
            transaction_id=transaction.id,
            total_amount=amount,
            cash_received=cash_received,
            change_given=change,
            denominations=change.split_into_denominations(),
            paid_at=now,
            needs_reconciliation=register is None,
            receipt_id=str(outbox.id),
        )
        return Settlement(result, outbox.id, receipt)

    async def deliver(self, settlement: Settlement, event: str, operator_id: str) -> PaymentResult:
        """Post-commit side effects: receipt, metrics, audit log."""
        printed = await self.dispatcher.dispatch(settlement.outbox_id, settlement.receipt)
        result = settlement.result.model_copy(update={"receipt_printed": printed})
        metrics.record_money_event(settlement.receipt.kind, float(result.total_amount.amount))
        audit_log(
            event,
            operator_id,
            reference_id=result.reference_id,
            transaction_id=result.transaction_id,
            plate_number=result.plate_number,
            amount=result.total_amount.to_database(),
            change=result.change_given.to_database(),
            needs_reconciliation=result.needs_reconciliation,
        )
        return result
