"""
Finalized, immutable records returned by the services.

These are built from committed rows only; receipts and the audit log
receive nothing else.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .money import Money
from .pension import PensionStatus
from .pricing import FeeBreakdown
from .tickets import TicketStatus


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Receipt(_Record):
    """What a printer gets: plate, amounts, timestamps, reference id."""

    kind: str
    reference_id: str
    plate_number: str
    amount: Money
    cash_received: Optional[Money] = None
    change_given: Optional[Money] = None
    issued_at: datetime
    lot_name: str = ""
    details: Dict[str, str] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe form stored in the receipt outbox."""
        return {
            "kind": self.kind,
            "reference_id": self.reference_id,
            "plate_number": self.plate_number,
            "amount": self.amount.to_database(),
            "cash_received": self.cash_received.to_database() if self.cash_received else None,
            "change_given": self.change_given.to_database() if self.change_given else None,
            "issued_at": self.issued_at.isoformat(),
            "lot_name": self.lot_name,
            "details": dict(self.details),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Receipt":
        return cls(
            kind=payload["kind"],
            reference_id=payload["reference_id"],
            plate_number=payload["plate_number"],
            amount=Money(payload["amount"]),
            cash_received=Money(payload["cash_received"]) if payload.get("cash_received") else None,
            change_given=Money(payload["change_given"]) if payload.get("change_given") else None,
            issued_at=datetime.fromisoformat(payload["issued_at"]),
            lot_name=payload.get("lot_name", ""),
            details=payload.get("details") or {},
        )


class EntryTicket(_Record):
    ticket_id: str
    barcode: str
    plate_number: str
    entry_time: datetime
    vehicle_type: str
    receipt_printed: bool = False


class TicketRecord(_Record):
    """Lookup view of a ticket, with a running estimate while ACTIVE."""

    ticket_id: str
    barcode: str
    plate_number: str
    status: TicketStatus
    entry_time: datetime
    exit_time: Optional[datetime] = None
    total_amount: Optional[Money] = None
    current_estimate: Optional[Money] = None


class FeeQuote(_Record):
    ticket_id: str
    plate_number: str
    entry_time: datetime
    exit_time: datetime
    duration_minutes: int
    duration_text: str
    breakdown: FeeBreakdown
    total: Money
    total_formatted: str


class PaymentResult(_Record):
    """Outcome of any cash-taking operation."""

    reference_id: str
    plate_number: str
    transaction_id: str
    total_amount: Money
    cash_received: Money
    change_given: Money
    denominations: Dict[str, int]
    paid_at: datetime
    needs_reconciliation: bool = False
    receipt_id: Optional[str] = None
    receipt_printed: bool = False


class RefundResult(_Record):
    ticket_id: str
    transaction_id: str
    amount_refunded: Money
    refunded_at: datetime


class RegisterSummary(_Record):
    register_id: str
    operator_id: str
    status: str
    opening_balance: Money
    current_balance: Money
    expected_balance: Optional[Money] = None
    counted_balance: Optional[Money] = None
    discrepancy: Optional[Money] = None
    shift_start: datetime
    shift_end: Optional[datetime] = None
    flow_count: int = 0


class RegisterVerification(_Record):
    register_id: str
    stored_balance: Money
    derived_balance: Money
    drift: Money

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.drift.is_zero()


class PensionCustomerRecord(_Record):
    customer_id: str
    name: str
    plate_number: str
    barcode: str
    monthly_rate: Money
    start_date: datetime
    end_date: datetime
    is_active: bool
    phone: Optional[str] = None
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None


class PensionPaymentResult(_Record):
    customer: PensionCustomerRecord
    months_charged: int
    payment: PaymentResult
    activated: bool = False


class PensionStatusReport(_Record):
    customer_id: str
    plate_number: str
    status: PensionStatus
    days_remaining: int
    end_date: datetime

    @computed_field
    @property
    def access_allowed(self) -> bool:
        return self.status in (PensionStatus.ACTIVE, PensionStatus.EXPIRING_SOON)


class PartnerBusinessRecord(_Record):
    business_id: str
    name: str
    business_type: str
    flat_rate: Optional[Money] = None
    hourly_rate: Optional[Money] = None
    max_hours: Optional[int] = None
    valid_days: tuple = ()
    is_active: bool = True


class PartnerTicketRecord(_Record):
    partner_ticket_id: str
    ticket_number: str
    barcode: str
    plate_number: str
    partner_business_id: str
    partner_name: str
    entry_time: datetime
    status: str
