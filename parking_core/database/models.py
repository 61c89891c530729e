"""SQLAlchemy database models for the parking lot."""
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from parking_core.domain.money import Money

from .types import MoneyColumn, UTCDateTime, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")

# BigInteger autoincrement only works on SQLite as INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PricingConfig(Base):
    """
    Pricing configuration.

    Only rows with is_active participate; the newest active row wins.
    """

    __tablename__ = "pricing_configs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    minimum_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    minimum_rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    increment_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    increment_rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    daily_special_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_special_rate: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    monthly_rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    lost_ticket_fee: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    increment_rates: Mapped[List["IncrementRate"]] = relationship(
        back_populates="pricing_config",
        order_by="IncrementRate.tier_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("increment_minutes > 0", name="positive_increment_minutes"),
        CheckConstraint("minimum_hours >= 0", name="non_negative_minimum_hours"),
        Index("idx_pricing_active_created", "is_active", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of PricingConfig."""
        return f"<PricingConfig(id={self.id}, active={self.is_active})>"


class IncrementRate(Base):
    """One tier of an ordered incremental rate schedule."""

    __tablename__ = "increment_rates"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    pricing_config_id: Mapped[int] = mapped_column(
        ForeignKey("pricing_configs.id", ondelete="CASCADE"), nullable=False
    )
    tier_index: Mapped[int] = mapped_column(Integer, nullable=False)
    rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)

    pricing_config: Mapped[PricingConfig] = relationship(back_populates="increment_rates")

    __table_args__ = (
        Index("uq_increment_rate_tier", "pricing_config_id", "tier_index", unique=True),
    )


class Ticket(Base):
    """
    Parking ticket.

    At most one ACTIVE ticket per plate, enforced by a partial unique index so
    concurrent entries for the same plate cannot both commit.
    """

    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    plate_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    entry_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    exit_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_amount: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    barcode: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    vehicle_type: Mapped[str] = mapped_column(String(20), nullable=False, default="car")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PAID', 'LOST', 'CANCELLED', 'REFUNDED')",
            name="valid_ticket_status",
        ),
        Index(
            "uq_tickets_active_plate",
            "plate_number",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("idx_tickets_status_entry", "status", "entry_time"),
    )

    def __repr__(self) -> str:
        """String representation of Ticket."""
        return f"<Ticket(id={self.id}, plate={self.plate_number}, status={self.status})>"


class Transaction(Base):
    """
    Ledger entry for money taken or returned.

    Append-only: rows are inserted once and never updated.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    ticket_id: Mapped[str | None] = mapped_column(
        ForeignKey("tickets.id"), nullable=True, index=True
    )
    pension_customer_id: Mapped[str | None] = mapped_column(
        ForeignKey("pension_customers.id"), nullable=True, index=True
    )
    partner_ticket_id: Mapped[str | None] = mapped_column(
        ForeignKey("partner_tickets.id"), nullable=True, index=True
    )
    cash_register_id: Mapped[str | None] = mapped_column(
        ForeignKey("cash_registers.id"), nullable=True, index=True
    )
    operator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="CASH")
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "type IN ('PARKING', 'LOST_TICKET', 'PENSION', 'PARTNER', 'REFUND')",
            name="valid_transaction_type",
        ),
        Index("idx_transactions_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return f"<Transaction(id={self.id}, type={self.type}, amount={self.amount})>"


class CashRegister(Base):
    """
    Per-shift cash register.

    current_balance always equals opening_balance plus the signed sum of its
    DEPOSIT/WITHDRAWAL/ADJUSTMENT flows.
    """

    __tablename__ = "cash_registers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    operator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")
    opening_balance: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    current_balance: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    expected_balance: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    counted_balance: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    discrepancy: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    shift_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    shift_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    flows: Mapped[List["CashFlow"]] = relationship(
        back_populates="cash_register",
        order_by="CashFlow.id",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'CLOSED', 'RECONCILING', 'SUSPENDED')",
            name="valid_register_status",
        ),
        Index(
            "uq_cash_registers_open_operator",
            "operator_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of CashRegister."""
        return (
            f"<CashRegister(id={self.id}, operator={self.operator_id}, "
            f"status={self.status}, balance={self.current_balance})>"
        )


class CashFlow(Base):
    """Append-only movement against a cash register."""

    __tablename__ = "cash_flows"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cash_register_id: Mapped[str] = mapped_column(
        ForeignKey("cash_registers.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    cash_register: Mapped[CashRegister] = relationship(back_populates="flows")

    __table_args__ = (
        CheckConstraint(
            "type IN ('DEPOSIT', 'WITHDRAWAL', 'ADJUSTMENT', 'OPENING_BALANCE', 'CLOSING_BALANCE')",
            name="valid_cash_flow_type",
        ),
    )

    def __repr__(self) -> str:
        """String representation of CashFlow."""
        return f"<CashFlow(id={self.id}, type={self.type}, amount={self.amount})>"


class PensionCustomer(Base):
    """
    Monthly subscriber.

    Inactive until the first payment commits; never deleted, only
    deactivated. One active customer per plate.
    """

    __tablename__ = "pension_customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    plate_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(60), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(60), nullable=True)
    monthly_rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="pension_dates_ordered"),
        Index(
            "uq_pension_active_plate",
            "plate_number",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PensionCustomer."""
        return (
            f"<PensionCustomer(id={self.id}, plate={self.plate_number}, "
            f"active={self.is_active})>"
        )


class PartnerBusiness(Base):
    """Business whose customers park under an alternate rate."""

    __tablename__ = "partner_businesses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    business_type: Mapped[str] = mapped_column(String(60), nullable=False)
    flat_rate: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    hourly_rate: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    max_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    valid_days: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    valid_time_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    valid_time_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of PartnerBusiness."""
        return f"<PartnerBusiness(id={self.id}, name={self.name})>"


class PartnerTicket(Base):
    """Ticket priced under a partner profile instead of the regular config."""

    __tablename__ = "partner_tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ticket_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    barcode: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    plate_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    partner_business_id: Mapped[str] = mapped_column(
        ForeignKey("partner_businesses.id"), nullable=False, index=True
    )
    entry_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    exit_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    agreed_rate: Mapped[Money] = mapped_column(MoneyColumn, nullable=False)
    paid_amount: Mapped[Money | None] = mapped_column(MoneyColumn, nullable=True)
    charged_regular_rate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_business_stamp: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    business_reference: Mapped[str | None] = mapped_column(String(120), nullable=True)
    operator_id: Mapped[str] = mapped_column(String(64), nullable=False)

    partner_business: Mapped[PartnerBusiness] = relationship(lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PAID', 'CANCELLED')",
            name="valid_partner_ticket_status",
        ),
        Index(
            "uq_partner_tickets_active_plate",
            "plate_number",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PartnerTicket."""
        return f"<PartnerTicket(id={self.id}, plate={self.plate_number}, status={self.status})>"


class ReceiptOutbox(Base):
    """
    Receipts waiting for the printer.

    Written in the same transaction as the money event, delivered after
    commit. A failed delivery leaves the row queued.
    """

    __tablename__ = "receipt_outbox"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("idx_receipt_outbox_pending", "delivered", "created_at"),)

    def __repr__(self) -> str:
        """String representation of ReceiptOutbox."""
        return f"<ReceiptOutbox(id={self.id}, kind={self.kind}, delivered={self.delivered})>"
