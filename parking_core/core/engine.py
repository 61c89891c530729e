"""
ParkingEngine: wires the services together and dispatches typed commands.

Example:
    engine = ParkingEngine.from_settings(get_settings())
    await engine.start()
    command = parse_command({"kind": "create_entry", "plate_number": "ABC123"})
    entry = await engine.handle(command)
"""
from typing import Any, Awaitable, Callable, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from parking_core.api.schemas import (
    CalculateFeeRequest,
    CancelTicketRequest,
    CloseRegisterRequest,
    Command,
    CompareRatesRequest,
    CreateEntryRequest,
    CreatePartnerBusinessRequest,
    CreatePartnerTicketRequest,
    CreatePensionCustomerRequest,
    LookupTicketRequest,
    LostTicketRequest,
    OpenRegisterRequest,
    PartnerPaymentRequest,
    PensionPaymentRequest,
    PensionRenewalRequest,
    PensionStatusRequest,
    ProcessPaymentRequest,
    RefundTicketRequest,
    RegisterAdjustmentRequest,
    RegisterStatusRequest,
)
from parking_core.config import Settings
from parking_core.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from parking_core.database.types import Clock, utcnow
from parking_core.domain.formatting import ES_MX, FormatContext
from parking_core.domain.pricing import PricingPolicy

from .executor import AtomicExecutor
from .ledger import CashLedger
from .parking_service import ParkingService
from .partner_service import PartnerService
from .pension_service import PensionService
from .pricing_store import get_active_policy, save_policy
from .receipts import ReceiptDispatcher, ReceiptPrinter

logger = structlog.get_logger(__name__)


class ParkingEngine:
    """Facade over the parking services, one per process."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        printer: ReceiptPrinter | None = None,
        clock: Clock = utcnow,
        fmt: FormatContext = ES_MX,
        engine: AsyncEngine | None = None,
    ):
        self.settings = settings
        self.engine = engine
        self.executor = AtomicExecutor.from_settings(settings, session_factory)
        self.ledger = CashLedger(self.executor, settings, clock)
        self.receipts = ReceiptDispatcher(self.executor, printer, clock)

        shared = dict(
            executor=self.executor,
            ledger=self.ledger,
            dispatcher=self.receipts,
            settings=settings,
            clock=clock,
            fmt=fmt,
        )
        self.parking = ParkingService(**shared)
        self.pension = PensionService(**shared)
        self.partners = PartnerService(**shared)

        self._handlers: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            CreateEntryRequest: lambda c: self.parking.create_entry(
                c.plate_number, c.vehicle_type, c.notes, c.operator_id
            ),
            CalculateFeeRequest: lambda c: self.parking.calculate_fee(c.ticket_ref, c.exit_time),
            ProcessPaymentRequest: lambda c: self.parking.process_payment(
                c.ticket_ref, c.cash_received, c.operator_id
            ),
            LostTicketRequest: lambda c: self.parking.process_lost_ticket(
                c.plate_number, c.cash_received, c.operator_id
            ),
            CancelTicketRequest: lambda c: self.parking.cancel_ticket(
                c.ticket_ref, c.operator_id, c.reason
            ),
            RefundTicketRequest: lambda c: self.parking.refund_ticket(
                c.ticket_ref, c.operator_id, c.reason
            ),
            LookupTicketRequest: lambda c: self.parking.lookup_ticket(c.term),
            OpenRegisterRequest: lambda c: self.ledger.open_register(
                c.operator_id, c.opening_balance
            ),
            RegisterAdjustmentRequest: lambda c: self.ledger.make_adjustment(
                c.operator_id, c.type, c.amount, c.reason
            ),
            CloseRegisterRequest: lambda c: self.ledger.close_register(
                c.operator_id, c.counted_balance, c.notes
            ),
            RegisterStatusRequest: lambda c: self.ledger.get_status(c.operator_id),
            CreatePensionCustomerRequest: lambda c: self.pension.create_customer(
                name=c.name,
                plate_number=c.plate_number,
                duration_months=c.duration_months,
                monthly_rate=c.monthly_rate,
                start_date=c.start_date,
                phone=c.phone,
                vehicle_make=c.vehicle_make,
                vehicle_model=c.vehicle_model,
                operator_id=c.operator_id,
            ),
            PensionPaymentRequest: lambda c: self.pension.process_payment(
                c.customer_id, c.cash_received, c.operator_id
            ),
            PensionRenewalRequest: lambda c: self.pension.renew_customer(
                c.customer_id, c.duration_months, c.cash_received, c.operator_id
            ),
            PensionStatusRequest: lambda c: self.pension.check_status(c.identifier),
            CreatePartnerBusinessRequest: lambda c: self.partners.create_partner_business(
                name=c.name,
                business_type=c.business_type,
                flat_rate=c.flat_rate,
                hourly_rate=c.hourly_rate,
                max_hours=c.max_hours,
                valid_days=c.valid_days,
                valid_time_start=c.valid_time_start,
                valid_time_end=c.valid_time_end,
                operator_id=c.operator_id,
            ),
            CreatePartnerTicketRequest: lambda c: self.partners.create_partner_ticket(
                c.plate_number,
                c.partner_business_id,
                c.operator_id,
                c.customer_name,
                c.business_reference,
            ),
            CompareRatesRequest: lambda c: self.partners.compare_rates(
                c.partner_ticket_id, c.exit_time
            ),
            PartnerPaymentRequest: lambda c: self.partners.process_partner_payment(
                c.partner_ticket_id,
                c.cash_received,
                c.operator_id,
                c.charge_regular_rate,
                c.has_business_stamp,
            ),
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        printer: ReceiptPrinter | None = None,
        clock: Clock = utcnow,
        fmt: FormatContext = ES_MX,
    ) -> "ParkingEngine":
        engine = create_engine_from_settings(settings)
        return cls(
            settings,
            create_session_factory(engine),
            printer=printer,
            clock=clock,
            fmt=fmt,
            engine=engine,
        )

    async def start(self) -> None:
        """Create tables when they are missing."""
        if self.engine is not None:
            await init_db(self.engine)
        logger.info("parking_engine_started", lot_name=self.settings.lot_name)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def handle(self, command: Command) -> Any:
        """
        Run one validated command.

        Raises:
            TypeError: If command is not one of the Command variants
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")
        return await handler(command)

    async def configure_pricing(self, policy: PricingPolicy) -> PricingPolicy:
        """Install policy as the single active pricing configuration."""

        async def _configure(session: AsyncSession) -> PricingPolicy:
            await save_policy(session, policy)
            return await get_active_policy(session)

        active = await self.executor.run(_configure, operation="configure_pricing")
        logger.info(
            "pricing_configured",
            minimum_rate=str(active.minimum_rate),
            increment_rate=str(active.increment_rate),
        )
        return active
