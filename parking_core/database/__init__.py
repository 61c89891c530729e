"""Database package for the parking core."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    CashFlow,
    CashRegister,
    IncrementRate,
    PartnerBusiness,
    PartnerTicket,
    PensionCustomer,
    PricingConfig,
    ReceiptOutbox,
    Ticket,
    Transaction,
)

__all__ = [
    "Base",
    "CashFlow",
    "CashRegister",
    "IncrementRate",
    "PartnerBusiness",
    "PartnerTicket",
    "PensionCustomer",
    "PricingConfig",
    "ReceiptOutbox",
    "Ticket",
    "Transaction",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
