"""Core services: atomic execution, ledger, tickets, pensions, partners."""
from .engine import ParkingEngine
from .executor import AtomicExecutor
from .ledger import CashLedger
from .parking_service import ParkingService
from .partner_service import PartnerService
from .pension_service import PensionService
from .receipts import LoggingPrinter, ReceiptDispatcher, ReceiptPrinter

__all__ = [
    "AtomicExecutor",
    "CashLedger",
    "LoggingPrinter",
    "ParkingEngine",
    "ParkingService",
    "PartnerService",
    "PensionService",
    "ReceiptDispatcher",
    "ReceiptPrinter",
]
