"""Pure domain layer: money, pricing and lifecycle rules. No I/O."""
from .errors import (
    BusinessLogicError,
    ErrorCode,
    HardwareError,
    ParkingError,
    TransientConflictError,
    ValidationError,
)
from .formatting import EN_US, ES_MX, FormatContext, format_duration
from .money import Money
from .pricing import FeeBreakdown, FeeResult, IncrementCharge, PricingPolicy, calculate_fee
from .tickets import TicketStatus, ensure_transition, generate_barcode, normalize_plate

__all__ = [
    "BusinessLogicError",
    "ErrorCode",
    "HardwareError",
    "ParkingError",
    "TransientConflictError",
    "ValidationError",
    "EN_US",
    "ES_MX",
    "FormatContext",
    "format_duration",
    "Money",
    "FeeBreakdown",
    "FeeResult",
    "IncrementCharge",
    "PricingPolicy",
    "calculate_fee",
    "TicketStatus",
    "ensure_transition",
    "generate_barcode",
    "normalize_plate",
]
