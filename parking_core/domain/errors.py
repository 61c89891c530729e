"""
Error taxonomy for the parking core.

Four families, each handled differently by callers:
- ValidationError: malformed input, rejected before any transaction begins
- BusinessLogicError: a rule said no; nothing was written
- TransientConflictError: storage contention outlasted the retry budget,
  outcome unknown, safe to retry the whole request
- HardwareError: printer/scanner trouble after commit; never undoes money
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes exposed to the API layer."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EXIT_TIME = "INVALID_EXIT_TIME"

    VEHICLE_ALREADY_INSIDE = "VEHICLE_ALREADY_INSIDE"
    TICKET_ALREADY_PROCESSED = "TICKET_ALREADY_PROCESSED"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    INSUFFICIENT_PAYMENT = "INSUFFICIENT_PAYMENT"
    PRICING_NOT_CONFIGURED = "PRICING_NOT_CONFIGURED"
    NO_ACTIVE_TICKET_FOUND = "NO_ACTIVE_TICKET_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    NO_OPEN_CASH_REGISTER = "NO_OPEN_CASH_REGISTER"
    REGISTER_ALREADY_OPEN = "REGISTER_ALREADY_OPEN"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CASH_REGISTER_NOT_FOUND = "CASH_REGISTER_NOT_FOUND"

    PENSION_CUSTOMER_NOT_FOUND = "PENSION_CUSTOMER_NOT_FOUND"
    PENSION_CUSTOMER_EXISTS = "PENSION_CUSTOMER_EXISTS"

    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"
    PARTNER_TICKET_NOT_FOUND = "PARTNER_TICKET_NOT_FOUND"
    INVALID_DAY = "INVALID_DAY"
    INVALID_TIME = "INVALID_TIME"

    TRANSIENT_CONFLICT = "TRANSIENT_CONFLICT"
    HARDWARE_ERROR = "HARDWARE_ERROR"


class ParkingError(Exception):
    """Base error with code, user-safe message and structured context."""

    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: Dict[str, Any] = context or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for API responses and logs."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": {k: str(v) for k, v in self.context.items()},
        }


class ValidationError(ParkingError):
    """Malformed input. Raised before any storage access."""

    default_code = ErrorCode.VALIDATION_ERROR


class BusinessLogicError(ParkingError):
    """A business rule rejected the operation with zero state change."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, context=context)


class TransientConflictError(ParkingError):
    """
    Storage contention persisted through every retry.

    The outcome is unknown to the caller, never "accepted".
    """

    default_code = ErrorCode.TRANSIENT_CONFLICT

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Operation '{operation}' did not commit after {attempts} attempts",
            context={"operation": operation, "attempts": attempts},
        )
        self.operation = operation
        self.attempts = attempts


class HardwareError(ParkingError):
    """Printer or scanner failure. Only raised by external collaborators."""

    default_code = ErrorCode.HARDWARE_ERROR
