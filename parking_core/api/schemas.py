"""
Pydantic schemas for the request boundary.

Every request is a tagged variant keyed on ``kind``. parse_command validates a
raw payload into exactly one of them before anything reaches a service.
"""
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

import pydantic
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StrictBool, TypeAdapter

from parking_core.domain.errors import ValidationError
from parking_core.domain.money import Money


def _to_money(value: Any) -> Money:
    """Operator input: Money, Decimal, int, exact float, or text like ``$1,234.50``."""
    if isinstance(value, str):
        return Money.parse(value)
    return Money.coerce(value)


CashAmount = Annotated[Money, BeforeValidator(_to_money)]
Plate = Annotated[str, Field(min_length=1, max_length=20)]
Operator = Annotated[str, Field(min_length=1, max_length=64)]


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)


# Tickets


class CreateEntryRequest(_Request):
    """Vehicle arrives at the entry booth."""

    kind: Literal["create_entry"] = "create_entry"
    plate_number: Plate
    vehicle_type: str = Field(default="car", max_length=20)
    notes: Optional[str] = Field(default=None, max_length=500)
    operator_id: Optional[Operator] = None

    model_config = ConfigDict(
        json_schema_extra={"examples": [{"kind": "create_entry", "plate_number": "ABC-123"}]}
    )


class CalculateFeeRequest(_Request):
    kind: Literal["calculate_fee"] = "calculate_fee"
    ticket_ref: str = Field(..., min_length=1, description="Ticket id or barcode")
    exit_time: Optional[Union[datetime, str]] = Field(
        default=None, description="ISO-8601 exit time; now if omitted"
    )


class ProcessPaymentRequest(_Request):
    kind: Literal["process_payment"] = "process_payment"
    ticket_ref: str = Field(..., min_length=1)
    cash_received: CashAmount
    operator_id: Operator

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "kind": "process_payment",
                    "ticket_ref": "3F2A...-ABC123",
                    "cash_received": "100.00",
                    "operator_id": "op-1",
                }
            ]
        }
    )


class LostTicketRequest(_Request):
    kind: Literal["lost_ticket"] = "lost_ticket"
    plate_number: Plate
    cash_received: CashAmount
    operator_id: Operator


class CancelTicketRequest(_Request):
    kind: Literal["cancel_ticket"] = "cancel_ticket"
    ticket_ref: str = Field(..., min_length=1)
    operator_id: Operator
    reason: str = Field(..., min_length=1, max_length=500)


class RefundTicketRequest(_Request):
    kind: Literal["refund_ticket"] = "refund_ticket"
    ticket_ref: str = Field(..., min_length=1)
    operator_id: Operator
    reason: str = Field(..., min_length=1, max_length=500)


class LookupTicketRequest(_Request):
    kind: Literal["lookup_ticket"] = "lookup_ticket"
    term: str = Field(..., min_length=1, description="Ticket id, barcode or plate")


# Cash register


class OpenRegisterRequest(_Request):
    kind: Literal["open_register"] = "open_register"
    operator_id: Operator
    opening_balance: CashAmount


class RegisterAdjustmentRequest(_Request):
    kind: Literal["register_adjustment"] = "register_adjustment"
    operator_id: Operator
    type: Literal["DEPOSIT", "WITHDRAWAL", "ADJUSTMENT"]
    amount: CashAmount
    reason: str = Field(..., min_length=1, max_length=500)


class CloseRegisterRequest(_Request):
    kind: Literal["close_register"] = "close_register"
    operator_id: Operator
    counted_balance: CashAmount
    notes: Optional[str] = Field(default=None, max_length=500)


class RegisterStatusRequest(_Request):
    kind: Literal["register_status"] = "register_status"
    operator_id: Operator


# Pension


class CreatePensionCustomerRequest(_Request):
    kind: Literal["create_pension_customer"] = "create_pension_customer"
    name: str = Field(..., min_length=1, max_length=120)
    plate_number: Plate
    duration_months: int = Field(default=1, ge=1, le=24)
    monthly_rate: Optional[CashAmount] = None
    start_date: Optional[datetime] = None
    phone: Optional[str] = Field(default=None, max_length=30)
    vehicle_make: Optional[str] = Field(default=None, max_length=60)
    vehicle_model: Optional[str] = Field(default=None, max_length=60)
    operator_id: Optional[Operator] = None


class PensionPaymentRequest(_Request):
    kind: Literal["pension_payment"] = "pension_payment"
    customer_id: str = Field(..., min_length=1)
    cash_received: CashAmount
    operator_id: Operator


class PensionRenewalRequest(_Request):
    kind: Literal["pension_renewal"] = "pension_renewal"
    customer_id: str = Field(..., min_length=1)
    duration_months: int = Field(..., ge=1, le=24)
    cash_received: CashAmount
    operator_id: Operator


class PensionStatusRequest(_Request):
    kind: Literal["pension_status"] = "pension_status"
    identifier: str = Field(..., min_length=1, description="Customer id, plate or barcode")


# Partners


class CreatePartnerBusinessRequest(_Request):
    kind: Literal["create_partner_business"] = "create_partner_business"
    name: str = Field(..., min_length=1, max_length=120)
    business_type: str = Field(..., min_length=1, max_length=60)
    flat_rate: Optional[CashAmount] = None
    hourly_rate: Optional[CashAmount] = None
    max_hours: Optional[int] = Field(default=None, gt=0)
    valid_days: Tuple[str, ...] = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
    valid_time_start: Optional[time] = None
    valid_time_end: Optional[time] = None
    operator_id: Optional[Operator] = None


class CreatePartnerTicketRequest(_Request):
    kind: Literal["create_partner_ticket"] = "create_partner_ticket"
    plate_number: Plate
    partner_business_id: str = Field(..., min_length=1)
    operator_id: Operator
    customer_name: Optional[str] = Field(default=None, max_length=120)
    business_reference: Optional[str] = Field(default=None, max_length=120)


class CompareRatesRequest(_Request):
    kind: Literal["compare_rates"] = "compare_rates"
    partner_ticket_id: str = Field(..., min_length=1)
    exit_time: Optional[Union[datetime, str]] = None


class PartnerPaymentRequest(_Request):
    """The operator must say which rate applies; there is no default."""

    kind: Literal["partner_payment"] = "partner_payment"
    partner_ticket_id: str = Field(..., min_length=1)
    cash_received: CashAmount
    operator_id: Operator
    charge_regular_rate: StrictBool
    has_business_stamp: StrictBool


Command = Annotated[
    Union[
        CreateEntryRequest,
        CalculateFeeRequest,
        ProcessPaymentRequest,
        LostTicketRequest,
        CancelTicketRequest,
        RefundTicketRequest,
        LookupTicketRequest,
        OpenRegisterRequest,
        RegisterAdjustmentRequest,
        CloseRegisterRequest,
        RegisterStatusRequest,
        CreatePensionCustomerRequest,
        PensionPaymentRequest,
        PensionRenewalRequest,
        PensionStatusRequest,
        CreatePartnerBusinessRequest,
        CreatePartnerTicketRequest,
        CompareRatesRequest,
        PartnerPaymentRequest,
    ],
    Field(discriminator="kind"),
]

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def _field_errors(error: pydantic.ValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in item["loc"]), "message": item["msg"]}
        for item in error.errors(include_url=False)
    ]


def parse_command(payload: Dict[str, Any]) -> Command:
    """
    Validate a raw request payload.

    Args:
        payload: Decoded JSON body, must carry ``kind``

    Returns:
        Command: The matching typed request

    Raises:
        ValidationError: Unknown kind or invalid fields
    """
    try:
        return _command_adapter.validate_python(payload)
    except pydantic.ValidationError as e:
        errors = _field_errors(e)
        raise ValidationError(
            "Invalid request",
            context={
                "kind": payload.get("kind") if isinstance(payload, dict) else None,
                "errors": errors,
            },
        ) from e


def serialize(value: Any) -> Any:
    """JSON-safe form of service results: Money as two-place strings."""
    if isinstance(value, Money):
        return value.to_database()
    if isinstance(value, BaseModel):
        names = list(type(value).model_fields) + list(type(value).model_computed_fields)
        return {name: serialize(getattr(value, name)) for name in names}
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value
