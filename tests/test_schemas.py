"""
Request boundary tests: parse_command, serialize and ParkingEngine.handle.
"""
from decimal import Decimal
from typing import Any

import pytest

from parking_core.api import parse_command, serialize
from parking_core.api.schemas import (
    CreateEntryRequest,
    PartnerPaymentRequest,
    ProcessPaymentRequest,
)
from parking_core.domain.errors import ValidationError
from parking_core.domain.money import Money
from parking_core.domain.records import RegisterVerification


class TestParseCommand:
    """Test suite for parse_command."""

    @pytest.mark.unit
    def test_payment_with_formatted_cash(self) -> None:
        """Test that operator-formatted cash is accepted."""
        command = parse_command(
            {
                "kind": "process_payment",
                "ticket_ref": "T-1",
                "cash_received": "$1,100.00",
                "operator_id": "op-1",
            }
        )

        assert isinstance(command, ProcessPaymentRequest)
        assert command.cash_received == Money("1100.00")

    @pytest.mark.unit
    def test_entry_defaults(self) -> None:
        """Test default vehicle type and whitespace stripping."""
        command = parse_command({"kind": "create_entry", "plate_number": "  abc123 "})

        assert isinstance(command, CreateEntryRequest)
        assert command.plate_number == "abc123"
        assert command.vehicle_type == "car"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "teleport", "plate_number": "ABC123"},
            {"plate_number": "ABC123"},
            {"kind": "create_entry", "plate_number": "ABC123", "color": "red"},
            {"kind": "create_entry", "plate_number": ""},
            {
                "kind": "process_payment",
                "ticket_ref": "T-1",
                "cash_received": "1.234",
                "operator_id": "op-1",
            },
            {
                "kind": "register_adjustment",
                "operator_id": "op-1",
                "type": "OPENING_BALANCE",
                "amount": "10.00",
                "reason": "nope",
            },
        ],
    )
    def test_invalid_payloads(self, payload: dict) -> None:
        """Test that bad requests become ValidationError with field errors."""
        with pytest.raises(ValidationError) as exc_info:
            parse_command(payload)

        assert exc_info.value.context["errors"]

    @pytest.mark.unit
    def test_partner_flags_are_strict(self) -> None:
        """Test that rate flags must be real booleans and present."""
        base = {
            "kind": "partner_payment",
            "partner_ticket_id": "P-1",
            "cash_received": "50",
            "operator_id": "op-1",
            "has_business_stamp": True,
        }

        with pytest.raises(ValidationError):
            parse_command({**base, "charge_regular_rate": "true"})
        with pytest.raises(ValidationError):
            parse_command(base)

        command = parse_command({**base, "charge_regular_rate": False})
        assert isinstance(command, PartnerPaymentRequest)
        assert command.charge_regular_rate is False

    @pytest.mark.unit
    def test_error_context_names_field(self) -> None:
        """Test the offending field is reported."""
        with pytest.raises(ValidationError) as exc_info:
            parse_command({"kind": "open_register", "operator_id": "op-1"})

        fields = [e["field"] for e in exc_info.value.context["errors"]]
        assert any("opening_balance" in f for f in fields)
        assert exc_info.value.context["kind"] == "open_register"


class TestSerialize:
    """Test suite for serialize."""

    @pytest.mark.unit
    def test_money_and_computed_fields(self) -> None:
        """Test Money becomes text and computed fields are included."""
        verification = RegisterVerification(
            register_id="R-1",
            stored_balance=Money("576.00"),
            derived_balance=Money("576.00"),
            drift=Money("0"),
        )

        data = serialize(verification)

        assert data == {
            "register_id": "R-1",
            "stored_balance": "576.00",
            "derived_balance": "576.00",
            "drift": "0.00",
            "consistent": True,
        }

    @pytest.mark.unit
    def test_nested_values(self) -> None:
        """Test containers and decimals."""
        data = serialize({"amounts": [Money("1.5")], "pct": Decimal("60.53")})
        assert data == {"amounts": ["1.50"], "pct": "60.53"}


class TestEngineHandle:
    """Test suite for dispatching parsed commands."""

    @pytest.mark.integration
    async def test_entry_and_register_commands(self, parking_engine: Any) -> None:
        """Test a small session driven entirely through commands."""
        entry = await parking_engine.handle(
            parse_command({"kind": "create_entry", "plate_number": "abc123"})
        )
        assert entry.plate_number == "ABC123"

        await parking_engine.handle(
            parse_command(
                {"kind": "open_register", "operator_id": "op-1", "opening_balance": "$500"}
            )
        )
        status = await parking_engine.handle(
            parse_command({"kind": "register_status", "operator_id": "op-1"})
        )

        assert serialize(status)["current_balance"] == "500.00"

    @pytest.mark.integration
    async def test_unknown_command_type(self, parking_engine: Any) -> None:
        """Test that only Command variants are dispatched."""
        with pytest.raises(TypeError):
            await parking_engine.handle(object())
