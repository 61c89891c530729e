"""Ticket lifecycle rules."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from .errors import BusinessLogicError, ErrorCode


class TicketStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    LOST = "LOST"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# CANCELLED/REFUNDED are the admin side channel
ALLOWED_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.ACTIVE: frozenset(
        {TicketStatus.PAID, TicketStatus.LOST, TicketStatus.CANCELLED}
    ),
    TicketStatus.PAID: frozenset({TicketStatus.REFUNDED, TicketStatus.CANCELLED}),
    TicketStatus.LOST: frozenset({TicketStatus.REFUNDED, TicketStatus.CANCELLED}),
    TicketStatus.CANCELLED: frozenset(),
    TicketStatus.REFUNDED: frozenset(),
}

# Statuses whose total_amount snapshot is money actually taken
CHARGED_STATUSES = frozenset({TicketStatus.PAID, TicketStatus.LOST})


def ensure_transition(ticket_id: str, current: TicketStatus, target: TicketStatus) -> None:
    """
    Guard a status change.

    Leaving ACTIVE through payment or lost-ticket handling is the common path,
    so any attempt to charge a ticket that already left ACTIVE reports
    TICKET_ALREADY_PROCESSED. Other illegal moves report INVALID_TRANSITION.

    Raises:
        BusinessLogicError: If target is not reachable from current
    """
    current = TicketStatus(current)
    target = TicketStatus(target)
    if target in ALLOWED_TRANSITIONS[current]:
        return

    context = {"ticket_id": ticket_id, "status": current.value, "requested": target.value}
    if target in CHARGED_STATUSES and current is not TicketStatus.ACTIVE:
        raise BusinessLogicError(
            ErrorCode.TICKET_ALREADY_PROCESSED,
            "Ticket was already processed",
            context,
        )
    raise BusinessLogicError(
        ErrorCode.INVALID_TRANSITION,
        f"Ticket cannot move from {current.value} to {target.value}",
        context,
    )


def normalize_plate(plate_number: str) -> str:
    """Plates are compared upper-cased and without surrounding whitespace."""
    return plate_number.strip().upper()


def generate_barcode(ticket_id: str, plate_number: str) -> str:
    """Barcode printed on the entry ticket: ``<ID>-<PLATE>``."""
    return f"{ticket_id}-{normalize_plate(plate_number)}".upper()
