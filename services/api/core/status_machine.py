"""
Order status / assignment state machine.

    New         --first open by assignee-->  InProgress
    InFeed      --accept (atomic)-------->   InProgress
    InFeed      --assign----------------->   InProgress
    New/InProg  --assign----------------->   (unchanged)
    non-final   --clear assignee--------->   InFeed
    InProgress  --finish (4 categories)-->   Completed
    Completed   terminal

Intended invariant: assigned_to is None <=> status == InFeed. It is enforced
when a patch is built, never by the store, so legacy rows may violate it.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from models import ATTACHMENT_FIELDS, Order, OrderStatus
from core.errors import InvalidTransition


class Event(str, Enum):
    FIRST_OPEN = "first_open"
    ACCEPT = "accept"
    ASSIGN = "assign"
    CLEAR_ASSIGNEE = "clear_assignee"
    FINISH = "finish"


TRANSITIONS: Dict[tuple, OrderStatus] = {
    (OrderStatus.NEW, Event.FIRST_OPEN): OrderStatus.IN_PROGRESS,
    (OrderStatus.IN_FEED, Event.ACCEPT): OrderStatus.IN_PROGRESS,
    (OrderStatus.IN_FEED, Event.ASSIGN): OrderStatus.IN_PROGRESS,
    (OrderStatus.NEW, Event.ASSIGN): OrderStatus.NEW,
    (OrderStatus.IN_PROGRESS, Event.ASSIGN): OrderStatus.IN_PROGRESS,
    (OrderStatus.NEW, Event.CLEAR_ASSIGNEE): OrderStatus.IN_FEED,
    (OrderStatus.IN_FEED, Event.CLEAR_ASSIGNEE): OrderStatus.IN_FEED,
    (OrderStatus.IN_PROGRESS, Event.CLEAR_ASSIGNEE): OrderStatus.IN_FEED,
    (OrderStatus.IN_PROGRESS, Event.FINISH): OrderStatus.COMPLETED,
}


def transition(status: OrderStatus, event: Event) -> OrderStatus:
    """
    Next status for `event`.

    Raises:
        InvalidTransition: event not allowed from `status` (Completed accepts nothing)
    """
    nxt = TRANSITIONS.get((OrderStatus(status), Event(event)))
    if nxt is None:
        raise InvalidTransition(
            f"Cannot {Event(event).value.replace('_', ' ')} an order with status {OrderStatus(status).value}",
            detail={"status": OrderStatus(status).value, "event": Event(event).value},
        )
    return nxt


def resolve_status(current: OrderStatus, assigned_to: Optional[str], requested: Optional[OrderStatus] = None) -> OrderStatus:
    """
    Status written together with `assigned_to` in one patch.

    Rules:
    - no assignee               -> InFeed, whatever was requested
    - assignee on an InFeed row -> InProgress
    - otherwise                 -> requested status, else current
    - Completed stays Completed; clearing its assignee is rejected
    """
    current = OrderStatus(current)
    if current == OrderStatus.COMPLETED:
        if not assigned_to:
            transition(current, Event.CLEAR_ASSIGNEE)
        return current
    if not assigned_to:
        return transition(current, Event.CLEAR_ASSIGNEE)
    base = OrderStatus(requested) if requested is not None else current
    if base == OrderStatus.IN_FEED:
        return OrderStatus.IN_PROGRESS
    return base


def first_open_patch(order: Order, user_id: str) -> Optional[Dict[str, Any]]:
    """Patch for the assignee's first look at a New order, or None."""
    if order.status == OrderStatus.NEW and order.assigned_to and order.assigned_to == user_id:
        return {"status": transition(order.status, Event.FIRST_OPEN)}
    return None


def clear_assignee_patch(order: Order) -> Dict[str, Any]:
    return {"assigned_to": None, "status": transition(order.status, Event.CLEAR_ASSIGNEE)}


def missing_attachment_categories(order: Order) -> List[str]:
    return [cat for cat in ATTACHMENT_FIELDS if not getattr(order, cat)]


def finish_patch(order: Order) -> Dict[str, Any]:
    """
    Patch that completes the order.

    Raises:
        InvalidTransition: order is not InProgress, or attachments are missing
                           (detail lists the empty categories)
    """
    missing = missing_attachment_categories(order)
    if missing:
        raise InvalidTransition(
            "Cannot finish: missing attachments in " + ", ".join(missing),
            code="ATTACHMENTS_MISSING",
            detail={"missing": missing},
        )
    return {"status": transition(order.status, Event.FINISH)}


def is_consistent(order: Order) -> bool:
    """Whether the row satisfies assigned_to is None <=> InFeed (Completed is exempt)."""
    if order.status == OrderStatus.COMPLETED:
        return True
    return (order.assigned_to is None) == (order.status == OrderStatus.IN_FEED)


def corrective_patch(order: Order) -> Dict[str, Any]:
    """Status fix for a legacy row that breaks the invariant; empty when consistent."""
    if is_consistent(order):
        return {}
    return {"status": resolve_status(order.status, order.assigned_to)}
