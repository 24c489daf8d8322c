from typing import Dict, FrozenSet

from commerce.errors import InvalidTransition
from commerce.schemas import OrderStatus, PaymentStatus

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# statuses in which order contents may still be edited
EDITABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def can_transition(table, current, requested) -> bool:
    return requested in table.get(current, frozenset())


def is_reachable(table, current, requested) -> bool:
    """True if ``requested`` can still be reached from ``current`` through later states."""
    seen, frontier = set(), [current]
    while frontier:
        status = frontier.pop()
        for nxt in table.get(status, frozenset()):
            if nxt == requested:
                return True
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return False


def ensure_order_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if not can_transition(ORDER_TRANSITIONS, current, requested):
        raise InvalidTransition(current, requested)


def ensure_payment_transition(current: PaymentStatus, requested: PaymentStatus) -> None:
    if not can_transition(PAYMENT_TRANSITIONS, current, requested):
        raise InvalidTransition(current, requested)
