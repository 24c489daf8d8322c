import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

import structlog

from commerce.cache import Cache, order_key
from commerce.errors import CommerceError, Conflict, InvalidState, ValidationError
from commerce.events import EventPublisher, EventType
from commerce.models import OrderRecord, utcnow
from commerce.schemas import Address, LineItem, Order, OrderStatus, quantize_money
from commerce.store import LedgerStore
from commerce.transitions import EDITABLE_ORDER_STATUSES, ensure_order_transition

logger = structlog.get_logger(component="orders")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# timestamp column stamped when an order enters the status
STATUS_TIMESTAMPS = {
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def calculate_total(items: Iterable[LineItem]) -> Decimal:
    """Sum of ``price * quantity`` rounded to cents. No side effects."""
    return quantize_money(sum((item.price * item.quantity for item in items), Decimal("0")))


def validate_items(items: List[LineItem]) -> None:
    if not items:
        raise ValidationError("order must have at least one item")
    for item in items:
        if not item.product_id:
            raise ValidationError("product ID is required for all items")
        if item.quantity <= 0:
            raise ValidationError("quantity must be greater than 0")
        if item.price < 0:
            raise ValidationError("price cannot be negative")


def validate_shipping_address(address: Address) -> None:
    if not address.street or not address.city:
        raise ValidationError("shipping address is incomplete")


def normalize_page(page: int, limit: int) -> Tuple[int, int]:
    if page < 1:
        page = 1
    if limit < 1 or limit > MAX_PAGE_SIZE:
        limit = DEFAULT_PAGE_SIZE
    return page, limit


def _items_column(items: List[LineItem]):
    return [item.model_dump(mode="json") for item in items]


class OrderLifecycleManager:
    """Owns the order state machine on top of the store, cache and publisher."""

    def __init__(
        self,
        store: LedgerStore,
        cache: Cache,
        publisher: EventPublisher,
        write_retries: int = 3,
    ):
        self._store = store
        self._cache = cache
        self._publisher = publisher
        self._write_retries = write_retries

    def create(
        self,
        items: List[LineItem],
        shipping_address: Address,
        billing_address: Optional[Address],
        owner_id: str,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        currency: str = "USD",
    ) -> Order:
        if not owner_id:
            raise ValidationError("user ID is required")
        validate_items(items)
        validate_shipping_address(shipping_address)

        now = utcnow()
        row = self._store.create(OrderRecord, {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "items": _items_column(items),
            "shipping_address": shipping_address.model_dump(),
            "billing_address": (billing_address or shipping_address).model_dump(),
            "status": OrderStatus.PENDING.value,
            "total_price": calculate_total(items),
            "currency": currency,
            "payment_method": payment_method,
            "notes": notes,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        })
        order = Order.model_validate(row)
        self._cache.delete(order_key(order.id))
        logger.info("order_created", order_id=order.id, user_id=owner_id,
                    items=len(items), total=str(order.total_price))
        self._publish(EventType.ORDER_CREATED, order)
        return order

    def get(self, order_id: str) -> Order:
        cached = self._cache.get_model(order_key(order_id), Order)
        if cached is not None:
            return cached
        order = Order.model_validate(self._store.get(OrderRecord, order_id))
        self._cache.set_model(order_key(order_id), order)
        return order

    def update(
        self,
        order_id: str,
        items: Optional[List[LineItem]] = None,
        shipping_address: Optional[Address] = None,
        billing_address: Optional[Address] = None,
        notes: Optional[str] = None,
    ) -> Order:
        patch = {}
        if items is not None:
            validate_items(items)
            patch["items"] = _items_column(items)
            patch["total_price"] = calculate_total(items)
        if shipping_address is not None:
            validate_shipping_address(shipping_address)
            patch["shipping_address"] = shipping_address.model_dump()
        if billing_address is not None:
            patch["billing_address"] = billing_address.model_dump()
        if notes is not None:
            patch["notes"] = notes

        def attempt():
            current = Order.model_validate(self._store.get(OrderRecord, order_id))
            if current.status not in EDITABLE_ORDER_STATUSES:
                raise InvalidState(f"order cannot be updated in status: {current.status.value}")
            if not patch:
                raise ValidationError("nothing to update")
            return Order.model_validate(
                self._store.update(OrderRecord, order_id, patch, expected_version=current.version)
            )

        order = self._retrying(order_id, attempt)
        self._cache.delete(order_key(order_id))
        self._publish(EventType.ORDER_UPDATED, order)
        return order

    def transition_status(self, order_id: str, new_status: OrderStatus) -> Order:
        new_status = OrderStatus(new_status)

        def attempt():
            current = Order.model_validate(self._store.get(OrderRecord, order_id))
            ensure_order_transition(current.status, new_status)
            patch = {"status": new_status.value}
            if new_status in STATUS_TIMESTAMPS:
                patch[STATUS_TIMESTAMPS[new_status]] = utcnow()
            updated = self._store.update(
                OrderRecord, order_id, patch,
                expected_status=current.status.value, expected_version=current.version,
            )
            return current.status, Order.model_validate(updated)

        old_status, order = self._retrying(order_id, attempt)
        self._cache.delete(order_key(order_id))
        logger.info("order_status_changed", order_id=order_id,
                    old_status=old_status.value, new_status=new_status.value)

        if new_status is OrderStatus.CANCELLED:
            self._publish(EventType.ORDER_CANCELLED, order)
        else:
            self._publish(EventType.ORDER_STATUS_CHANGED, order,
                          old_status=old_status.value, new_status=new_status.value)
        return order

    def cancel(self, order_id: str) -> Order:
        return self.transition_status(order_id, OrderStatus.CANCELLED)

    def list_by_user(self, user_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Order], int]:
        page, limit = normalize_page(page, limit)
        rows, total = self._store.query(
            OrderRecord, {"user_id": user_id}, limit=limit, offset=(page - 1) * limit
        )
        return [Order.model_validate(row) for row in rows], total

    def list_by_status(self, status: OrderStatus) -> List[Order]:
        rows, _ = self._store.query(OrderRecord, {"status": OrderStatus(status).value})
        return [Order.model_validate(row) for row in rows]

    def cancel_stale_pending(self, max_age: timedelta) -> List[str]:
        """Cancel orders left pending longer than ``max_age``; returns their ids."""
        rows, _ = self._store.query(
            OrderRecord,
            {"status": OrderStatus.PENDING.value},
            created_before=utcnow() - max_age,
        )
        cancelled = []
        for row in rows:
            try:
                self.cancel(row["id"])
            except CommerceError as e:
                logger.warning("auto_cancel_failed", order_id=row["id"], error=e.message)
                continue
            cancelled.append(row["id"])
        return cancelled

    calculate_total = staticmethod(calculate_total)

    def _retrying(self, order_id: str, attempt):
        for _ in range(self._write_retries):
            try:
                return attempt()
            except Conflict:
                logger.info("order_write_retry", order_id=order_id)
        raise Conflict(f"order {order_id} is being modified concurrently, retry later")

    def _publish(self, event_type: EventType, order: Order, **extra) -> None:
        data = {"order": order.model_dump(mode="json"), **extra}
        self._publisher.publish(event_type, data)
