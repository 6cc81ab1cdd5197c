from __future__ import annotations

import logging
import secrets
import string
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Type, Union
from uuid import uuid4

from order_saga.errors import InvalidOrder, InvalidTransition, OrderNotFound
from order_saga.models import Order, OrderDraft, OrderStatus, PaymentStatus, StockKey, utcnow

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class PaymentSucceeded:
    transaction_id: Optional[str] = None
    committed: Tuple[Tuple[StockKey, int], ...] = ()


@dataclass(frozen=True)
class FulfillmentStarted:
    pass


@dataclass(frozen=True)
class Shipped:
    tracking_number: str
    carrier: str


@dataclass(frozen=True)
class Delivered:
    pass


@dataclass(frozen=True)
class Cancelled:
    reason: str = ""
    # FAILED for a declined charge, REFUNDED when cancelling after payment
    payment_status: Optional[PaymentStatus] = None


@dataclass(frozen=True)
class PaymentRefunded:
    refund_id: Optional[str] = None


OrderEvent = Union[PaymentSucceeded, FulfillmentStarted, Shipped, Delivered, Cancelled, PaymentRefunded]

TRANSITIONS: Dict[Type, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    PaymentSucceeded: (frozenset({OrderStatus.PENDING}), OrderStatus.PAID),
    FulfillmentStarted: (frozenset({OrderStatus.PAID}), OrderStatus.PREPARING),
    Shipped: (frozenset({OrderStatus.PREPARING}), OrderStatus.SHIPPED),
    Delivered: (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    Cancelled: (
        frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PREPARING}),
        OrderStatus.CANCELLED,
    ),
    # refund bookkeeping after a post-payment cancellation
    PaymentRefunded: (frozenset({OrderStatus.CANCELLED}), OrderStatus.CANCELLED),
}


def new_order_id() -> str:
    return f"order_{uuid4().hex}"


def can_cancel(order: Order) -> bool:
    return order.status in TRANSITIONS[Cancelled][0]


def format_order_number(order_number: str) -> str:
    """241231ABCDEF -> 2024-12-31-ABCDEF"""
    if len(order_number) < 8:
        return order_number
    return f"20{order_number[:2]}-{order_number[2:4]}-{order_number[4:6]}-{order_number[6:]}"


def validate_draft(draft: OrderDraft) -> None:
    if not draft.items:
        raise InvalidOrder("order has no items")
    for item in draft.items:
        if item.quantity <= 0:
            raise InvalidOrder(f"quantity for {item.stock_key} must be > 0")
        if item.unit_price < 0:
            raise InvalidOrder(f"unit price for {item.stock_key} must be >= 0")
    for name in ("subtotal", "discount", "shipping_cost", "total"):
        if getattr(draft, name) < 0:
            raise InvalidOrder(f"{name} must be >= 0")

    items_total = sum((item.line_total for item in draft.items), Decimal("0"))
    if draft.subtotal != items_total:
        raise InvalidOrder(f"subtotal {draft.subtotal} does not match items total {items_total}")
    expected = draft.subtotal - draft.discount + draft.shipping_cost
    if draft.total != expected:
        raise InvalidOrder(
            f"total {draft.total} != subtotal {draft.subtotal} - discount {draft.discount}"
            f" + shipping {draft.shipping_cost} (= {expected})"
        )


class OrderStore:
    """Order records plus the status transition table. `transition` is the only mutator."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._by_number: Dict[str, str] = {}

    def _next_order_number(self, now: datetime) -> str:
        while True:
            suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
            number = f"{now:%y%m%d}{suffix}"
            if number not in self._by_number:
                return number

    def create(self, draft: OrderDraft) -> Order:
        validate_draft(draft)
        now = self.clock()
        with self._lock:
            order_id = draft.order_id or new_order_id()
            if order_id in self._orders:
                raise InvalidOrder(f"order {order_id} already exists")
            order = Order(
                id=order_id,
                order_number=self._next_order_number(now),
                customer=draft.customer,
                items=tuple(draft.items),
                subtotal=draft.subtotal,
                discount=draft.discount,
                shipping_cost=draft.shipping_cost,
                total=draft.total,
                created_at=now,
                updated_at=now,
                shipping_address=draft.shipping_address,
                shipping_method=draft.shipping_method,
                payment_method=draft.payment_method,
                order_note=draft.order_note,
                promotion_code=draft.promotion_code,
            )
            self._orders[order.id] = order
            self._by_number[order.order_number] = order.id
        logger.info("[order=%s] order created: %s total=%s", order.id, order.order_number, order.total)
        return replace(order)

    def transition(self, order_id: str, event: OrderEvent) -> Order:
        rule = TRANSITIONS.get(type(event))
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if rule is None or order.status not in rule[0]:
                raise InvalidTransition(order_id, order.status, event)
            if isinstance(event, PaymentRefunded) and order.payment_status is not PaymentStatus.PAID:
                raise InvalidTransition(order_id, order.status, event)

            previous = order.status
            now = self.clock()
            order.status = rule[1]
            order.updated_at = now
            if isinstance(event, PaymentSucceeded):
                order.payment_status = PaymentStatus.PAID
                order.transaction_id = event.transaction_id
                order.committed_stock = tuple(event.committed)
                order.paid_at = now
            elif isinstance(event, Shipped):
                order.tracking_number = event.tracking_number
                order.shipping_company = event.carrier
                order.shipped_at = now
            elif isinstance(event, Delivered):
                order.delivered_at = now
            elif isinstance(event, Cancelled):
                order.cancel_reason = event.reason or None
                order.cancelled_at = now
                if event.payment_status is not None:
                    order.payment_status = event.payment_status
            elif isinstance(event, PaymentRefunded):
                order.payment_status = PaymentStatus.REFUNDED
            snapshot = replace(order)

        logger.info(
            "[order=%s] status %s -> %s (%s)", order_id, previous.value, snapshot.status.value, type(event).__name__
        )
        return snapshot

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order is not None else None

    def require(self, order_id: str) -> Order:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def get_by_order_number(self, order_number: str) -> Optional[Order]:
        with self._lock:
            order_id = self._by_number.get(order_number)
            order = self._orders.get(order_id) if order_id is not None else None
            return replace(order) if order is not None else None

    def list_by_customer(self, customer_id: str) -> List[Order]:
        with self._lock:
            orders = [replace(o) for o in self._orders.values() if o.customer.id == customer_id]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders
