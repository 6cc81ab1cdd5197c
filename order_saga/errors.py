from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from order_saga.models import Order, OrderStatus, StockCheck, StockKey


class InventoryError(Exception):
    pass


class OutOfStock(InventoryError):
    def __init__(self, key: StockKey, requested: int, free: int):
        super().__init__(f"Insufficient stock for {key}: requested={requested}, free={free}")
        self.key = key
        self.requested = requested
        self.free = free


class ReservationNotFound(InventoryError):
    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} not found")
        self.reservation_id = reservation_id


class StockNotFound(InventoryError):
    def __init__(self, key: StockKey):
        super().__init__(f"Stock record {key} not found")
        self.key = key


class OrderNotFound(Exception):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransition(Exception):
    """An order status change outside the transition table. Never raised by a healthy checkout."""

    def __init__(self, order_id: str, current: OrderStatus, event: object):
        super().__init__(f"Order {order_id}: {type(event).__name__} not allowed from {current.value}")
        self.order_id = order_id
        self.current = current
        self.event = event


class CheckoutError(Exception):
    pass


class InsufficientStock(CheckoutError):
    def __init__(self, items: List[StockCheck]):
        details = ", ".join(
            f"{c.key}: requested {c.requested_quantity}, free {c.free_quantity}" for c in items
        )
        super().__init__(f"Insufficient stock: {details}")
        self.items = items


class InvalidOrder(CheckoutError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PaymentFailed(CheckoutError):
    def __init__(self, order: Order, reason: str, error_code: Optional[str] = None):
        super().__init__(f"Payment failed for order {order.order_number}: {reason}")
        self.order = order
        self.reason = reason
        self.error_code = error_code


class CheckoutInProgress(CheckoutError):
    def __init__(self, idempotency_key: str):
        super().__init__(f"Checkout {idempotency_key} is already in progress")
        self.idempotency_key = idempotency_key


class ShippingError(Exception):
    pass


class ShipmentNotFound(ShippingError):
    def __init__(self, tracking_number: str):
        super().__init__(f"Shipment {tracking_number} not found")
        self.tracking_number = tracking_number
