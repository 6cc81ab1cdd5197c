from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class StockKey:
    product_id: str
    variant_id: Optional[str] = None

    def sort_key(self) -> Tuple[str, str]:
        # variant None sorts before any named variant
        return (self.product_id, self.variant_id or "")

    def __str__(self) -> str:
        return f"{self.product_id}:{self.variant_id}" if self.variant_id else self.product_id


@dataclass(slots=True)
class StockRecord:
    key: StockKey
    total_quantity: int
    reserved_quantity: int
    low_stock_threshold: int
    active: bool
    last_updated: datetime
    sku: str = ""
    name: str = ""

    @property
    def free_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity


@dataclass(frozen=True, slots=True)
class StockCheck:
    key: StockKey
    requested_quantity: int
    free_quantity: int
    available: bool


@dataclass(frozen=True, slots=True)
class Reservation:
    """A time-bounded hold on stock. Created by reserve, destroyed by commit/release."""

    id: str
    stock_key: StockKey
    quantity: int
    order_id: str
    created_at: datetime
    expires_at: datetime


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True, slots=True)
class OrderItem:
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: Optional[str] = None
    name: str = ""

    @property
    def stock_key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True, slots=True)
class Customer:
    id: str
    name: str = ""
    email: str = ""
    phone: str = ""


@dataclass(slots=True)
class OrderDraft:
    """Everything OrderStore.create needs; prices are snapshotted from the cart."""

    customer: Customer
    items: Tuple[OrderItem, ...]
    subtotal: Decimal
    discount: Decimal
    shipping_cost: Decimal
    total: Decimal
    shipping_address: Any = None
    shipping_method: Any = None
    payment_method: Any = None
    order_note: Optional[str] = None
    promotion_code: Optional[str] = None
    # preassigned by the checkout so holds can reference the order before it exists
    order_id: Optional[str] = None


@dataclass(slots=True)
class Order:
    id: str
    order_number: str
    customer: Customer
    items: Tuple[OrderItem, ...]
    subtotal: Decimal
    discount: Decimal
    shipping_cost: Decimal
    total: Decimal
    created_at: datetime
    updated_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    shipping_address: Any = None
    shipping_method: Any = None
    payment_method: Any = None
    order_note: Optional[str] = None
    promotion_code: Optional[str] = None
    transaction_id: Optional[str] = None
    # (stock key, quantity) actually decremented at payment; a reaped hold is missing here
    committed_stock: Tuple[Tuple[StockKey, int], ...] = ()
    cancel_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_company: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


# Cart / checkout inputs


@dataclass(frozen=True, slots=True)
class CartLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: Optional[str] = None
    name: str = ""

    @property
    def stock_key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id)


@dataclass(slots=True)
class CartSnapshot:
    customer: Customer
    lines: Tuple[CartLine, ...]
    discount: Decimal = Decimal("0")
    promotion_code: Optional[str] = None
    order_note: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return sum((line.unit_price * line.quantity for line in self.lines), Decimal("0"))


@dataclass(frozen=True, slots=True)
class Address:
    name: str
    address: str
    phone: str = ""
    detail_address: str = ""
    zip_code: str = ""

    def one_line(self) -> str:
        return f"{self.address} {self.detail_address}".strip()


@dataclass(slots=True)
class ShippingChoice:
    address: Address
    method: str
    cost: Decimal


@dataclass(slots=True)
class PaymentChoice:
    method: str
    # total the customer saw; None means "trust the computed one"
    expected_total: Optional[Decimal] = None


# External collaborator payloads


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TrackingEvent:
    occurred_at: datetime
    location: str
    status: str
    description: str


@dataclass(frozen=True, slots=True)
class TrackingInfo:
    tracking_number: str
    carrier: str
    status: str
    history: Tuple[TrackingEvent, ...] = field(default_factory=tuple)
    estimated_delivery: Optional[datetime] = None
