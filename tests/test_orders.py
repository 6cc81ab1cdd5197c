"""Tests for OrderStore: draft validation and the status transition table."""
import re
from decimal import Decimal

import pytest

from order_saga.errors import InvalidOrder, InvalidTransition, OrderNotFound
from order_saga.models import OrderDraft, OrderItem, OrderStatus, PaymentStatus
from order_saga.orders import (
    Cancelled,
    Delivered,
    FulfillmentStarted,
    PaymentRefunded,
    PaymentSucceeded,
    Shipped,
    can_cancel,
    format_order_number,
)


def _draft(customer, subtotal="10000", discount="1000", shipping="3000", total="12000", **kwargs):
    items = kwargs.pop(
        "items",
        (OrderItem(product_id="X", quantity=2, unit_price=Decimal("5000")),),
    )
    return OrderDraft(
        customer=customer,
        items=items,
        subtotal=Decimal(subtotal),
        discount=Decimal(discount),
        shipping_cost=Decimal(shipping),
        total=Decimal(total),
        **kwargs,
    )


def test_create_pending_order(orders, customer, clock):
    order = orders.create(_draft(customer))

    assert order.status is OrderStatus.PENDING
    assert order.payment_status is PaymentStatus.PENDING
    assert order.total == Decimal("12000")
    assert order.created_at == clock.now
    assert re.fullmatch(r"260314[A-Z0-9]{6}", order.order_number)
    assert orders.get_by_order_number(order.order_number).id == order.id


def test_create_uses_preassigned_id(orders, customer):
    order = orders.create(_draft(customer, order_id="order_fixed"))
    assert order.id == "order_fixed"

    with pytest.raises(InvalidOrder):
        orders.create(_draft(customer, order_id="order_fixed"))


def test_create_rejects_inconsistent_total(orders, customer):
    with pytest.raises(InvalidOrder):
        orders.create(_draft(customer, total="11000"))
    assert orders.list_by_customer(customer.id) == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"subtotal": "9000", "total": "11000"},
        {"discount": "-1", "total": "13001"},
        {"items": ()},
        {"items": (OrderItem(product_id="X", quantity=0, unit_price=Decimal("5000")),), "subtotal": "0", "total": "2000"},
    ],
)
def test_create_rejects_bad_drafts(orders, customer, overrides):
    with pytest.raises(InvalidOrder):
        orders.create(_draft(customer, **overrides))


def test_illegal_transition_leaves_order_unchanged(orders, customer):
    order = orders.create(_draft(customer))

    with pytest.raises(InvalidTransition):
        orders.transition(order.id, Shipped(tracking_number="CJ123", carrier="CJ Logistics"))

    assert orders.get(order.id).status is OrderStatus.PENDING
    assert orders.get(order.id).tracking_number is None


def test_payment_marks_order_paid(orders, customer, clock):
    order = orders.create(_draft(customer))
    clock.advance(seconds=3)

    paid = orders.transition(order.id, PaymentSucceeded(transaction_id="card_abc"))

    assert paid.status is OrderStatus.PAID
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.transaction_id == "card_abc"
    assert paid.paid_at == clock.now
    assert paid.updated_at == clock.now


def test_full_lifecycle(orders, customer):
    order = orders.create(_draft(customer))
    orders.transition(order.id, PaymentSucceeded(transaction_id="card_abc"))
    orders.transition(order.id, FulfillmentStarted())
    shipped = orders.transition(order.id, Shipped(tracking_number="CJ123456789", carrier="CJ Logistics"))

    assert shipped.status is OrderStatus.SHIPPED
    assert shipped.tracking_number == "CJ123456789"
    assert shipped.shipping_company == "CJ Logistics"
    assert shipped.shipped_at is not None

    delivered = orders.transition(order.id, Delivered())
    assert delivered.status is OrderStatus.DELIVERED
    assert delivered.delivered_at is not None
    assert not can_cancel(delivered)

    with pytest.raises(InvalidTransition):
        orders.transition(order.id, Cancelled(reason="too late"))


def test_cancel_records_reason_and_payment_status(orders, customer):
    order = orders.create(_draft(customer))

    cancelled = orders.transition(order.id, Cancelled(reason="card declined", payment_status=PaymentStatus.FAILED))

    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.payment_status is PaymentStatus.FAILED
    assert cancelled.cancel_reason == "card declined"
    assert cancelled.cancelled_at is not None

    with pytest.raises(InvalidTransition):
        orders.transition(order.id, Cancelled(reason="again"))


def test_refund_only_after_paid_cancellation(orders, customer):
    unpaid = orders.create(_draft(customer))
    orders.transition(unpaid.id, Cancelled(reason="changed mind"))
    with pytest.raises(InvalidTransition):
        orders.transition(unpaid.id, PaymentRefunded(refund_id="ref_1"))
    assert orders.get(unpaid.id).payment_status is PaymentStatus.PENDING

    paid = orders.create(_draft(customer))
    orders.transition(paid.id, PaymentSucceeded(transaction_id="card_abc"))
    orders.transition(paid.id, Cancelled(reason="changed mind"))
    refunded = orders.transition(paid.id, PaymentRefunded(refund_id="ref_2"))

    assert refunded.status is OrderStatus.CANCELLED
    assert refunded.payment_status is PaymentStatus.REFUNDED


def test_unknown_order(orders):
    with pytest.raises(OrderNotFound):
        orders.transition("order_missing", PaymentSucceeded())
    with pytest.raises(OrderNotFound):
        orders.require("order_missing")
    assert orders.get("order_missing") is None


def test_reads_return_copies(orders, customer):
    order = orders.create(_draft(customer))

    copy = orders.get(order.id)
    copy.status = OrderStatus.DELIVERED

    assert orders.get(order.id).status is OrderStatus.PENDING


def test_list_by_customer_newest_first(orders, customer, clock):
    first = orders.create(_draft(customer))
    clock.advance(minutes=1)
    second = orders.create(_draft(customer))

    assert [o.id for o in orders.list_by_customer(customer.id)] == [second.id, first.id]
    assert orders.list_by_customer("someone-else") == []


def test_format_order_number():
    assert format_order_number("241231ABCDEF") == "2024-12-31-ABCDEF"
    assert format_order_number("short") == "short"
