from __future__ import annotations

import argparse
import logging
from decimal import Decimal

from order_saga.config import get_settings
from order_saga.errors import CheckoutError
from order_saga.events import OversellRisk
from order_saga.inventory import InventoryStore
from order_saga.models import Address, CartLine, CartSnapshot, Customer, PaymentChoice, ShippingChoice
from order_saga.orders import OrderStore
from order_saga.payments import FakeGateway
from order_saga.reaper import ReservationReaper
from order_saga.saga import CheckoutSaga
from order_saga.shipping import FakeCarrier

PRICES = {
    "prod1": Decimal("32000"),
    "prod2": Decimal("18000"),
    "prod3": Decimal("15000"),
    "prod4": Decimal("41000"),
    "prod5": Decimal("3000"),
}


def seed(inventory: InventoryStore) -> None:
    inventory.add_stock("prod1", 50, low_stock_threshold=10, name="Lavender serum")
    inventory.add_stock("prod2", 30, low_stock_threshold=5, name="Rose toner")
    inventory.add_stock("prod3", 25, low_stock_threshold=8, name="Green tea cleanser")
    inventory.add_stock("prod4", 40, low_stock_threshold=12, name="Vitamin C cream")
    inventory.add_stock("prod5", 60, low_stock_threshold=15, name="Hyaluronic mask")


def parse_line(raw: str) -> CartLine:
    product_id, _, qty = raw.partition("=")
    if product_id not in PRICES:
        raise argparse.ArgumentTypeError(f"unknown product {product_id}")
    return CartLine(product_id=product_id, quantity=int(qty or 1), unit_price=PRICES[product_id])


def report_oversell(event: object) -> None:
    if isinstance(event, OversellRisk):
        print("!! oversell risk:", event)


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(message)s")

    p = argparse.ArgumentParser(description="Run one checkout through the order saga and print the result.")
    p.add_argument("lines", nargs="*", type=parse_line, default=None, help="product=qty, e.g. prod1=2")
    p.add_argument("--customer", type=str, default="cust-1")
    p.add_argument("--method", type=str, default="card", help="card, kakaopay, tosspay or bank")
    p.add_argument("--discount", type=Decimal, default=Decimal("0"))
    p.add_argument("--shipping-cost", type=Decimal, default=Decimal("3000"))
    p.add_argument("--decline", type=str, default=None, help="Make the gateway decline with this error code")
    p.add_argument("--ship", action="store_true", help="Carry a paid order through to shipped")
    args = p.parse_args()

    inventory = InventoryStore.from_settings(settings)
    seed(inventory)
    inventory.events.subscribe(report_oversell)

    gateway = FakeGateway()
    if args.decline:
        gateway.configure(should_succeed=False, error_code=args.decline)
    saga = CheckoutSaga.from_settings(inventory, OrderStore(), gateway, settings, shipping=FakeCarrier())

    cart = CartSnapshot(
        customer=Customer(id=args.customer, name="Demo Customer", email=f"{args.customer}@example.com"),
        lines=tuple(args.lines or [parse_line("prod1=2")]),
        discount=args.discount,
    )
    shipping = ShippingChoice(
        address=Address(name="Demo Customer", address="1 Main St", phone="010-0000-0000"),
        method="CJ standard",
        cost=args.shipping_cost,
    )

    with ReservationReaper.from_settings(inventory, settings):
        try:
            order = saga.place_order(cart, shipping, PaymentChoice(method=args.method))
        except CheckoutError as exc:
            print("\n=== RESULT ===")
            print("success:", False)
            print("error:", exc)
        else:
            if args.ship:
                saga.start_fulfillment(order.id)
                order = saga.ship(order.id)
            print("\n=== RESULT ===")
            print("success:", True)
            print("order:", order.order_number, order.status.value, order.payment_status.value, order.total)
            if order.tracking_number:
                print("tracking:", order.shipping_company, order.tracking_number)

    print("stock:")
    for record in inventory.all_stock():
        print(f"  {record.key}: total={record.total_quantity} reserved={record.reserved_quantity} free={record.free_quantity}")


if __name__ == "__main__":
    main()
