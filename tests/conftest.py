"""Pytest fixtures for the order saga: seeded stores, fake collaborators, a controllable clock."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from order_saga.events import EventLog, SagaJournal
from order_saga.inventory import InventoryStore
from order_saga.models import Address, CartLine, CartSnapshot, Customer, PaymentChoice, ShippingChoice
from order_saga.orders import OrderStore
from order_saga.payments import FakeGateway
from order_saga.reaper import ReservationReaper
from order_saga.saga import CheckoutSaga
from order_saga.shipping import FakeCarrier


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


PRICES = {
    "X": Decimal("5000"),
    "A": Decimal("12000"),
    "B": Decimal("8000"),
    "EMPTY": Decimal("1000"),
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def events() -> EventLog:
    return EventLog()


@pytest.fixture
def inventory(clock, events) -> InventoryStore:
    store = InventoryStore(hold_duration=timedelta(minutes=15), clock=clock, events=events)

    store.add_stock("X", 5, low_stock_threshold=1, name="Lavender serum")
    store.add_stock("A", 10, low_stock_threshold=2, name="Rose toner")
    store.add_stock("B", 3, name="Green tea cleanser")
    store.add_stock("B", 2, variant_id="travel", name="Green tea cleanser (travel)")
    store.add_stock("EMPTY", 0, name="Vitamin C cream")  # out of stock

    return store


@pytest.fixture
def orders(clock) -> OrderStore:
    return OrderStore(clock=clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def carrier(clock) -> FakeCarrier:
    return FakeCarrier(clock=clock)


@pytest.fixture
def reaper(inventory) -> ReservationReaper:
    return ReservationReaper(inventory, interval=0.01, batch_size=2)


@pytest.fixture
def saga(inventory, orders, gateway, carrier) -> CheckoutSaga:
    return CheckoutSaga(inventory, orders, gateway, shipping=carrier, journal=SagaJournal())


@pytest.fixture
def customer() -> Customer:
    return Customer(id="cust-1", name="Kim", email="kim@example.com", phone="010-1234-5678")


@pytest.fixture
def shipping_choice() -> ShippingChoice:
    return ShippingChoice(
        address=Address(name="Kim", address="Bundang-gu, Seongnam", detail_address="101-1203", phone="010-1234-5678"),
        method="CJ standard",
        cost=Decimal("3000"),
    )


@pytest.fixture
def card() -> PaymentChoice:
    return PaymentChoice(method="card")


@pytest.fixture
def make_cart(customer):
    def _make(*lines, discount: Decimal = Decimal("0")) -> CartSnapshot:
        cart_lines = []
        for product_id, quantity, *variant in lines:
            cart_lines.append(
                CartLine(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=PRICES[product_id],
                    variant_id=variant[0] if variant else None,
                )
            )
        return CartSnapshot(customer=customer, lines=tuple(cart_lines), discount=discount)

    return _make
