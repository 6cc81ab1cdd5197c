"""Shipping provider port and a deterministic fake carrier."""

from __future__ import annotations

import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Sequence

from order_saga.errors import ShipmentNotFound, ShippingError
from order_saga.models import Address, OrderItem, TrackingEvent, TrackingInfo, utcnow

CJ_LOGISTICS = "CJ Logistics"
LOTTE_LOGISTICS = "Lotte Logistics"

TRACKING_PREFIXES = {CJ_LOGISTICS: "CJ", LOTTE_LOGISTICS: "LO"}

TRACKING_STATUSES = ("preparing", "shipped", "in_transit", "out_for_delivery", "delivered")

TRACKING_DESCRIPTIONS = {
    "preparing": "Parcel received",
    "shipped": "Left origin hub",
    "in_transit": "Arrived at terminal",
    "out_for_delivery": "Out for delivery",
    "delivered": "Delivered",
}


def carrier_for(shipping_method: str) -> str:
    if "CJ" in (shipping_method or ""):
        return CJ_LOGISTICS
    return LOTTE_LOGISTICS


def fallback_tracking_number(carrier: str) -> str:
    """Locally generated number, used when the carrier could not create a shipment."""
    prefix = TRACKING_PREFIXES.get(carrier, "LO")
    return f"{prefix}{100000000 + secrets.randbelow(900000000)}"


class ShippingProvider(ABC):
    @abstractmethod
    def create_shipment(
        self, order_id: str, recipient: Address, items: Sequence[OrderItem], carrier: str
    ) -> str:
        """Book a shipment; returns the tracking number."""
        ...

    @abstractmethod
    def track(self, tracking_number: str) -> TrackingInfo:
        ...


@dataclass(slots=True)
class _Shipment:
    order_id: str
    carrier: str
    recipient: Address
    created_at: datetime
    history: List[TrackingEvent] = field(default_factory=list)


class FakeCarrier(ShippingProvider):
    """Fake carrier that always succeeds by default. `advance` walks a parcel through its statuses."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self._shipments: Dict[str, _Shipment] = {}
        self._lock = threading.Lock()

    def configure(self, should_succeed: bool = True, failure_reason: str = "Carrier unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_shipment(
        self, order_id: str, recipient: Address, items: Sequence[OrderItem], carrier: str
    ) -> str:
        if not self.should_succeed:
            raise ShippingError(self.failure_reason)
        if not items:
            raise ShippingError(f"order {order_id} has nothing to ship")

        now = self.clock()
        tracking_number = fallback_tracking_number(carrier)
        shipment = _Shipment(order_id=order_id, carrier=carrier, recipient=recipient, created_at=now)
        shipment.history.append(self._event("preparing", now))
        with self._lock:
            self._shipments[tracking_number] = shipment
        return tracking_number

    def advance(self, tracking_number: str) -> str:
        with self._lock:
            shipment = self._shipments.get(tracking_number)
            if shipment is None:
                raise ShipmentNotFound(tracking_number)
            index = TRACKING_STATUSES.index(shipment.history[-1].status)
            if index + 1 < len(TRACKING_STATUSES):
                shipment.history.append(self._event(TRACKING_STATUSES[index + 1], self.clock()))
            return shipment.history[-1].status

    def track(self, tracking_number: str) -> TrackingInfo:
        with self._lock:
            shipment = self._shipments.get(tracking_number)
            if shipment is None:
                raise ShipmentNotFound(tracking_number)
            history = tuple(shipment.history)
        status = history[-1].status
        return TrackingInfo(
            tracking_number=tracking_number,
            carrier=shipment.carrier,
            status=status,
            history=history,
            estimated_delivery=None if status == "delivered" else shipment.created_at + timedelta(days=3),
        )

    def _event(self, status: str, at: datetime) -> TrackingEvent:
        return TrackingEvent(occurred_at=at, location="Distribution center", status=status, description=TRACKING_DESCRIPTIONS[status])
