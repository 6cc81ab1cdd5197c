from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Type, TypeVar

from order_saga.models import StockKey

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class OversellRisk:
    """Payment went through but the hold behind it was already gone (reaped)."""

    order_id: str
    order_number: str
    reservation_id: str
    stock_key: StockKey
    quantity: int
    detected_at: datetime


@dataclass(frozen=True, slots=True)
class LowStock:
    stock_key: StockKey
    free_quantity: int
    threshold: int
    detected_at: datetime


@dataclass(frozen=True, slots=True)
class ReservationsExpired:
    count: int
    swept_at: datetime


class EventLog:
    """
    In-memory event stream for operator alerting.

    Keeps every published event and fans it out to subscribers synchronously.
    A failing subscriber is logged and skipped, the publisher never sees it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[object] = []
        self._subscribers: List[Callable[[object], None]] = []

    def subscribe(self, handler: Callable[[object], None]) -> None:
        with self._lock:
            self._subscribers.append(handler)

    def publish(self, event: object) -> None:
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        for handler in subscribers:
            try:
                handler(event)
            except Exception:
                logger.exception("event subscriber failed for %s", type(event).__name__)

    def events(self, kind: Optional[Type[E]] = None) -> List[E]:
        with self._lock:
            if kind is None:
                return list(self._events)  # type: ignore[return-value]
            return [e for e in self._events if isinstance(e, kind)]


class SagaJournal:
    """Per-order step log; mirrors every line to the logger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.logs: List[str] = []

    def log(self, message: str, level: int = logging.INFO) -> None:
        with self._lock:
            self.logs.append(message)
        logger.log(level, message)

    def for_order(self, order_ref: str) -> List[str]:
        tag = f"[order={order_ref}]"
        with self._lock:
            return [line for line in self.logs if tag in line]
