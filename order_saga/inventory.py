from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from order_saga.config import Settings
from order_saga.errors import OutOfStock, ReservationNotFound, StockNotFound
from order_saga.events import EventLog, LowStock
from order_saga.models import Reservation, StockCheck, StockKey, StockRecord, utcnow

logger = logging.getLogger(__name__)


class InventoryStore:
    """
    Single source of truth for stock counters and holds.

    Every mutation of a stock record happens under that key's lock, so
    reserve/release/commit are serialized per key while unrelated keys
    proceed in parallel. The reservation table has its own short lock;
    it is only ever taken while already holding a key lock (never the
    other way round).
    """

    def __init__(
        self,
        hold_duration: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
        events: Optional[EventLog] = None,
        low_stock_alert: bool = True,
    ) -> None:
        self.hold_duration = hold_duration
        self.clock = clock
        self.events = events if events is not None else EventLog()
        self.low_stock_alert = low_stock_alert

        self._records: Dict[StockKey, StockRecord] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._key_locks: Dict[StockKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._index_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "InventoryStore":
        kwargs.setdefault("hold_duration", settings.hold_duration)
        kwargs.setdefault("low_stock_alert", settings.low_stock_alert)
        return cls(**kwargs)

    def _lock_for(self, key: StockKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _forget(self, reservation_id: str) -> bool:
        with self._index_lock:
            return self._reservations.pop(reservation_id, None) is not None

    # Seeding / admin

    def add_stock(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        low_stock_threshold: int = 0,
        sku: str = "",
        name: str = "",
    ) -> StockRecord:
        """Register a stock record, or top up an existing one."""
        if quantity < 0:
            raise ValueError("quantity must be >= 0")
        if low_stock_threshold < 0:
            raise ValueError("low_stock_threshold must be >= 0")
        key = StockKey(product_id, variant_id)
        with self._lock_for(key):
            now = self.clock()
            record = self._records.get(key)
            if record is None:
                record = StockRecord(
                    key=key,
                    total_quantity=quantity,
                    reserved_quantity=0,
                    low_stock_threshold=low_stock_threshold,
                    active=True,
                    last_updated=now,
                    sku=sku or f"SKU-{product_id.upper()}",
                    name=name,
                )
                with self._registry_lock:
                    self._records[key] = record
            else:
                record.total_quantity += quantity
                record.last_updated = now
            logger.info("stock added: %s qty=%s (total=%s)", key, quantity, record.total_quantity)
            return replace(record)

    def set_active(self, key: StockKey, active: bool) -> None:
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None:
                raise StockNotFound(key)
            record.active = active
            record.last_updated = self.clock()

    # Core operations

    def check_stock(self, key: StockKey, quantity: int) -> StockCheck:
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        with self._lock_for(key):
            record = self._records.get(key)
            free = record.free_quantity if record is not None and record.active else 0
        return StockCheck(key=key, requested_quantity=quantity, free_quantity=free, available=free >= quantity)

    def reserve(self, key: StockKey, quantity: int, order_id: str) -> str:
        """Hold `quantity` units of `key` for `order_id`. All or nothing."""
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None or not record.active:
                raise OutOfStock(key, quantity, 0)
            if record.free_quantity < quantity:
                raise OutOfStock(key, quantity, record.free_quantity)

            now = self.clock()
            reservation = Reservation(
                id=f"res_{uuid4().hex}",
                stock_key=key,
                quantity=quantity,
                order_id=order_id,
                created_at=now,
                expires_at=now + self.hold_duration,
            )
            record.reserved_quantity += quantity
            record.last_updated = now
            with self._index_lock:
                self._reservations[reservation.id] = reservation
            free = record.free_quantity

        logger.info("[order=%s] stock reserved: %s qty=%s (free=%s)", order_id, key, quantity, free)
        return reservation.id

    def release(self, reservation_id: str) -> bool:
        """Drop a hold. Unknown or already released ids are a no-op returning False."""
        reservation = self.get_reservation(reservation_id)
        if reservation is None:
            return False
        with self._lock_for(reservation.stock_key):
            if not self._forget(reservation_id):
                return False
            record = self._records[reservation.stock_key]
            record.reserved_quantity -= reservation.quantity
            record.last_updated = self.clock()
            free = record.free_quantity

        logger.info(
            "[order=%s] reservation released: %s %s qty=%s (free=%s)",
            reservation.order_id,
            reservation_id,
            reservation.stock_key,
            reservation.quantity,
            free,
        )
        return True

    def commit(self, reservation_id: str) -> Reservation:
        """Turn a hold into a permanent decrement of total stock."""
        reservation = self.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        key = reservation.stock_key
        with self._lock_for(key):
            if not self._forget(reservation_id):
                raise ReservationNotFound(reservation_id)
            record = self._records[key]
            record.reserved_quantity -= reservation.quantity
            record.total_quantity -= reservation.quantity
            record.last_updated = self.clock()
            free = record.free_quantity
            threshold = record.low_stock_threshold
            total = record.total_quantity

        logger.info(
            "[order=%s] reservation committed: %s qty=%s (total=%s, free=%s)",
            reservation.order_id,
            key,
            reservation.quantity,
            total,
            free,
        )
        if self.low_stock_alert and free <= threshold:
            logger.warning("low stock: %s free=%s threshold=%s", key, free, threshold)
            self.events.publish(LowStock(stock_key=key, free_quantity=free, threshold=threshold, detected_at=self.clock()))
        return reservation

    def restore(self, key: StockKey, quantity: int) -> None:
        """Put back stock that an earlier commit removed."""
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None:
                raise StockNotFound(key)
            record.total_quantity += quantity
            record.last_updated = self.clock()
            total = record.total_quantity
        logger.info("stock restored: %s qty=%s (total=%s)", key, quantity, total)

    def list_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        now = now if now is not None else self.clock()
        with self._index_lock:
            expired = [r for r in self._reservations.values() if r.expires_at < now]
        expired.sort(key=lambda r: r.expires_at)
        if limit is not None:
            expired = expired[:limit]
        return [r.id for r in expired]

    # Read paths

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._index_lock:
            return self._reservations.get(reservation_id)

    def reservations_for_order(self, order_id: str) -> List[Reservation]:
        with self._index_lock:
            return [r for r in self._reservations.values() if r.order_id == order_id]

    def get_stock(self, key: StockKey) -> Optional[StockRecord]:
        with self._lock_for(key):
            record = self._records.get(key)
            return replace(record) if record is not None else None

    def all_stock(self) -> List[StockRecord]:
        with self._registry_lock:
            keys = sorted(self._records, key=StockKey.sort_key)
        return [record for record in (self.get_stock(k) for k in keys) if record is not None]

    def low_stock_items(self) -> List[StockRecord]:
        return [r for r in self.all_stock() if r.free_quantity <= r.low_stock_threshold]
