from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from order_saga.config import Settings
from order_saga.events import ReservationsExpired
from order_saga.inventory import InventoryStore

logger = logging.getLogger(__name__)


class ReservationReaper:
    """
    Background sweeper for holds left behind by abandoned checkouts.

    Each sweep releases reservations whose expires_at is in the past. It may
    race a saga committing the same hold: release and commit both drop the
    reservation under the stock key's lock, so exactly one of them wins.
    """

    def __init__(self, inventory: InventoryStore, interval: float = 60.0, batch_size: int = 100):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.inventory = inventory
        self.interval = interval
        self.batch_size = batch_size

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, inventory: InventoryStore, settings: Settings) -> "ReservationReaper":
        return cls(inventory, interval=settings.reaper_interval_seconds, batch_size=settings.reaper_batch_size)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Release every hold that expired before `now`; returns how many this call released."""
        now = now if now is not None else self.inventory.clock()
        released = 0
        while True:
            ids = self.inventory.list_expired(now, limit=self.batch_size)
            if not ids:
                break
            for reservation_id in ids:
                # False means a commit or another sweep got there first
                if self.inventory.release(reservation_id):
                    released += 1
            if len(ids) < self.batch_size:
                break

        if released:
            logger.info("cleaned up %s expired reservations", released)
            self.inventory.events.publish(ReservationsExpired(count=released, swept_at=now))
        return released

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reservation-reaper", daemon=True)
        self._thread.start()
        logger.info("reservation reaper started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("reservation reaper stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("reservation sweep failed")

    def __enter__(self) -> "ReservationReaper":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
