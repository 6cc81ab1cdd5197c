"""Tests for the reservation reaper: expiry sweeps and the commit/release race."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from order_saga.config import Settings
from order_saga.errors import ReservationNotFound
from order_saga.events import ReservationsExpired
from order_saga.models import StockKey
from order_saga.reaper import ReservationReaper

X = StockKey("X")
A = StockKey("A")


def _free(inventory, key):
    return inventory.get_stock(key).free_quantity


def test_sweep_releases_only_expired_holds(inventory, reaper, clock):
    """Holds past expires_at go back to free stock; younger ones stay."""
    logging.info("\n=== TEST: sweep releases only expired holds ===")

    old = inventory.reserve(X, 2, "order-1")
    clock.advance(minutes=10)
    young = inventory.reserve(A, 3, "order-2")
    clock.advance(minutes=6)

    assert reaper.sweep() == 1

    assert inventory.get_reservation(old) is None
    assert inventory.get_reservation(young) is not None
    assert _free(inventory, X) == 5
    assert _free(inventory, A) == 7

    logging.info("✓ Only the expired hold was released")


def test_sweep_is_idempotent(inventory, reaper, clock):
    inventory.reserve(X, 1, "order-1")
    clock.advance(minutes=16)

    assert reaper.sweep() == 1
    assert reaper.sweep() == 0
    assert inventory.get_stock(X).reserved_quantity == 0


def test_sweep_works_through_batches(inventory, reaper, clock):
    """batch_size=2 still drains all five expired holds in one sweep."""
    for i in range(5):
        inventory.reserve(A, 1, f"order-{i}")
    clock.advance(minutes=20)

    assert reaper.sweep() == 5
    assert inventory.get_stock(A).reserved_quantity == 0


def test_sweep_publishes_summary_event(inventory, reaper, clock, events):
    inventory.reserve(X, 1, "order-1")
    inventory.reserve(A, 1, "order-2")

    reaper.sweep()
    assert events.events(ReservationsExpired) == []

    clock.advance(minutes=16)
    reaper.sweep()

    summaries = events.events(ReservationsExpired)
    assert len(summaries) == 1
    assert summaries[0].count == 2
    assert summaries[0].swept_at == clock.now


def test_commit_then_sweep_leaves_stock_alone(inventory, reaper, clock):
    reservation_id = inventory.reserve(X, 2, "order-1")
    inventory.commit(reservation_id)
    clock.advance(minutes=30)

    assert reaper.sweep() == 0

    record = inventory.get_stock(X)
    assert record.total_quantity == 3
    assert record.reserved_quantity == 0


def test_sweep_then_commit_reports_missing(inventory, reaper, clock):
    reservation_id = inventory.reserve(X, 2, "order-1")
    clock.advance(minutes=16)
    reaper.sweep()

    with pytest.raises(ReservationNotFound):
        inventory.commit(reservation_id)
    assert inventory.get_stock(X).total_quantity == 5


def test_commit_racing_release_exactly_one_wins(inventory):
    """Commit and release of the same hold fire together; counters move exactly once."""
    logging.info("\n=== TEST: commit vs release race ===")

    for _ in range(50):
        reservation_id = inventory.reserve(A, 1, "order-race")
        before = inventory.get_stock(A)
        barrier = threading.Barrier(2)

        def do_commit():
            barrier.wait()
            try:
                inventory.commit(reservation_id)
                return "commit"
            except ReservationNotFound:
                return None

        def do_release():
            barrier.wait()
            return "release" if inventory.release(reservation_id) else None

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [f.result() for f in (pool.submit(do_commit), pool.submit(do_release))]

        winners = [r for r in results if r is not None]
        assert len(winners) == 1

        after = inventory.get_stock(A)
        assert after.reserved_quantity == before.reserved_quantity - 1
        if winners[0] == "commit":
            assert after.total_quantity == before.total_quantity - 1
        else:
            assert after.total_quantity == before.total_quantity
        # top up so later rounds can still reserve
        if after.free_quantity == 0:
            inventory.restore(A, 10)

    logging.info("✓ Every race had exactly one winner")


def test_background_thread_sweeps(inventory, clock):
    reaper = ReservationReaper(inventory, interval=0.01, batch_size=10)
    reservation_id = inventory.reserve(X, 2, "order-1")
    clock.advance(minutes=16)

    with reaper:
        assert reaper.running
        deadline = time.monotonic() + 2.0
        while inventory.get_reservation(reservation_id) is not None and time.monotonic() < deadline:
            time.sleep(0.01)

    assert not reaper.running
    assert inventory.get_reservation(reservation_id) is None
    assert _free(inventory, X) == 5


def test_stop_without_start_is_harmless(reaper):
    reaper.stop()
    assert not reaper.running


def test_rejects_bad_settings(inventory):
    with pytest.raises(ValueError):
        ReservationReaper(inventory, interval=0)
    with pytest.raises(ValueError):
        ReservationReaper(inventory, batch_size=0)


def test_from_settings(inventory):
    settings = Settings(reaper_interval_seconds=5, reaper_batch_size=7)
    reaper = ReservationReaper.from_settings(inventory, settings)

    assert reaper.interval == 5
    assert reaper.batch_size == 7
