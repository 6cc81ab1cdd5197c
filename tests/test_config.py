"""Tests for environment-driven settings."""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from order_saga.config import Settings, get_settings
from order_saga.inventory import InventoryStore
from order_saga.saga import CheckoutSaga


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = Settings()

    assert settings.hold_duration == timedelta(minutes=15)
    assert settings.reaper_interval_seconds == 60
    assert settings.reaper_batch_size == 100
    assert settings.low_stock_alert is True
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ORDER_SAGA_HOLD_DURATION_SECONDS", "120")
    monkeypatch.setenv("ORDER_SAGA_LOW_STOCK_ALERT", "false")

    settings = get_settings()

    assert settings.hold_duration == timedelta(minutes=2)
    assert settings.low_stock_alert is False
    assert get_settings() is settings


def test_rejects_non_positive_values():
    with pytest.raises(ValidationError):
        Settings(hold_duration_seconds=0)
    with pytest.raises(ValidationError):
        Settings(reaper_batch_size=-1)


def test_inventory_from_settings():
    store = InventoryStore.from_settings(Settings(hold_duration_seconds=30, low_stock_alert=False))

    assert store.hold_duration == timedelta(seconds=30)
    assert store.low_stock_alert is False


def test_saga_from_settings(inventory, orders, gateway):
    settings = Settings(idempotency_key_ttl_seconds=600, attempt_history=10)

    saga = CheckoutSaga.from_settings(inventory, orders, gateway, settings)

    assert saga.key_ttl == timedelta(minutes=10)
    assert saga.attempt_history == 10
    assert Settings().idempotency_key_ttl == timedelta(hours=24)
