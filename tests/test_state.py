"""Tests for the shared state store and structured logging."""
from __future__ import annotations

import asyncio
import json
import logging

import pytest

from craftlocal_checkout.database import normalize_dsn
from craftlocal_checkout.exceptions import StateStoreUnavailable
from craftlocal_checkout.logging_config import (
    ContextFilter,
    StructuredFormatter,
    clear_context,
    set_checkout_context,
    set_correlation_id,
)
from craftlocal_checkout.state import RedisStateStore


@pytest.mark.asyncio
async def test_fallback_set_if_absent():
    store = RedisStateStore(namespace="test", redis_url="")
    assert await store.set_if_absent("lock:evt_1", "1", ttl=30)
    assert not await store.set_if_absent("lock:evt_1", "1", ttl=30)

    await store.delete("lock:evt_1")
    assert await store.set_if_absent("lock:evt_1", "1", ttl=30)


@pytest.mark.asyncio
async def test_fallback_ttl_expiry():
    store = RedisStateStore(namespace="test", redis_url="")

    await store.set("processed:evt_1", "checkout.session.completed", ttl=1)
    assert await store.exists("processed:evt_1")
    assert await store.get("processed:evt_1") == "checkout.session.completed"

    await asyncio.sleep(1.1)
    assert not await store.exists("processed:evt_1")


@pytest.mark.asyncio
async def test_unreachable_redis_raises_instead_of_using_memory():
    store = RedisStateStore(namespace="test", redis_url="redis://127.0.0.1:1/0")

    with pytest.raises(StateStoreUnavailable):
        await store.set_if_absent("lock:evt_1", "1", ttl=30)
    # Still bound to Redis; a later call tries to reconnect
    with pytest.raises(StateStoreUnavailable):
        await store.exists("processed:evt_1")
    assert store._memory == {}


def test_structured_formatter_includes_context():
    set_correlation_id("cor_abc")
    set_checkout_context("ci_123")
    try:
        record = logging.LogRecord("craftlocal.webhooks", logging.INFO, __file__, 10, "reconciled %s", ("evt_1",), None)
        ContextFilter().filter(record)
        data = json.loads(StructuredFormatter().format(record))
    finally:
        clear_context()

    assert data["message"] == "reconciled evt_1"
    assert data["correlation_id"] == "cor_abc"
    assert data["checkout_id"] == "ci_123"
    assert "order_id" not in data


def test_normalize_dsn():
    assert normalize_dsn("postgres://u@h/db") == "postgresql://u@h/db"
    assert normalize_dsn("postgresql://u@h/db") == "postgresql://u@h/db"
