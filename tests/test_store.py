"""
Contract tests for the key-value stores.

Both implementations run the same assertions.
"""

import os
import tempfile
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_governor.core.errors import StoreUnavailable
from ai_governor.storage.store import InMemoryStore, SQLiteStore

from conftest import FakeClock


@pytest.fixture(params=["memory", "sqlite"])
def store_and_clock(request):
    clock = FakeClock()
    if request.param == "memory":
        yield InMemoryStore(clock=clock), clock
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            yield SQLiteStore(os.path.join(temp_dir, "kv.db"), clock=clock), clock


class TestStoreContract:
    """Behavior shared by every KeyValueStore."""

    def test_get_missing(self, store_and_clock):
        store, _ = store_and_clock
        assert store.get("nope") is None

    def test_set_and_get(self, store_and_clock):
        store, _ = store_and_clock
        store.set("k", {"a": 1, "b": [1, 2]})
        assert store.get("k") == {"a": 1, "b": [1, 2]}

    def test_set_replaces(self, store_and_clock):
        store, _ = store_and_clock
        store.set("k", "one", ttl_seconds=10)
        store.set("k", "two")
        assert store.get("k") == "two"

    def test_ttl_expiry(self, store_and_clock):
        store, clock = store_and_clock
        store.set("k", "v", ttl_seconds=60)
        clock.advance(seconds=60)
        assert store.get("k") == "v"
        clock.advance(seconds=1)
        assert store.get("k") is None

    def test_delete(self, store_and_clock):
        store, _ = store_and_clock
        store.set("k", "v")
        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None

    def test_increment_creates_at_zero(self, store_and_clock):
        store, _ = store_and_clock
        assert store.increment("counter", 5) == Decimal("5")
        assert store.increment("counter", "0.25") == Decimal("5.25")

    def test_increment_ttl_only_applied_on_create(self, store_and_clock):
        store, clock = store_and_clock
        store.increment("counter", 1, ttl_seconds=100)
        clock.advance(seconds=90)
        store.increment("counter", 1, ttl_seconds=100)
        clock.advance(seconds=11)
        # Original expiry still applies, so the counter starts over.
        assert store.increment("counter", 1, ttl_seconds=100) == Decimal("1")

    def test_scan_skips_expired(self, store_and_clock):
        store, clock = store_and_clock
        store.set("ai:1", "a")
        store.set("ai:2", "b", ttl_seconds=5)
        store.set("emb:1", "c")
        clock.advance(seconds=10)
        assert store.scan("ai:") == ["ai:1"]

    def test_purge_expired(self, store_and_clock):
        store, clock = store_and_clock
        store.set("keep", "a")
        store.set("drop", "b", ttl_seconds=1)
        clock.advance(seconds=2)
        assert store.purge_expired() == 1
        assert store.purge_expired() == 0
        assert store.get("keep") == "a"

    def test_purge_expired_by_prefix(self, store_and_clock):
        store, clock = store_and_clock
        store.set("ai:1", "a", ttl_seconds=1)
        store.set("quota:1", "b", ttl_seconds=1)
        clock.advance(seconds=2)
        assert store.purge_expired("ai:") == 1
        assert store.purge_expired() == 1

    def test_concurrent_increments_are_exact(self, store_and_clock):
        store, _ = store_and_clock
        errors = []

        def add_cents():
            try:
                for _ in range(50):
                    store.increment("counter", "0.01", ttl_seconds=3600)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add_cents) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert store.increment("counter", 0) == Decimal("4.00")


class TestInMemoryStore:

    def test_values_are_copied(self):
        store = InMemoryStore()
        value = {"items": [1]}
        store.set("k", value)
        value["items"].append(2)
        fetched = store.get("k")
        fetched["items"].append(3)
        assert store.get("k") == {"items": [1]}


class TestSQLiteStore:

    def test_persists_across_instances(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "kv.db")
            SQLiteStore(db_path).set("k", [1, 2, 3])
            assert SQLiteStore(db_path).get("k") == [1, 2, 3]

    def test_unopenable_database_raises_store_unavailable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            # A directory cannot be opened as a database file
            with pytest.raises(StoreUnavailable):
                SQLiteStore(temp_dir)

    def test_connection_failure_maps_to_store_unavailable(self):
        import sqlite3

        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteStore(os.path.join(temp_dir, "kv.db"))
            with patch("ai_governor.storage.store.get_connection",
                       side_effect=sqlite3.OperationalError("disk I/O error")):
                with pytest.raises(StoreUnavailable, match="disk I/O error"):
                    store.get("k")
                with pytest.raises(StoreUnavailable):
                    store.increment("k", 1)
