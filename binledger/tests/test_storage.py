"""
Unit Tests for the in-memory entity store

Tests cover:
1. Commit of staged writes
2. Rollback when a transaction body raises
3. Email index maintenance
4. Lock timeouts
"""

import pytest

from binledger.storage import (
    InMemoryStorage,
    StorageTimeoutError,
    BINS,
    USERS,
    DEPOSIT_REQUESTS,
)


class TestTransactions:
    """Tests for staged writes and commit."""

    def test_writes_visible_only_after_commit(self):
        """Test that staged writes are not readable until the block exits."""
        storage = InMemoryStorage()

        with storage.transaction((BINS, 1)) as txn:
            txn.put(BINS, 1, {"id": 1, "capacity": 10.0, "current_weight": 0.0})
            assert storage.read(BINS, 1) is None
            # The transaction itself sees its own writes
            assert txn.get(BINS, 1)["capacity"] == 10.0

        assert storage.read(BINS, 1)["capacity"] == 10.0

    def test_exception_discards_all_writes(self):
        """Test that a failing body leaves every table untouched."""
        storage = InMemoryStorage()
        with storage.transaction() as txn:
            bin_data = txn.insert(BINS, {"capacity": 10.0, "current_weight": 1.0})

        with pytest.raises(RuntimeError):
            with storage.transaction((BINS, bin_data["id"])) as txn:
                txn.put(DEPOSIT_REQUESTS, 1, {"id": 1, "bin_id": bin_data["id"], "weight": 2.0})
                txn.put(BINS, bin_data["id"], dict(bin_data, current_weight=3.0))
                raise RuntimeError("crash between writes")

        assert storage.read(BINS, bin_data["id"])["current_weight"] == 1.0
        assert storage.all(DEPOSIT_REQUESTS) == []

    def test_reads_return_copies(self):
        """Test that mutating a read row does not change the stored row."""
        storage = InMemoryStorage()
        with storage.transaction() as txn:
            bin_data = txn.insert(BINS, {"capacity": 10.0, "current_weight": 0.0})

        row = storage.read(BINS, bin_data["id"])
        row["current_weight"] = 99.0

        assert storage.read(BINS, bin_data["id"])["current_weight"] == 0.0

    def test_insert_allocates_increasing_ids(self):
        """Test that inserted rows get sequential identifiers."""
        storage = InMemoryStorage()
        with storage.transaction() as txn:
            first = txn.insert(BINS, {"capacity": 1.0, "current_weight": 0.0})
            second = txn.insert(BINS, {"capacity": 2.0, "current_weight": 0.0})

        assert (first["id"], second["id"]) == (1, 2)
        assert [b["id"] for b in storage.all(BINS)] == [1, 2]


class TestEmailIndex:
    """Tests for the user email index."""

    def test_index_follows_insert_and_delete(self):
        """Test that the email index tracks user rows."""
        storage = InMemoryStorage()
        with storage.transaction() as txn:
            user = txn.insert(USERS, {"email": "a@example.com", "password": "x", "points": 0})

        assert storage.find_user_id("a@example.com") == user["id"]

        with storage.transaction((USERS, user["id"])) as txn:
            txn.delete(USERS, user["id"])

        assert storage.find_user_id("a@example.com") is None

    def test_seed_demo(self):
        """Test that demo seeding creates one bin and one user."""
        storage = InMemoryStorage(seed_demo=True)

        assert len(storage.all(BINS)) == 1
        assert storage.find_user_id("recycler@example.com") is not None


class TestLocking:
    """Tests for per-entity locks."""

    def test_lock_timeout(self):
        """Test that a held entity lock times out instead of blocking."""
        storage = InMemoryStorage(lock_timeout=0.05)

        with storage.transaction((USERS, 1)):
            with pytest.raises(StorageTimeoutError):
                with storage.transaction((USERS, 1)):
                    pass

    def test_lock_entries_released_after_use(self):
        """Test that entity locks are dropped once no transaction needs them."""
        storage = InMemoryStorage(lock_timeout=0.05)

        for email in ("a@example.com", "b@example.com", "c@example.com"):
            with storage.transaction(("emails", email)):
                pass

        with pytest.raises(RuntimeError):
            with storage.transaction((USERS, 1), ("grants", "settle-1")):
                raise RuntimeError("rolled back")

        assert storage.active_lock_count == 0

        with storage.transaction((USERS, 1)):
            with pytest.raises(StorageTimeoutError):
                with storage.transaction((USERS, 1)):
                    pass
            assert storage.active_lock_count == 1

        assert storage.active_lock_count == 0

    def test_different_entities_do_not_block(self):
        """Test that locks on different entities are independent."""
        storage = InMemoryStorage(lock_timeout=0.05)

        with storage.transaction((USERS, 1)):
            with storage.transaction((USERS, 2)) as txn:
                txn.put(USERS, 2, {"id": 2, "email": "b@example.com", "password": "x", "points": 0})

        assert storage.find_user_id("b@example.com") == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
