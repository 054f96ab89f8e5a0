import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from itertools import count
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

BINS = "bins"
USERS = "users"
DEPOSIT_REQUESTS = "deposit_requests"
REWARDS = "rewards"
GRANTS = "grants"

TABLES = (BINS, USERS, DEPOSIT_REQUESTS, REWARDS, GRANTS)


class StorageTimeoutError(Exception):
    """Raised when an entity lock cannot be acquired within the timeout."""


class Transaction:
    """Writes staged against an InMemoryStorage, applied together on commit."""

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._writes: list[tuple[str, Any, Optional[dict]]] = []

    def get(self, table: str, key: Any) -> Optional[dict]:
        for staged_table, staged_key, data in reversed(self._writes):
            if staged_table == table and staged_key == key:
                return dict(data) if data is not None else None
        return self._storage.read(table, key)

    def put(self, table: str, key: Any, data: dict) -> None:
        self._writes.append((table, key, dict(data)))

    def insert(self, table: str, data: dict) -> dict:
        record = dict(data)
        record["id"] = self._storage.next_id(table)
        self.put(table, record["id"], record)
        return record

    def delete(self, table: str, key: Any) -> None:
        self._writes.append((table, key, None))

    def commit(self) -> None:
        self._storage.apply(self._writes)
        self._writes = []


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0, seed_demo: bool = False):
        self.lock_timeout = lock_timeout
        self.tables: dict[str, dict[Any, dict]] = {name: {} for name in TABLES}
        self.users_by_email: dict[str, int] = {}
        self._sequences = {name: count(1) for name in TABLES}
        self._sequence_lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._locks: dict[tuple, list] = {}
        self._locks_guard = threading.Lock()
        if seed_demo:
            self._seed_data()

    def _seed_data(self):
        with self.transaction() as txn:
            txn.insert(BINS, {"capacity": 100.0, "current_weight": 0.0})
            user = txn.insert(USERS, {
                "email": "recycler@example.com", "password": "changeme",
                "points": 0, "amount": Decimal("0.00"),
            })
        logger.info("Seeded demo bin and user %s", user["email"])

    def next_id(self, table: str) -> int:
        with self._sequence_lock:
            return next(self._sequences[table])

    def _checkout_lock(self, key: tuple) -> threading.Lock:
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin_lock(self, key: tuple) -> None:
        # Entries live only while some transaction holds or waits on them
        with self._locks_guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @property
    def active_lock_count(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    @contextmanager
    def transaction(self, *keys: tuple) -> Iterator[Transaction]:
        """Lock the given entity keys, yield a Transaction, commit on clean exit.

        Keys are acquired in sorted order so two transactions over the same
        entities cannot deadlock. Staged writes are dropped if the body raises.
        """
        acquired: list[tuple[tuple, threading.Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout_lock(key)
                if not lock.acquire(timeout=self.lock_timeout):
                    self._checkin_lock(key)
                    raise StorageTimeoutError(f"Timed out waiting for lock on {key}")
                acquired.append((key, lock))
            txn = Transaction(self)
            yield txn
            txn.commit()
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin_lock(key)

    def apply(self, writes: list[tuple[str, Any, Optional[dict]]]) -> None:
        with self._commit_lock:
            for table, key, data in writes:
                rows = self.tables[table]
                if table == USERS:
                    previous = rows.get(key)
                    if previous is not None:
                        self.users_by_email.pop(previous["email"], None)
                    if data is not None:
                        self.users_by_email[data["email"]] = key
                if data is None:
                    rows.pop(key, None)
                else:
                    rows[key] = data

    def read(self, table: str, key: Any) -> Optional[dict]:
        with self._commit_lock:
            row = self.tables[table].get(key)
            return dict(row) if row is not None else None

    def all(self, table: str) -> list[dict]:
        with self._commit_lock:
            rows = [dict(row) for row in self.tables[table].values()]
        return sorted(rows, key=lambda r: r["id"])

    def find_user_id(self, email: str) -> Optional[int]:
        with self._commit_lock:
            return self.users_by_email.get(email)
