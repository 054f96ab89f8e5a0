import logging
import math
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Optional

from .config import Settings, get_settings
from .models import (
    Bin,
    User,
    DepositRequest,
    Reward,
    PointsBalance,
)
from .storage import (
    BINS,
    USERS,
    DEPOSIT_REQUESTS,
    REWARDS,
    GRANTS,
    InMemoryStorage,
    StorageTimeoutError,
    Transaction,
)

logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self)}


class NotFoundError(LedgerServiceError):
    code = "NOT_FOUND"


class BinNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class InvalidInputError(LedgerServiceError):
    code = "INVALID_INPUT"


class DuplicateEmailError(InvalidInputError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    code = "INSUFFICIENT_BALANCE"


class CapacityExceededError(LedgerServiceError):
    code = "CAPACITY_EXCEEDED"


class IdempotencyConflictError(LedgerServiceError):
    code = "CONFLICT"


class StorageUnavailableError(LedgerServiceError):
    code = "STORAGE_UNAVAILABLE"


def _require_weight(value: Any, name: str, allow_zero: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidInputError(f"{name} must be a finite number")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidInputError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {value}")
    return float(value)


def _require_points(value: Any, name: str = "points") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer")
    if value < 0:
        raise InvalidInputError(f"{name} must be non-negative, got {value}")
    return value


def _require_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"amount must be numeric, got {value!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidInputError(f"amount must be a non-negative number, got {value}")
    return amount


def _over_capacity(total: float, capacity: float) -> bool:
    # Float sums like 0.1 + 0.2 land just above an exactly full bin
    return total > capacity and not math.isclose(total, capacity)


class LedgerService:
    """Deposit, points and reward operations over an entity store.

    Every mutating call runs inside one storage transaction locked on the
    bin or user it touches, so a failed call never leaves partial writes.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(
            lock_timeout=self.settings.lock_timeout,
            seed_demo=self.settings.seed_demo,
        )

    @contextmanager
    def _transaction(self, *keys: tuple) -> Iterator[Transaction]:
        try:
            with self.storage.transaction(*keys) as txn:
                yield txn
        except StorageTimeoutError as e:
            logger.error("Storage unavailable: %s", e)
            raise StorageUnavailableError(str(e)) from e

    def _user_id_for(self, email: str) -> int:
        user_id = self.storage.find_user_id(email)
        if user_id is None:
            raise UserNotFoundError(f"User {email} not found")
        return user_id

    def _load_user(self, txn: Transaction, user_id: int, email: str) -> dict:
        user_data = txn.get(USERS, user_id)
        if not user_data:
            raise UserNotFoundError(f"User {email} not found")
        return user_data

    # Deposit processor

    def record_deposit(self, bin_id: int, weight: float) -> Bin:
        weight = _require_weight(weight, "weight")

        with self._transaction((BINS, bin_id)) as txn:
            bin_data = txn.get(BINS, bin_id)
            if not bin_data:
                raise BinNotFoundError(f"Bin with ID {bin_id} not found.")

            bin_ = Bin(**bin_data)
            if self.settings.enforce_capacity and _over_capacity(bin_.current_weight + weight, bin_.capacity):
                logger.warning(
                    "Deposit of %s rejected for bin %s: %s of %s already used",
                    weight, bin_id, bin_.current_weight, bin_.capacity,
                )
                raise CapacityExceededError(
                    f"Deposit of {weight} exceeds remaining capacity {bin_.remaining_capacity} of bin {bin_id}"
                )

            deposit = DepositRequest(id=self.storage.next_id(DEPOSIT_REQUESTS), bin_id=bin_id, weight=weight)
            bin_data["current_weight"] = bin_.current_weight + weight
            txn.put(DEPOSIT_REQUESTS, deposit.id, deposit.model_dump())
            txn.put(BINS, bin_id, bin_data)

        logger.info("Deposit %s: %s added to bin %s", deposit.id, weight, bin_id)
        return Bin(**bin_data)

    def list_deposits(self) -> list[DepositRequest]:
        return [DepositRequest(**d) for d in self.storage.all(DEPOSIT_REQUESTS)]

    # Points allocator

    def grant_points(self, email: str, points: int, idempotency_key: Optional[str] = None) -> PointsBalance:
        points = _require_points(points)
        user_id = self._user_id_for(email)

        keys = [(USERS, user_id)]
        if idempotency_key:
            keys.append((GRANTS, idempotency_key))

        with self._transaction(*keys) as txn:
            if idempotency_key:
                previous = txn.get(GRANTS, idempotency_key)
                if previous:
                    if previous["email"] != email or previous["points"] != points:
                        raise IdempotencyConflictError(
                            f"Idempotency key {idempotency_key} already used for a different grant"
                        )
                    logger.info("Grant %s already applied (idempotent return)", idempotency_key)
                    return PointsBalance(email=email, balance=previous["balance"])

            user_data = self._load_user(txn, user_id, email)
            user_data["points"] += points
            txn.put(USERS, user_id, user_data)
            if idempotency_key:
                txn.put(GRANTS, idempotency_key, {
                    "email": email, "points": points, "balance": user_data["points"],
                })

        logger.info("Granted %s points to %s, balance %s", points, email, user_data["points"])
        return PointsBalance(email=email, balance=user_data["points"])

    def debit_points(self, email: str, points: int) -> PointsBalance:
        points = _require_points(points)
        user_id = self._user_id_for(email)

        with self._transaction((USERS, user_id)) as txn:
            user_data = self._load_user(txn, user_id, email)
            if user_data["points"] < points:
                logger.warning("Debit of %s rejected for %s: balance %s", points, email, user_data["points"])
                raise InsufficientBalanceError(
                    f"Not enough points: {user_data['points']} available, {points} requested"
                )
            user_data["points"] -= points
            txn.put(USERS, user_id, user_data)

        logger.info("Debited %s points from %s, balance %s", points, email, user_data["points"])
        return PointsBalance(email=email, balance=user_data["points"])

    def get_points(self, email: str) -> int:
        user_data = self.storage.read(USERS, self._user_id_for(email))
        if not user_data:
            raise UserNotFoundError(f"User {email} not found")
        return user_data["points"]

    # Reward ledger

    def redeem_reward(self, email: str, points_required: int, amount) -> Reward:
        points_required = _require_points(points_required, "points_required")
        amount = _require_amount(amount)
        user_id = self._user_id_for(email)

        with self._transaction((USERS, user_id)) as txn:
            user_data = self._load_user(txn, user_id, email)
            if user_data["points"] < points_required:
                logger.warning(
                    "Redemption rejected for %s: %s points available, %s required",
                    email, user_data["points"], points_required,
                )
                raise InsufficientBalanceError("Not enough points")

            user_data["points"] -= points_required
            user_data["amount"] = user_data["amount"] + amount
            reward = Reward(
                id=self.storage.next_id(REWARDS),
                user_email=email,
                points_required=points_required,
                amount=amount,
            )
            txn.put(USERS, user_id, user_data)
            txn.put(REWARDS, reward.id, reward.model_dump())

        logger.info("Reward %s redeemed by %s for %s points", reward.id, email, points_required)
        return reward

    def list_rewards(self, email: Optional[str] = None) -> list[Reward]:
        rewards = [Reward(**r) for r in self.storage.all(REWARDS)]
        if email is not None:
            rewards = [r for r in rewards if r.user_email == email]
        return rewards

    # Bins

    def create_bin(self, capacity: float, current_weight: float = 0.0) -> Bin:
        capacity = _require_weight(capacity, "capacity")
        current_weight = _require_weight(current_weight, "current_weight", allow_zero=True)
        if self.settings.enforce_capacity and _over_capacity(current_weight, capacity):
            raise InvalidInputError(f"current_weight {current_weight} exceeds capacity {capacity}")

        with self._transaction() as txn:
            bin_data = txn.insert(BINS, {"capacity": capacity, "current_weight": current_weight})

        logger.info("Created bin %s with capacity %s", bin_data["id"], capacity)
        return Bin(**bin_data)

    def get_bin(self, bin_id: int) -> Bin:
        bin_data = self.storage.read(BINS, bin_id)
        if not bin_data:
            raise BinNotFoundError(f"Bin with ID {bin_id} not found.")
        return Bin(**bin_data)

    def list_bins(self) -> list[Bin]:
        return [Bin(**b) for b in self.storage.all(BINS)]

    def update_bin(self, bin_id: int, capacity: float, current_weight: float) -> Bin:
        capacity = _require_weight(capacity, "capacity")
        current_weight = _require_weight(current_weight, "current_weight", allow_zero=True)
        if self.settings.enforce_capacity and _over_capacity(current_weight, capacity):
            raise InvalidInputError(f"current_weight {current_weight} exceeds capacity {capacity}")

        with self._transaction((BINS, bin_id)) as txn:
            bin_data = txn.get(BINS, bin_id)
            if not bin_data:
                raise BinNotFoundError(f"Bin with ID {bin_id} not found.")
            bin_data["capacity"] = capacity
            bin_data["current_weight"] = current_weight
            txn.put(BINS, bin_id, bin_data)

        logger.info("Updated bin %s: capacity %s, weight %s", bin_id, capacity, current_weight)
        return Bin(**bin_data)

    def delete_bin(self, bin_id: int) -> None:
        with self._transaction((BINS, bin_id)) as txn:
            if not txn.get(BINS, bin_id):
                raise BinNotFoundError(f"Bin with ID {bin_id} not found.")
            txn.delete(BINS, bin_id)
        logger.info("Deleted bin %s", bin_id)

    # Users

    def register_user(self, email: str, password: str, points: int = 0) -> User:
        email = (email or "").strip()
        if not email:
            raise InvalidInputError("email is required")
        points = _require_points(points)

        with self._transaction(("emails", email)) as txn:
            if self.storage.find_user_id(email) is not None:
                raise DuplicateEmailError("Email already exists.")
            user_data = txn.insert(USERS, {
                "email": email,
                "password": password,
                "points": points,
                "amount": Decimal("0.00"),
            })

        logger.info("Registered user %s", email)
        return User(**user_data)

    def get_user(self, user_id: int) -> User:
        user_data = self.storage.read(USERS, user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")
        return User(**user_data)

    def list_users(self) -> list[User]:
        return [User(**u) for u in self.storage.all(USERS)]

    def delete_user(self, user_id: int) -> None:
        with self._transaction((USERS, user_id)) as txn:
            if not txn.get(USERS, user_id):
                raise UserNotFoundError(f"User {user_id} not found")
            txn.delete(USERS, user_id)
        logger.info("Deleted user %s", user_id)
