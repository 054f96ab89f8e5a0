from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Bin(BaseModel):
    id: int
    capacity: float
    current_weight: float = 0.0

    model_config = ConfigDict(from_attributes=True)

    @property
    def remaining_capacity(self) -> float:
        return self.capacity - self.current_weight


class User(BaseModel):
    id: int
    email: str
    password: str
    points: int = 0
    amount: Decimal = Decimal("0.00")

    model_config = ConfigDict(from_attributes=True)


class UserPublic(BaseModel):
    id: int
    email: str
    points: int
    amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class DepositRequest(BaseModel):
    id: int
    bin_id: int
    weight: float
    request_date: datetime = Field(default_factory=_utcnow)
    is_approved: bool = True

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Reward(BaseModel):
    id: int
    user_email: str
    points_required: int
    amount: Decimal
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PointsBalance(BaseModel):
    email: str
    balance: int


class CreateBinRequest(BaseModel):
    capacity: float = Field(..., strict=True)
    current_weight: float = Field(default=0.0, strict=True)

    model_config = ConfigDict(json_schema_extra={
        "example": {"capacity": 50.0, "current_weight": 0.0}
    })


class UpdateBinRequest(BaseModel):
    capacity: float = Field(..., strict=True)
    current_weight: float = Field(..., strict=True)


class RegisterUserRequest(BaseModel):
    email: str
    password: str
    points: int = Field(default=0, strict=True)


class DepositCreateRequest(BaseModel):
    bin_id: int = Field(..., strict=True)
    weight: float = Field(..., strict=True)

    model_config = ConfigDict(json_schema_extra={
        "example": {"bin_id": 1, "weight": 2.5}
    })


class GrantPointsRequest(BaseModel):
    email: str
    points: int = Field(..., strict=True)
    idempotency_key: Optional[str] = Field(default=None, description="Optional key that makes retries safe")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "recycler@example.com",
            "points": 25,
            "idempotency_key": "deposit-42-settlement"
        }
    })


class DebitPointsRequest(BaseModel):
    email: str
    points: int = Field(..., strict=True)


class RedeemRewardRequest(BaseModel):
    email: str
    points_required: int = Field(..., strict=True)
    amount: Decimal

    model_config = ConfigDict(json_schema_extra={
        "example": {"email": "recycler@example.com", "points_required": 100, "amount": 10.00}
    })
