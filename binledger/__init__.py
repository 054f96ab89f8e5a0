"""
Smart Bin Ledger

This package provides:
- Deposit processing against smart bins with capacity checks
- Points grants and explicit debits, with optional idempotency keys
- Reward redemption that converts points into a redeemable amount
- Per-entity transactions so each operation is all-or-nothing
"""

from .models import (
    Bin,
    User,
    DepositRequest,
    Reward,
    PointsBalance,
)
from .service import LedgerService

__all__ = [
    "Bin",
    "User",
    "DepositRequest",
    "Reward",
    "PointsBalance",
    "LedgerService",
]
