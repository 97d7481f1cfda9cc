"""Database package for the seat redemption service."""
from .connection import get_db, init_db
from .models import (
    Base,
    OrderEvent,
    PaymentOrderRow,
    RedemptionCodeRow,
    TargetAccount,
)

__all__ = [
    "Base",
    "OrderEvent",
    "PaymentOrderRow",
    "RedemptionCodeRow",
    "TargetAccount",
    "get_db",
    "init_db",
]
