"""Core engine: locks, capacity, redemption, order lifecycle and webhook reconciliation.

Only leaf modules are re-exported here; the engine components import the
database layer and are imported from their own modules.
"""
from .exceptions import (
    CapacityExhaustedError,
    ConflictError,
    EngineError,
    NotFoundError,
    ReconciliationMismatchError,
    RedemptionError,
    UpstreamGatewayError,
    ValidationError,
)
from .locks import LockManager

__all__ = [
    "CapacityExhaustedError",
    "ConflictError",
    "EngineError",
    "LockManager",
    "NotFoundError",
    "ReconciliationMismatchError",
    "RedemptionError",
    "UpstreamGatewayError",
    "ValidationError",
]
