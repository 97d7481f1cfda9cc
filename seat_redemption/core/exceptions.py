"""Error taxonomy shared by every engine component and the API layer."""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """
    Base exception for engine failures.

    Carries a stable ``kind`` string and the HTTP status the API should
    answer with. Raise sites may override the status within the range
    their kind allows.
    """

    kind = "engine_error"
    default_status = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status
        self.payload: Dict[str, Any] = dict(payload or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "http_status": self.status_code,
            "message": self.message,
            **self.payload,
        }


class ValidationError(EngineError):
    """Malformed or missing input."""

    kind = "validation"
    default_status = 400


class NotFoundError(EngineError):
    """Unknown code or order."""

    kind = "not_found"
    default_status = 404


class ConflictError(EngineError):
    """Already redeemed, wrong channel, reservation mismatch or illegal transition."""

    kind = "conflict"
    default_status = 403


class CapacityExhaustedError(EngineError):
    """No eligible resource with a free seat, or no code left in the pool."""

    kind = "capacity_exhausted"
    default_status = 503


class UpstreamGatewayError(EngineError):
    """Non-2xx, malformed or rejected gateway response."""

    kind = "upstream_gateway"
    default_status = 502


class ReconciliationMismatchError(EngineError):
    """Gateway-reported amount differs from the recorded one; needs manual review."""

    kind = "reconciliation_mismatch"
    default_status = 502


RedemptionError = EngineError

__all__ = [
    "CapacityExhaustedError",
    "ConflictError",
    "EngineError",
    "NotFoundError",
    "ReconciliationMismatchError",
    "RedemptionError",
    "UpstreamGatewayError",
    "ValidationError",
]
