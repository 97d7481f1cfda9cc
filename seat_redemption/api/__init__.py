"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderResponse,
    RedeemRequest,
    RedemptionResponse,
)

__all__ = [
    "create_app",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderResponse",
    "RedeemRequest",
    "RedemptionResponse",
]
