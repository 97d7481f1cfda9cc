"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from seat_redemption.core.records import Channel, OrderKind, OrderType


class RedeemRequest(BaseModel):
    """Request schema for redeeming a code."""

    code: str = Field(..., description="Redemption code (XXXX-XXXX-XXXX)")
    email: str = Field(..., description="Email the seat is issued to")
    channel: str = Field(default=Channel.COMMON.value, description="Sales channel of the code")
    order_type: Optional[OrderType] = Field(default=None, description="Warranty tier override")
    redeemer_uid: Optional[str] = Field(default=None, description="Buyer uid (required for linux-do)")

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"code": "ABCD-EFGH-JKLM", "email": "buyer@example.com", "channel": "common"},
            ]
        }
    }


class PoolRedeemRequest(BaseModel):
    """Request schema for drawing a code from a channel's pool."""

    email: str = Field(..., description="Email the seat is issued to")
    channel: str = Field(..., description="Pool to draw from")
    order_type: Optional[OrderType] = Field(default=None, description="Warranty tier")
    redeemer_uid: Optional[str] = Field(default=None, description="Buyer uid (required for linux-do)")
    strict_today: bool = Field(default=False, description="Only draw codes created today")


class RedemptionResponse(BaseModel):
    """Fulfillment summary of a redemption."""

    code: str
    channel: str
    order_type: str
    resource_id: int
    resource_email: str
    used_seats: int
    seat_limit: int
    redeemed_by: str
    redeemed_at: str
    invite_sent: bool
    invite_detail: Optional[str] = None
    invite_error: Optional[str] = None
    degraded: bool = Field(..., description="Seat claimed but the invite did not go through")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    kind: OrderKind = Field(..., description="credit (hosted) or purchase (QR/link)")
    buyer_uid: str = Field(..., min_length=1, description="Buyer identity")
    buyer_email: str = Field(..., description="Email the seat will be issued to")
    amount: Decimal = Field(..., description="Amount with at most two decimals")
    scene: Optional[str] = Field(default=None, description="Product scene")
    title: Optional[str] = Field(default=None, description="Title on the pay page")
    channel: str = Field(default=Channel.COMMON.value, description="Pool the reserved code comes from")
    order_type: Optional[OrderType] = Field(default=None, description="Warranty tier")
    target_resource_id: Optional[int] = Field(default=None, description="Resource picked by the buyer")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "kind": "credit",
                    "buyer_uid": "1024",
                    "buyer_email": "buyer@example.com",
                    "amount": "10.00",
                    "scene": "open_accounts_board",
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Buyer-visible view of an order."""

    order_no: str
    kind: str
    trade_no: Optional[str] = None
    scene: str
    title: str
    amount: str
    status: str
    pay_url: Optional[str] = None
    target_resource_id: Optional[int] = None
    action_status: Optional[str] = None
    action_message: Optional[str] = None
    created_at: Optional[str] = None
    paid_at: Optional[str] = None
    refunded_at: Optional[str] = None
    refund_message: Optional[str] = None


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order: OrderResponse
    pay_request: Dict[str, Any] = Field(..., description="Signed form for the gateway pay page")
    reused: bool = Field(default=False, description="An open order was returned instead of a new one")


class AdminOrderResponse(OrderResponse):
    """Order view with the internal reconciliation fields."""

    buyer_uid: str
    buyer_email: Optional[str] = None
    channel: str
    order_type: str
    code: Optional[str] = None
    action_result: Optional[Dict[str, Any]] = None
    query_status: Optional[int] = None
    query_at: Optional[str] = None
    notify_at: Optional[str] = None
    updated_at: Optional[str] = None


class OrderListResponse(BaseModel):
    items: List[AdminOrderResponse]
    limit: int
    offset: int


class CodeResponse(BaseModel):
    id: int
    code: str
    channel: str
    is_redeemed: bool
    redeemed_at: Optional[str] = None
    redeemed_by: Optional[str] = None
    resource_id: Optional[int] = None
    order_type: Optional[str] = None
    reserved_for_uid: Optional[str] = None
    reserved_for_order_no: Optional[str] = None
    created_at: Optional[str] = None


class CodeListResponse(BaseModel):
    items: List[CodeResponse]
    limit: int
    offset: int


class BalanceResponse(BaseModel):
    """Paid/refunded totals formatted to two decimals."""

    kind: Optional[str] = None
    paid_count: int
    refunded_count: int
    paid_total: str
    refunded_total: str
    net: str


class ResourceResponse(BaseModel):
    id: int
    email: str
    used_seats: int
    seat_limit: int
    is_demoted: bool
    is_open: bool
    is_banned: bool


class ResourceUsageRequest(BaseModel):
    used_seats: int = Field(..., ge=0, description="Seat count reported by the membership platform")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
