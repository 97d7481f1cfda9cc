"""
Typed records exchanged between the store adapters and the engine.

The engine never touches ORM rows directly; repositories convert every row
into one of the frozen dataclasses below.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

BASE_SEAT_LIMIT = 5
DEMOTED_SEAT_LIMIT = 6


class Channel(str, Enum):
    """Partitions of the code pool."""

    COMMON = "common"
    LINUX_DO = "linux-do"
    XHS = "xhs"
    XIANYU = "xianyu"
    ARTISAN_FLOW = "artisan-flow"

    @classmethod
    def normalize(cls, value: Any) -> "Channel":
        """Unknown or empty values fall back to the common pool."""
        if isinstance(value, cls):
            return value
        raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        return cls.COMMON


# Channels allowed to borrow codes from the common pool.
COMMON_FALLBACK_CHANNELS = frozenset({Channel.XHS, Channel.XIANYU})


class OrderType(str, Enum):
    WARRANTY = "warranty"
    NO_WARRANTY = "no_warranty"
    ANTI_BAN = "anti_ban"

    @classmethod
    def normalize(cls, value: Any) -> "OrderType":
        if isinstance(value, cls):
            return value
        raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        return cls.WARRANTY


class OrderKind(str, Enum):
    """Gateway-hosted credit orders vs. classic QR/link purchase orders."""

    CREDIT = "credit"
    PURCHASE = "purchase"


class OrderStatus(str, Enum):
    CREATED = "created"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.REFUNDED, OrderStatus.EXPIRED, OrderStatus.FAILED})
OPEN_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT})


class ActionStatus(str, Enum):
    PROCESSING = "processing"
    FULFILLED = "fulfilled"
    FAILED = "failed"


@dataclass(frozen=True)
class TargetResource:
    """A capacity-bearing account in the shared pool."""

    id: int
    email: str
    used_seats: int
    is_demoted: bool = False
    is_open: bool = True
    is_banned: bool = False
    expire_at: Optional[datetime] = None
    external_account_id: Optional[str] = None

    @property
    def seat_limit(self) -> int:
        return DEMOTED_SEAT_LIMIT if self.is_demoted else BASE_SEAT_LIMIT

    @property
    def free_seats(self) -> int:
        return max(0, self.seat_limit - self.used_seats)

    @property
    def has_free_seat(self) -> bool:
        return not self.is_banned and self.used_seats < self.seat_limit


@dataclass(frozen=True)
class Reservation:
    """Advisory hold on a code; only enforced when the code is consumed."""

    holder_uid: Optional[str]
    order_no: Optional[str]
    order_email: Optional[str]
    reserved_at: Optional[datetime]


@dataclass(frozen=True)
class RedemptionCode:
    id: int
    code: str
    is_redeemed: bool
    channel: Channel
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    resource_id: Optional[int] = None
    order_type: Optional[OrderType] = None
    reservation: Optional[Reservation] = None
    created_at: Optional[datetime] = None

    @property
    def is_reserved(self) -> bool:
        return self.reservation is not None


@dataclass(frozen=True)
class ActionRecord:
    """Idempotence marker for the fulfillment side-effect of an order."""

    status: Optional[ActionStatus] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_fulfilled(self) -> bool:
        return self.status is ActionStatus.FULFILLED


@dataclass(frozen=True)
class PaymentOrder:
    order_no: str
    kind: OrderKind
    buyer_uid: str
    amount: Decimal
    status: OrderStatus
    scene: str
    title: str
    channel: Channel = Channel.COMMON
    buyer_email: Optional[str] = None
    order_type: OrderType = OrderType.WARRANTY
    trade_no: Optional[str] = None
    pay_url: Optional[str] = None
    target_resource_id: Optional[int] = None
    code_id: Optional[int] = None
    code: Optional[str] = None
    action: ActionRecord = ActionRecord()
    query_payload: Optional[Dict[str, Any]] = None
    query_at: Optional[datetime] = None
    query_status: Optional[int] = None
    notify_payload: Optional[Dict[str, Any]] = None
    notify_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_message: Optional[str] = None

    @property
    def is_refunded(self) -> bool:
        return self.status is OrderStatus.REFUNDED or self.refunded_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def money(self) -> str:
        return f"{self.amount:.2f}"

    def to_public_dict(self) -> Dict[str, Any]:
        """Buyer-visible projection of the order."""
        return {
            "order_no": self.order_no,
            "kind": self.kind.value,
            "trade_no": self.trade_no,
            "scene": self.scene,
            "title": self.title,
            "amount": self.money,
            "status": self.status.value,
            "pay_url": self.pay_url,
            "target_resource_id": self.target_resource_id,
            "action_status": self.action.status.value if self.action.status else None,
            "action_message": self.action.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "refund_message": self.refund_message,
        }
