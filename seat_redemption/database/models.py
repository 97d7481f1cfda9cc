"""SQLAlchemy database models for the redemption engine."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TargetAccount(Base):
    """
    Capacity-bearing accounts in the seat pool.

    ``used_seats`` is only ever changed through conditional updates so it
    never exceeds the seat limit (5, or 6 when demoted).
    """

    __tablename__ = "target_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    used_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_demoted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expire_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    external_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.now, onupdate=datetime.now
    )

    __table_args__ = (
        CheckConstraint("used_seats >= 0", name="non_negative_seats"),
        CheckConstraint(
            "used_seats <= CASE WHEN is_demoted THEN 6 ELSE 5 END", name="seat_limit"
        ),
        Index("idx_target_accounts_allocation", "is_banned", "is_demoted", "used_seats"),
    )

    def __repr__(self) -> str:
        return (
            f"<TargetAccount(id={self.id}, used_seats={self.used_seats}, "
            f"demoted={self.is_demoted}, banned={self.is_banned})>"
        )


class RedemptionCodeRow(Base):
    """
    Single-use redemption codes.

    ``is_redeemed`` flips false to true exactly once, guarded by a
    conditional update. Reservation columns are advisory.
    """

    __tablename__ = "redemption_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    is_redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    redeemed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("target_accounts.id"), nullable=True, index=True
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="common")
    order_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reserved_for_uid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reserved_for_order_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reserved_for_order_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.now, onupdate=datetime.now
    )

    __table_args__ = (
        Index("idx_redemption_codes_pool", "channel", "is_redeemed", "created_at"),
        Index("idx_redemption_codes_reserved_order", "reserved_for_order_no"),
    )

    def __repr__(self) -> str:
        return (
            f"<RedemptionCodeRow(id={self.id}, code={self.code}, "
            f"channel={self.channel}, redeemed={self.is_redeemed})>"
        )


class PaymentOrderRow(Base):
    """
    Payment orders for both gateway flavors.

    The ``action_*`` columns are the idempotence boundary for fulfillment.
    Amounts are stored as two-decimal strings, the way the gateways send them.
    """

    __tablename__ = "payment_orders"

    order_no: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    trade_no: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    buyer_uid: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    buyer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scene: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    pay_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_account_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="common")
    order_type: Mapped[str] = mapped_column(String(32), nullable=False, default="warranty")
    code_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    action_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    action_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    action_result: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    query_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    query_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    query_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notify_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    notify_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refund_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'pending_payment', 'paid', 'refunded', 'expired', 'failed')",
            name="valid_order_status",
        ),
        CheckConstraint("kind IN ('credit', 'purchase')", name="valid_order_kind"),
        Index("idx_payment_orders_buyer_status", "buyer_uid", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentOrderRow(order_no={self.order_no}, kind={self.kind}, "
            f"amount={self.amount}, status={self.status})>"
        )


class OrderEvent(Base):
    """
    Order audit trail.

    One row per state transition or notable event; never updated.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_no: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self) -> str:
        return f"<OrderEvent(id={self.id}, order_no={self.order_no}, type={self.event_type})>"
