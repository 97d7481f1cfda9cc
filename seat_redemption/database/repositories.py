"""
Store adapters.

Each repository wraps one ``AsyncSession`` and returns the typed records from
``seat_redemption.core.records``. Every mutation that guards an invariant is
a conditional UPDATE whose rowcount tells the caller whether it won.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from seat_redemption.core.records import (
    BASE_SEAT_LIMIT,
    DEMOTED_SEAT_LIMIT,
    ActionRecord,
    ActionStatus,
    Channel,
    OrderKind,
    OrderStatus,
    OrderType,
    PaymentOrder,
    RedemptionCode,
    Reservation,
    TargetResource,
)
from seat_redemption.database.models import (
    OrderEvent,
    PaymentOrderRow,
    RedemptionCodeRow,
    TargetAccount,
)

_seat_limit = case(
    (TargetAccount.is_demoted.is_(True), DEMOTED_SEAT_LIMIT),
    else_=BASE_SEAT_LIMIT,
)


def _blank(column: Any) -> Any:
    return or_(column.is_(None), column == "")


def to_resource(row: TargetAccount) -> TargetResource:
    return TargetResource(
        id=row.id,
        email=row.email,
        used_seats=int(row.used_seats or 0),
        is_demoted=bool(row.is_demoted),
        is_open=bool(row.is_open),
        is_banned=bool(row.is_banned),
        expire_at=row.expire_at,
        external_account_id=row.external_account_id,
    )


def to_code(row: RedemptionCodeRow) -> RedemptionCode:
    reservation = None
    if row.reserved_for_uid or row.reserved_for_order_no:
        reservation = Reservation(
            holder_uid=row.reserved_for_uid or None,
            order_no=row.reserved_for_order_no or None,
            order_email=row.reserved_for_order_email or None,
            reserved_at=row.reserved_at,
        )
    return RedemptionCode(
        id=row.id,
        code=row.code,
        is_redeemed=bool(row.is_redeemed),
        channel=Channel.normalize(row.channel),
        redeemed_at=row.redeemed_at,
        redeemed_by=row.redeemed_by,
        resource_id=row.account_id,
        order_type=OrderType.normalize(row.order_type) if row.order_type else None,
        reservation=reservation,
        created_at=row.created_at,
    )


def to_order(row: PaymentOrderRow) -> PaymentOrder:
    action_status = ActionStatus(row.action_status) if row.action_status else None
    return PaymentOrder(
        order_no=row.order_no,
        kind=OrderKind(row.kind),
        buyer_uid=row.buyer_uid,
        buyer_email=row.buyer_email,
        amount=Decimal(row.amount),
        status=OrderStatus(row.status),
        scene=row.scene,
        title=row.title,
        channel=Channel.normalize(row.channel),
        order_type=OrderType.normalize(row.order_type),
        trade_no=row.trade_no or None,
        pay_url=row.pay_url,
        target_resource_id=row.target_account_id,
        code_id=row.code_id,
        code=row.code,
        action=ActionRecord(
            status=action_status,
            message=row.action_message,
            payload=row.action_payload,
            result=row.action_result,
        ),
        query_payload=row.query_payload,
        query_at=row.query_at,
        query_status=row.query_status,
        notify_payload=row.notify_payload,
        notify_at=row.notify_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        paid_at=row.paid_at,
        refunded_at=row.refunded_at,
        refund_message=row.refund_message,
    )


class AccountRepository:
    """Target resources and their seat counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, resource_id: int) -> Optional[TargetResource]:
        row = await self.session.get(TargetAccount, resource_id, populate_existing=True)
        return to_resource(row) if row else None

    async def add(
        self,
        email: str,
        used_seats: int = 0,
        is_demoted: bool = False,
        is_open: bool = True,
        is_banned: bool = False,
        expire_at: Optional[datetime] = None,
        external_account_id: Optional[str] = None,
    ) -> TargetResource:
        row = TargetAccount(
            email=email,
            used_seats=used_seats,
            is_demoted=is_demoted,
            is_open=is_open,
            is_banned=is_banned,
            expire_at=expire_at,
            external_account_id=external_account_id,
        )
        self.session.add(row)
        await self.session.flush()
        return to_resource(row)

    async def list_with_free_seats(self, require_demoted: Optional[bool] = None) -> List[TargetResource]:
        """Unbanned resources below their seat limit, optionally filtered by tier."""
        stmt = select(TargetAccount).where(
            TargetAccount.is_banned.is_(False),
            TargetAccount.used_seats < _seat_limit,
        )
        if require_demoted is not None:
            stmt = stmt.where(TargetAccount.is_demoted.is_(require_demoted))
        result = await self.session.execute(stmt.order_by(TargetAccount.id))
        return [to_resource(row) for row in result.scalars()]

    async def list_all(self) -> List[TargetResource]:
        result = await self.session.execute(select(TargetAccount).order_by(TargetAccount.id))
        return [to_resource(row) for row in result.scalars()]

    async def claim_seat(self, resource_id: int) -> bool:
        """Increment ``used_seats`` only while the resource is unbanned and below its limit."""
        stmt = (
            update(TargetAccount)
            .where(
                TargetAccount.id == resource_id,
                TargetAccount.is_banned.is_(False),
                TargetAccount.used_seats < _seat_limit,
            )
            .values(used_seats=TargetAccount.used_seats + 1, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_seat(self, resource_id: int) -> bool:
        stmt = (
            update(TargetAccount)
            .where(TargetAccount.id == resource_id, TargetAccount.used_seats > 0)
            .values(used_seats=TargetAccount.used_seats - 1, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_used_seats(self, resource_id: int, used_seats: int, expected: Optional[int] = None) -> bool:
        """Overwrite the counter; with ``expected``, only if it still holds that value."""
        stmt = update(TargetAccount).where(TargetAccount.id == resource_id)
        if expected is not None:
            stmt = stmt.where(TargetAccount.used_seats == expected)
        stmt = stmt.values(used_seats=used_seats, updated_at=datetime.now()).execution_options(
            synchronize_session=False
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class CodeRepository:
    """Redemption codes, their reservations and pool queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_code(self, code: str) -> Optional[RedemptionCode]:
        result = await self.session.execute(
            select(RedemptionCodeRow)
            .where(RedemptionCodeRow.code == code)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return to_code(row) if row else None

    async def get(self, code_id: int) -> Optional[RedemptionCode]:
        row = await self.session.get(RedemptionCodeRow, code_id, populate_existing=True)
        return to_code(row) if row else None

    async def add(
        self,
        code: str,
        channel: Channel = Channel.COMMON,
        resource_id: Optional[int] = None,
        order_type: Optional[OrderType] = None,
        created_at: Optional[datetime] = None,
    ) -> RedemptionCode:
        now = created_at or datetime.now()
        row = RedemptionCodeRow(
            code=code,
            channel=Channel.normalize(channel).value,
            account_id=resource_id,
            order_type=order_type.value if order_type else None,
            is_redeemed=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return to_code(row)

    async def mark_redeemed(
        self,
        code_id: int,
        redeemed_by: str,
        channel: Channel,
        order_type: OrderType,
        redeemed_at: datetime,
    ) -> bool:
        """Flip ``is_redeemed`` false to true; returns False if someone else already did."""
        stmt = (
            update(RedemptionCodeRow)
            .where(RedemptionCodeRow.id == code_id, RedemptionCodeRow.is_redeemed.is_(False))
            .values(
                is_redeemed=True,
                redeemed_at=redeemed_at,
                redeemed_by=redeemed_by,
                channel=channel.value,
                order_type=order_type.value,
                updated_at=redeemed_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    def _available(self, channel: Channel) -> List[Any]:
        return [
            RedemptionCodeRow.channel == channel.value,
            RedemptionCodeRow.is_redeemed.is_(False),
            _blank(RedemptionCodeRow.reserved_for_uid),
            _blank(RedemptionCodeRow.reserved_for_order_no),
        ]

    async def find_pool_candidate(
        self, channel: Channel, created_from: datetime, created_before: datetime
    ) -> Optional[RedemptionCode]:
        """
        Oldest free code of ``channel`` created inside the window.

        Codes bound to a demoted or banned resource are skipped.
        """
        stmt = (
            select(RedemptionCodeRow)
            .outerjoin(TargetAccount, TargetAccount.id == RedemptionCodeRow.account_id)
            .where(
                *self._available(channel),
                RedemptionCodeRow.created_at >= created_from,
                RedemptionCodeRow.created_at < created_before,
                or_(
                    RedemptionCodeRow.account_id.is_(None),
                    and_(TargetAccount.is_demoted.is_(False), TargetAccount.is_banned.is_(False)),
                ),
            )
            .order_by(RedemptionCodeRow.created_at.asc(), RedemptionCodeRow.id.asc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return to_code(row) if row else None

    async def pool_stats(
        self, channel: Channel, created_from: datetime, created_before: datetime
    ) -> Tuple[int, int, int]:
        """Return ``(all_total, window_total, window_unused)`` for a channel."""
        in_window = and_(
            RedemptionCodeRow.created_at >= created_from,
            RedemptionCodeRow.created_at < created_before,
        )
        stmt = select(
            func.count(RedemptionCodeRow.id),
            func.sum(case((in_window, 1), else_=0)),
            func.sum(case((and_(in_window, RedemptionCodeRow.is_redeemed.is_(False)), 1), else_=0)),
        ).where(RedemptionCodeRow.channel == channel.value)
        total, window_total, window_unused = (await self.session.execute(stmt)).one()
        return int(total or 0), int(window_total or 0), int(window_unused or 0)

    async def find_reservable(
        self, channel: Channel, resource_id: Optional[int] = None
    ) -> Optional[RedemptionCode]:
        """Oldest free code for a new order, bound to ``resource_id`` when given."""
        conditions = self._available(channel)
        if resource_id is not None:
            conditions.append(RedemptionCodeRow.account_id == resource_id)
        else:
            conditions.append(RedemptionCodeRow.account_id.is_(None))
        stmt = (
            select(RedemptionCodeRow)
            .where(*conditions)
            .order_by(RedemptionCodeRow.created_at.asc(), RedemptionCodeRow.id.asc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return to_code(row) if row else None

    async def reserve(
        self,
        code_id: int,
        holder_uid: str,
        order_no: str,
        order_email: Optional[str],
        reserved_at: datetime,
    ) -> bool:
        stmt = (
            update(RedemptionCodeRow)
            .where(
                RedemptionCodeRow.id == code_id,
                RedemptionCodeRow.is_redeemed.is_(False),
                _blank(RedemptionCodeRow.reserved_for_order_no),
            )
            .values(
                reserved_for_uid=holder_uid,
                reserved_for_order_no=order_no,
                reserved_for_order_email=order_email,
                reserved_at=reserved_at,
                updated_at=reserved_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def clear_reservation(self, order_no: str) -> int:
        """Drop the reservation of an order on codes that were never consumed."""
        stmt = (
            update(RedemptionCodeRow)
            .where(
                RedemptionCodeRow.reserved_for_order_no == order_no,
                RedemptionCodeRow.is_redeemed.is_(False),
            )
            .values(
                reserved_for_uid=None,
                reserved_for_order_no=None,
                reserved_for_order_email=None,
                reserved_at=None,
                updated_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def list(
        self,
        channel: Optional[Channel] = None,
        redeemed: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[RedemptionCode]:
        stmt = select(RedemptionCodeRow)
        if channel is not None:
            stmt = stmt.where(RedemptionCodeRow.channel == channel.value)
        if redeemed is not None:
            stmt = stmt.where(RedemptionCodeRow.is_redeemed.is_(redeemed))
        stmt = stmt.order_by(RedemptionCodeRow.created_at.desc(), RedemptionCodeRow.id.desc())
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return [to_code(row) for row in result.scalars()]


class OrderRepository:
    """Payment orders and their audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_no: str) -> Optional[PaymentOrder]:
        row = await self.session.get(PaymentOrderRow, order_no, populate_existing=True)
        return to_order(row) if row else None

    async def find_by_trade_no(self, trade_no: str, kind: Optional[OrderKind] = None) -> Optional[PaymentOrder]:
        stmt = select(PaymentOrderRow).where(PaymentOrderRow.trade_no == trade_no)
        if kind is not None:
            stmt = stmt.where(PaymentOrderRow.kind == kind.value)
        stmt = stmt.order_by(PaymentOrderRow.created_at.desc()).limit(1)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return to_order(row) if row else None

    async def insert(self, **values: Any) -> PaymentOrder:
        row = PaymentOrderRow(**values)
        self.session.add(row)
        await self.session.flush()
        return to_order(row)

    async def update(self, order_no: str, **values: Any) -> bool:
        stmt = (
            update(PaymentOrderRow)
            .where(PaymentOrderRow.order_no == order_no)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        order_no: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        **values: Any,
    ) -> bool:
        """Move an order to ``to_status`` only if it is currently in ``from_statuses``."""
        stmt = (
            update(PaymentOrderRow)
            .where(
                PaymentOrderRow.order_no == order_no,
                PaymentOrderRow.status.in_([status.value for status in from_statuses]),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count_created_since(self, since: datetime, buyer_uid: Optional[str] = None) -> int:
        """Orders created since ``since`` that still count against the daily caps."""
        stmt = select(func.count(PaymentOrderRow.order_no)).where(
            PaymentOrderRow.created_at >= since,
            PaymentOrderRow.status.notin_([OrderStatus.EXPIRED.value, OrderStatus.FAILED.value]),
        )
        if buyer_uid is not None:
            stmt = stmt.where(PaymentOrderRow.buyer_uid == buyer_uid)
        return int((await self.session.execute(stmt)).scalar_one() or 0)

    async def find_reusable(
        self,
        kind: OrderKind,
        buyer_uid: str,
        target_resource_id: Optional[int],
        buyer_email: Optional[str],
        created_after: datetime,
    ) -> Optional[PaymentOrder]:
        stmt = select(PaymentOrderRow).where(
            PaymentOrderRow.kind == kind.value,
            PaymentOrderRow.buyer_uid == buyer_uid,
            PaymentOrderRow.status.in_(
                [OrderStatus.CREATED.value, OrderStatus.PENDING_PAYMENT.value]
            ),
            PaymentOrderRow.created_at >= created_after,
        )
        if target_resource_id is None:
            stmt = stmt.where(PaymentOrderRow.target_account_id.is_(None))
        else:
            stmt = stmt.where(PaymentOrderRow.target_account_id == target_resource_id)
        if buyer_email is None:
            stmt = stmt.where(PaymentOrderRow.buyer_email.is_(None))
        else:
            stmt = stmt.where(PaymentOrderRow.buyer_email == buyer_email)
        stmt = stmt.order_by(PaymentOrderRow.created_at.desc()).limit(1)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return to_order(row) if row else None

    async def list_open_before(self, cutoff: datetime, limit: int = 200) -> List[PaymentOrder]:
        stmt = (
            select(PaymentOrderRow)
            .where(
                PaymentOrderRow.status.in_(
                    [OrderStatus.CREATED.value, OrderStatus.PENDING_PAYMENT.value]
                ),
                PaymentOrderRow.created_at < cutoff,
            )
            .order_by(PaymentOrderRow.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order(row) for row in result.scalars()]

    async def list_pending(self, limit: int = 200) -> List[PaymentOrder]:
        stmt = (
            select(PaymentOrderRow)
            .where(PaymentOrderRow.status == OrderStatus.PENDING_PAYMENT.value)
            .order_by(PaymentOrderRow.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order(row) for row in result.scalars()]

    async def list_unfulfilled_paid(self, stale_before: datetime, limit: int = 100) -> List[PaymentOrder]:
        """
        Paid orders whose fulfillment failed, never started, or has been
        ``processing`` since before ``stale_before``.
        """
        stmt = (
            select(PaymentOrderRow)
            .where(
                PaymentOrderRow.status == OrderStatus.PAID.value,
                or_(
                    PaymentOrderRow.action_status.is_(None),
                    PaymentOrderRow.action_status == ActionStatus.FAILED.value,
                    and_(
                        PaymentOrderRow.action_status == ActionStatus.PROCESSING.value,
                        PaymentOrderRow.updated_at < stale_before,
                    ),
                ),
            )
            .order_by(PaymentOrderRow.paid_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order(row) for row in result.scalars()]

    async def list(
        self,
        kind: Optional[OrderKind] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PaymentOrder]:
        stmt = select(PaymentOrderRow)
        if kind is not None:
            stmt = stmt.where(PaymentOrderRow.kind == kind.value)
        if status is not None:
            stmt = stmt.where(PaymentOrderRow.status == status.value)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    PaymentOrderRow.order_no.like(pattern),
                    PaymentOrderRow.trade_no.like(pattern),
                    PaymentOrderRow.buyer_uid.like(pattern),
                    PaymentOrderRow.buyer_email.like(pattern),
                )
            )
        stmt = stmt.order_by(PaymentOrderRow.created_at.desc())
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return [to_order(row) for row in result.scalars()]

    async def amounts_by_status(self, kind: Optional[OrderKind] = None) -> Dict[str, List[str]]:
        """Raw amounts of paid and refunded orders, for balance reporting."""
        stmt = select(PaymentOrderRow.status, PaymentOrderRow.amount).where(
            PaymentOrderRow.status.in_([OrderStatus.PAID.value, OrderStatus.REFUNDED.value])
        )
        if kind is not None:
            stmt = stmt.where(PaymentOrderRow.kind == kind.value)
        grouped: Dict[str, List[str]] = {OrderStatus.PAID.value: [], OrderStatus.REFUNDED.value: []}
        for status, amount in (await self.session.execute(stmt)).all():
            grouped[status].append(amount)
        return grouped

    async def add_event(self, order_no: str, event_type: str, event_data: Dict[str, Any]) -> None:
        self.session.add(
            OrderEvent(
                order_no=order_no,
                event_type=event_type,
                event_data=event_data,
                created_at=datetime.now(),
            )
        )
