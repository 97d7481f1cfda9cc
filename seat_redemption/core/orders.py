"""
Order State Machine.

Lifecycle of credit and purchase orders:

    created -> pending_payment -> paid -> refunded
    created / pending_payment -> expired | failed

Terminal states never change again. Every transition runs under
``order:<order_no>`` and is written with a conditional UPDATE on the current
status. Entering ``paid`` triggers fulfillment exactly once, gated by the
order's action record.
"""
import random
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seat_redemption.config import EngineConfig
from seat_redemption.core.allocator import (
    EMAIL_PATTERN,
    RedemptionAllocator,
    RedemptionRequest,
    normalize_email,
    redeemer_identity,
)
from seat_redemption.core.exceptions import (
    CapacityExhaustedError,
    ConflictError,
    EngineError,
    NotFoundError,
    ReconciliationMismatchError,
    UpstreamGatewayError,
    ValidationError,
)
from seat_redemption.core.locks import LockManager, buyer_key, order_key
from seat_redemption.core.records import (
    OPEN_STATUSES,
    ActionStatus,
    Channel,
    OrderKind,
    OrderStatus,
    OrderType,
    PaymentOrder,
)
from seat_redemption.core.signing import parse_money
from seat_redemption.database.repositories import AccountRepository, CodeRepository, OrderRepository
from seat_redemption.integrations.gateway import PAID_STATUS, GatewayClient
from seat_redemption.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset(
        {OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED}
    ),
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

# Orders in these states are never sent to the gateway again.
NOT_QUERYABLE = frozenset(
    {OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED, OrderStatus.REFUNDED}
)

ORDER_NO_PREFIX = {OrderKind.CREDIT: "C", OrderKind.PURCHASE: "P"}
STALE_PROCESSING_MINUTES = 10

_GATEWAY_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y/%m/%d %H:%M:%S")
_PLAIN_AMOUNT = re.compile(r"^\d+(\.\d{1,2})?$")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def sources_for(target: OrderStatus) -> List[OrderStatus]:
    """Statuses from which ``target`` is reachable."""
    return [status for status, targets in TRANSITIONS.items() if target in targets]


def parse_gateway_time(value: Any) -> Optional[datetime]:
    """Parse a gateway timestamp (local time string or epoch seconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text))
    for fmt in _GATEWAY_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _amount_has_two_decimals(value: Any) -> bool:
    """Plain ``123`` / ``123.4`` / ``123.45`` only; no signs or exponents."""
    return bool(_PLAIN_AMOUNT.match(str(value).strip()))


@dataclass(frozen=True)
class OrderCreation:
    order: PaymentOrder
    pay_request: Dict[str, Any]
    reused: bool = False


class OrderStateMachine:
    """
    Creates orders and drives every status change after creation.

    Entry points into ``paid``: gateway notification (through the webhook
    reconciler), active query, and manual sync. Refund is admin-initiated.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        allocator: RedemptionAllocator,
        gateways: Mapping[OrderKind, GatewayClient],
        config: EngineConfig,
        public_base_url: str = "",
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self._allocator = allocator
        self._gateways = dict(gateways)
        self._config = config
        self._public_base_url = public_base_url.rstrip("/")
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    @property
    def config(self) -> EngineConfig:
        return self._config

    def gateway(self, kind: OrderKind) -> GatewayClient:
        return self._gateways[kind]

    def notify_url(self, kind: OrderKind) -> str:
        return f"{self._public_base_url}/webhooks/{kind.value}/notify"

    def _new_order_no(self, kind: OrderKind, now: datetime) -> str:
        suffix = "".join(self._rng.choice("0123456789") for _ in range(6))
        return f"{ORDER_NO_PREFIX[kind]}{now.strftime('%Y%m%d%H%M%S')}{suffix}"

    async def _load(self, order_no: str) -> Optional[PaymentOrder]:
        async with self._session_factory() as session:
            return await OrderRepository(session).get(order_no)

    async def _require(self, order_no: str) -> PaymentOrder:
        order = await self._load(order_no)
        if order is None:
            raise NotFoundError("Order not found", payload={"order_no": order_no})
        return order

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        kind: OrderKind,
        buyer_uid: str,
        amount: Any,
        buyer_email: str,
        scene: Optional[str] = None,
        title: Optional[str] = None,
        channel: Channel = Channel.COMMON,
        order_type: Optional[OrderType] = None,
        target_resource_id: Optional[int] = None,
    ) -> OrderCreation:
        """
        Create (or reuse) an order, reserve a code for it and issue a pay request.

        Args:
            kind: Credit or purchase flavor
            buyer_uid: Buyer identity
            amount: Positive amount with at most two decimals
            buyer_email: Email the seat will be issued to
            scene: Product descriptor (credit orders default to the board scene)
            title: Title shown on the pay page
            channel: Pool the reserved code comes from
            order_type: Warranty tier of the order
            target_resource_id: Resource the buyer picked, if any

        Returns:
            OrderCreation: The order in ``pending_payment`` plus the signed pay request

        Raises:
            ValidationError: Bad amount, buyer or email
            NotFoundError: Unknown target resource
            CapacityExhaustedError: Resource full, daily caps reached, or no code to reserve
            UpstreamGatewayError: The gateway for ``kind`` is not configured
        """
        kind = OrderKind(kind)
        uid = str(buyer_uid or "").strip()
        if not uid:
            raise ValidationError("Buyer uid is required")
        money = parse_money(amount)
        if money is None or not _amount_has_two_decimals(amount):
            raise ValidationError("Amount must be positive with at most two decimals")
        email = normalize_email(buyer_email)
        if not email or not EMAIL_PATTERN.match(email):
            raise ValidationError("A valid buyer email is required")
        gateway = self._gateways[kind]
        if not gateway.is_configured:
            raise UpstreamGatewayError(
                f"{kind.value} gateway is not configured", payload={"error_code": "missing_config"}
            )
        channel = Channel.normalize(channel)
        resolved_type = OrderType.normalize(order_type)
        scene = (scene or (self._config.board_scene if kind is OrderKind.CREDIT else "purchase")).strip()
        title = (title or "Seat order").strip()

        if target_resource_id is not None:
            async with self._session_factory() as session:
                resource = await AccountRepository(session).get(target_resource_id)
            if resource is None:
                raise NotFoundError("Target resource not found", payload={"resource_id": target_resource_id})
            if not resource.has_free_seat:
                raise CapacityExhaustedError(
                    "Target resource is full", status_code=409, payload={"error_code": "resource_full"}
                )

        keys = [buyer_key(uid), self._allocator.reservation_lock_key(channel, target_resource_id)]
        async with self._locks.hold(*keys):
            now = self._clock()
            fresh_after = now - timedelta(minutes=self._config.order_expire_minutes)
            async with self._session_factory() as session, session.begin():
                orders = OrderRepository(session)
                reusable = await orders.find_reusable(kind, uid, target_resource_id, email, fresh_after)
                reused = reusable is not None and reusable.amount == money
                if reused:
                    logger.info("order_reused", order_no=reusable.order_no, buyer_uid=uid)
                    order = reusable
                else:
                    order = await self._insert_order(
                        session, kind, uid, email, money, scene, title, channel, resolved_type,
                        target_resource_id, now,
                    )

            pay_request = gateway.build_pay_request(
                order.order_no, order.title, order.money, self.notify_url(kind), device=uid
            )
            if order.status is OrderStatus.CREATED or order.pay_url != pay_request["pay_url"]:
                async with self._session_factory() as session, session.begin():
                    orders = OrderRepository(session)
                    if order.status is OrderStatus.CREATED:
                        await orders.transition(
                            order.order_no,
                            [OrderStatus.CREATED],
                            OrderStatus.PENDING_PAYMENT,
                            pay_url=pay_request["pay_url"],
                            updated_at=now,
                        )
                        await orders.add_event(order.order_no, "order_pending_payment", {})
                        metrics.record_transition(kind.value, "created", "pending_payment")
                    else:
                        await orders.update(order.order_no, pay_url=pay_request["pay_url"], updated_at=now)

        order = await self._require(order.order_no)
        return OrderCreation(order=order, pay_request=pay_request, reused=reused)

    async def _insert_order(
        self,
        session: AsyncSession,
        kind: OrderKind,
        uid: str,
        email: str,
        money: Decimal,
        scene: str,
        title: str,
        channel: Channel,
        order_type: OrderType,
        target_resource_id: Optional[int],
        now: datetime,
    ) -> PaymentOrder:
        """Insert a new order after re-checking the daily caps. Caller holds the creation locks."""
        orders = OrderRepository(session)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self._config.daily_order_limit:
            if await orders.count_created_since(day_start) >= self._config.daily_order_limit:
                raise CapacityExhaustedError(
                    "Daily order limit reached", status_code=409, payload={"error_code": "daily_limit"}
                )
        if self._config.buyer_daily_order_limit:
            if await orders.count_created_since(day_start, buyer_uid=uid) >= self._config.buyer_daily_order_limit:
                raise CapacityExhaustedError(
                    "Daily order limit reached for this buyer",
                    status_code=409,
                    payload={"error_code": "buyer_daily_limit"},
                )

        order_no = self._new_order_no(kind, now)
        code = await self._allocator.reserve_code(session, order_no, uid, email, channel, target_resource_id)
        if code is None:
            raise CapacityExhaustedError(
                "No redemption code is available for this order",
                status_code=409,
                payload={"error_code": "no_code"},
            )

        order = await orders.insert(
            order_no=order_no,
            kind=kind.value,
            buyer_uid=uid,
            buyer_email=email,
            scene=scene,
            title=title,
            amount=f"{money:.2f}",
            status=OrderStatus.CREATED.value,
            channel=channel.value,
            order_type=order_type.value,
            target_account_id=target_resource_id,
            code_id=code.id,
            code=code.code,
            action_payload={
                "resource_id": target_resource_id,
                "order_type": order_type.value,
                "order_email": email,
            },
            created_at=now,
            updated_at=now,
        )
        await orders.add_event(order_no, "order_created", {"amount": order.money, "code": code.code})
        logger.info(
            "order_created",
            order_no=order_no,
            kind=kind.value,
            buyer_uid=uid,
            amount=order.money,
            code=code.code,
            resource_id=target_resource_id,
        )
        return order

    # ------------------------------------------------------------------
    # Payment confirmation and fulfillment
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        order_no: str,
        kind: Optional[OrderKind] = None,
        trade_no: Optional[str] = None,
        reported_amount: Any = None,
        paid_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
        source: str = "notify",
    ) -> PaymentOrder:
        """
        Apply a gateway-confirmed payment to an order.

        Idempotent: replays on a paid order only fill in missing snapshot
        fields, and fulfillment runs again only if it never succeeded.

        Raises:
            NotFoundError: Unknown order
            ReconciliationMismatchError: Reported amount differs from the order amount
        """
        async with self._locks.hold(order_key(order_no)):
            return await self._confirm_locked(order_no, kind, trade_no, reported_amount, paid_at, payload, source)

    async def _confirm_locked(
        self,
        order_no: str,
        kind: Optional[OrderKind],
        trade_no: Optional[str],
        reported_amount: Any,
        paid_at: Optional[datetime],
        payload: Optional[Dict[str, Any]],
        source: str,
    ) -> PaymentOrder:
        now = self._clock()
        trade_no = str(trade_no).strip() if trade_no else None
        mismatch: Optional[Decimal] = None
        transitioned_from: Optional[OrderStatus] = None
        needs_fulfillment = False

        async with self._session_factory() as session, session.begin():
            orders = OrderRepository(session)
            order = await orders.get(order_no)
            if order is None:
                raise NotFoundError("Order not found", payload={"order_no": order_no})
            if kind is not None and order.kind is not kind:
                logger.warning("payment_kind_mismatch", order_no=order_no, expected=order.kind.value, got=kind.value)
                return order

            snapshot: Dict[str, Any] = {"updated_at": now}
            if source == "notify" and payload is not None:
                snapshot.update(notify_payload=payload, notify_at=now)

            reported = parse_money(reported_amount)
            if order.is_terminal:
                await orders.update(order_no, **snapshot)
                await orders.add_event(
                    order_no, "payment_after_terminal", {"status": order.status.value, "source": source}
                )
                logger.warning(
                    "payment_for_terminal_order", order_no=order_no, status=order.status.value, source=source
                )
            elif reported is not None and reported != order.amount:
                mismatch = reported
                await orders.update(order_no, refund_message=f"money_mismatch:{reported:.2f}", **snapshot)
                await orders.add_event(
                    order_no,
                    "amount_mismatch",
                    {"expected": order.money, "reported": f"{reported:.2f}", "source": source},
                )
            elif order.status is OrderStatus.PAID:
                values = dict(snapshot)
                if trade_no and not order.trade_no:
                    values["trade_no"] = trade_no
                if order.paid_at is None:
                    values["paid_at"] = paid_at or now
                await orders.update(order_no, **values)
                needs_fulfillment = not order.action.is_fulfilled
                logger.info(
                    "payment_replayed", order_no=order_no, source=source, refulfill=needs_fulfillment
                )
            else:
                moved = await orders.transition(
                    order_no,
                    sources_for(OrderStatus.PAID),
                    OrderStatus.PAID,
                    trade_no=trade_no or order.trade_no,
                    paid_at=paid_at or now,
                    **snapshot,
                )
                if moved:
                    transitioned_from = order.status
                    needs_fulfillment = True
                    await orders.add_event(
                        order_no, "order_paid", {"source": source, "trade_no": trade_no, "from": order.status.value}
                    )

        if mismatch is not None:
            metrics.record_mismatch(order.kind.value)
            logger.error(
                "payment_amount_mismatch",
                order_no=order_no,
                expected=order.money,
                reported=f"{mismatch:.2f}",
                source=source,
            )
            raise ReconciliationMismatchError(
                "Reported amount differs from the order amount",
                payload={"order_no": order_no, "expected": order.money, "reported": f"{mismatch:.2f}"},
            )
        if transitioned_from is not None:
            metrics.record_transition(order.kind.value, transitioned_from.value, OrderStatus.PAID.value)
            logger.info("order_paid", order_no=order_no, trade_no=trade_no, source=source)
        if needs_fulfillment:
            await self._fulfill_locked(order_no)
        return await self._require(order_no)

    async def _fulfill_locked(self, order_no: str) -> PaymentOrder:
        """
        Run the fulfillment side-effect once. Caller holds ``order:<order_no>``.

        Failures are recorded on the action record, never raised.
        """
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            orders = OrderRepository(session)
            order = await orders.get(order_no)
            if order is None or order.status is not OrderStatus.PAID:
                return order
            if order.action.is_fulfilled:
                metrics.record_fulfillment(order.kind.value, "replayed")
                return order
            await orders.update(
                order_no, action_status=ActionStatus.PROCESSING.value, action_message=None, updated_at=now
            )

        outcome: Dict[str, Any]
        try:
            if not order.code:
                raise ConflictError("Order has no reserved redemption code")
            result = await self._allocator.redeem(
                RedemptionRequest(
                    code=order.code,
                    email=order.buyer_email or "",
                    channel=order.channel,
                    order_type=order.order_type,
                    redeemer_uid=order.buyer_uid,
                    skip_format_validation=True,
                )
            )
            outcome = {
                "action_status": ActionStatus.FULFILLED.value,
                "action_message": "fulfilled_degraded" if result.degraded else "fulfilled",
                "action_result": result.to_summary(),
            }
        except EngineError as e:
            recovered = await self._recover_consumed_code(order) if isinstance(e, ConflictError) else None
            if recovered is not None:
                outcome = {
                    "action_status": ActionStatus.FULFILLED.value,
                    "action_message": "fulfilled",
                    "action_result": recovered,
                }
            else:
                logger.error("order_fulfillment_failed", order_no=order_no, kind=e.kind, error=e.message)
                outcome = {"action_status": ActionStatus.FAILED.value, "action_message": e.message}

        async with self._session_factory() as session, session.begin():
            orders = OrderRepository(session)
            await orders.update(order_no, updated_at=self._clock(), **outcome)
            await orders.add_event(order_no, "fulfillment", {"status": outcome["action_status"]})
        metrics.record_fulfillment(order.kind.value, outcome["action_status"])
        logger.info("order_fulfillment_recorded", order_no=order_no, status=outcome["action_status"])
        return await self._require(order_no)

    async def _recover_consumed_code(self, order: PaymentOrder) -> Optional[Dict[str, Any]]:
        """If an earlier attempt consumed the code for this buyer, treat it as done."""
        if not order.code:
            return None
        async with self._session_factory() as session:
            code = await CodeRepository(session).get_by_code(order.code)
        expected = redeemer_identity(order.channel, normalize_email(order.buyer_email), order.buyer_uid)
        if code is None or not code.is_redeemed or code.redeemed_by != expected:
            return None
        logger.info("order_fulfillment_recovered", order_no=order.order_no, code=code.code)
        return {
            "code": code.code,
            "resource_id": code.resource_id,
            "redeemed_by": code.redeemed_by,
            "redeemed_at": code.redeemed_at.isoformat() if code.redeemed_at else None,
            "recovered": True,
        }

    async def retry_fulfillment(self, order_no: str) -> PaymentOrder:
        """
        Re-run fulfillment for a paid order; fulfilled orders just return their stored result.

        Raises:
            NotFoundError: Unknown order
            ConflictError: The order is not paid
        """
        async with self._locks.hold(order_key(order_no)):
            order = await self._require(order_no)
            if order.status is not OrderStatus.PAID:
                raise ConflictError("Only paid orders can be fulfilled", status_code=400)
            if order.action.is_fulfilled:
                return order
            return await self._fulfill_locked(order_no)

    async def retry_unfulfilled(self, limit: int = 100) -> int:
        stale_before = self._clock() - timedelta(minutes=STALE_PROCESSING_MINUTES)
        async with self._session_factory() as session:
            pending = await OrderRepository(session).list_unfulfilled_paid(stale_before, limit)
        fulfilled = 0
        for order in pending:
            try:
                refreshed = await self.retry_fulfillment(order.order_no)
            except EngineError as e:
                logger.warning("fulfillment_retry_skipped", order_no=order.order_no, error=e.message)
                continue
            if refreshed.action.is_fulfilled:
                fulfilled += 1
        return fulfilled

    # ------------------------------------------------------------------
    # Active query
    # ------------------------------------------------------------------

    async def sync_order(self, order_no: str, force: bool = False) -> PaymentOrder:
        """
        Ask the gateway about an open order and apply a confirmed payment.

        Throttled to one query per ``query_min_interval_seconds`` unless
        ``force``; orders past ``pending_payment`` are never queried.

        Raises:
            ValidationError: Active query is disabled
            NotFoundError: Unknown order
            UpstreamGatewayError: The gateway query failed
            ReconciliationMismatchError: The gateway reports a different amount
        """
        if not self._config.server_query_enabled:
            raise ValidationError("Active order query is disabled")
        async with self._locks.hold(order_key(order_no)):
            order = await self._require(order_no)
            if order.status in NOT_QUERYABLE or order.is_refunded:
                return order
            now = self._clock()
            if not force and order.query_at is not None:
                elapsed = (now - order.query_at).total_seconds()
                if elapsed < self._config.query_min_interval_seconds:
                    logger.debug("order_query_throttled", order_no=order_no, elapsed=elapsed)
                    return order

            gateway = self._gateways[order.kind]
            try:
                data = await self._query_gateway(gateway, order)
            except UpstreamGatewayError as e:
                await self._record_query(order_no, {"error": e.message, **e.payload}, None, now)
                raise

            status = _int_or_none(data.get("status"))
            await self._record_query(order_no, data, status, now)
            if status != PAID_STATUS:
                return await self._require(order_no)
            return await self._confirm_locked(
                order_no,
                order.kind,
                data.get("trade_no"),
                data.get("money"),
                parse_gateway_time(data.get("endtime")),
                data,
                "query",
            )

    @staticmethod
    async def _query_gateway(gateway: GatewayClient, order: PaymentOrder) -> Dict[str, Any]:
        if order.trade_no:
            return await gateway.query_order(out_trade_no=order.order_no, trade_no=order.trade_no)
        try:
            return await gateway.query_order(out_trade_no=order.order_no)
        except UpstreamGatewayError:
            return await gateway.query_order(out_trade_no=order.order_no, trade_no=order.order_no)

    async def _record_query(
        self, order_no: str, payload: Dict[str, Any], status: Optional[int], now: datetime
    ) -> None:
        async with self._session_factory() as session, session.begin():
            await OrderRepository(session).update(
                order_no, query_payload=payload, query_at=now, query_status=status, updated_at=now
            )

    async def get_order(
        self, order_no: str, buyer_uid: Optional[str] = None, force_sync: bool = False
    ) -> PaymentOrder:
        """
        Fetch an order for its buyer, refreshing open orders from the gateway when allowed.

        Raises:
            NotFoundError: Unknown order
            ConflictError: The order belongs to another buyer
        """
        order = await self._require(order_no)
        if buyer_uid is not None and order.buyer_uid != str(buyer_uid).strip():
            raise ConflictError("Order does not belong to this buyer")
        if self._config.server_query_enabled and order.status in OPEN_STATUSES:
            try:
                order = await self.sync_order(order_no, force=force_sync)
            except (UpstreamGatewayError, ReconciliationMismatchError) as e:
                logger.warning("order_sync_on_read_failed", order_no=order_no, kind=e.kind, error=e.message)
                order = await self._require(order_no)
        return order

    # ------------------------------------------------------------------
    # Refund, expiry and failure
    # ------------------------------------------------------------------

    async def refund_order(self, order_no: str) -> PaymentOrder:
        """
        Refund a paid order through its gateway.

        Raises:
            ValidationError: Server-side refund disabled, or no trade number
            NotFoundError: Unknown order
            ConflictError: Already refunded or not paid
            UpstreamGatewayError: The gateway refused or failed; the reason is stored on the order
        """
        if not self._config.server_refund_enabled:
            raise ValidationError("Server-side refund is disabled")
        async with self._locks.hold(order_key(order_no)):
            order = await self._require(order_no)
            if order.is_refunded:
                raise ConflictError("Order was already refunded", status_code=400)
            if order.status is not OrderStatus.PAID:
                raise ConflictError("Only paid orders can be refunded", status_code=400)
            if not order.trade_no:
                raise ValidationError("Order has no trade_no to refund")

            gateway = self._gateways[order.kind]
            logger.info("order_refund_started", order_no=order_no, trade_no=order.trade_no, amount=order.money)
            try:
                body = await gateway.refund_order(order.trade_no, order_no, order.money)
            except UpstreamGatewayError as e:
                async with self._session_factory() as session, session.begin():
                    orders = OrderRepository(session)
                    await orders.update(order_no, refund_message=e.message, updated_at=self._clock())
                    await orders.add_event(order_no, "refund_failed", {"error": e.message, **e.payload})
                logger.warning("order_refund_failed", order_no=order_no, error=e.message)
                raise

            now = self._clock()
            message = str(body.get("msg") or "refunded")
            async with self._session_factory() as session, session.begin():
                orders = OrderRepository(session)
                await orders.transition(
                    order_no,
                    sources_for(OrderStatus.REFUNDED),
                    OrderStatus.REFUNDED,
                    refunded_at=now,
                    refund_message=message,
                    updated_at=now,
                )
                await self._allocator.release_reservation(session, order_no)
                await orders.add_event(order_no, "order_refunded", {"message": message})
            metrics.record_transition(order.kind.value, OrderStatus.PAID.value, OrderStatus.REFUNDED.value)
            logger.info("order_refunded", order_no=order_no, message=message)
            return await self._require(order_no)

    async def expire_order(self, order_no: str) -> PaymentOrder:
        return await self._close(order_no, OrderStatus.EXPIRED, "expired")

    async def fail_order(self, order_no: str, reason: str = "failed") -> PaymentOrder:
        return await self._close(order_no, OrderStatus.FAILED, reason)

    async def _close(self, order_no: str, target: OrderStatus, reason: str) -> PaymentOrder:
        """
        Move an open order into a terminal off-ramp and release its reservation.

        Raises:
            NotFoundError: Unknown order
            ConflictError: The order is no longer open
        """
        async with self._locks.hold(order_key(order_no)):
            order = await self._require(order_no)
            if order.status is target:
                return order
            if not can_transition(order.status, target):
                raise ConflictError(
                    f"Order cannot move from {order.status.value} to {target.value}", status_code=400
                )
            now = self._clock()
            async with self._session_factory() as session, session.begin():
                orders = OrderRepository(session)
                await orders.transition(
                    order_no, sources_for(target), target, action_message=reason, updated_at=now
                )
                await self._allocator.release_reservation(session, order_no)
                await orders.add_event(order_no, f"order_{target.value}", {"reason": reason})
            metrics.record_transition(order.kind.value, order.status.value, target.value)
            logger.info("order_closed", order_no=order_no, status=target.value, reason=reason)
            return await self._require(order_no)

    async def expire_stale_orders(self, limit: int = 200) -> int:
        """Expire open orders older than ``order_expire_minutes``."""
        cutoff = self._clock() - timedelta(minutes=self._config.order_expire_minutes)
        async with self._session_factory() as session:
            stale = await OrderRepository(session).list_open_before(cutoff, limit)
        expired = 0
        for order in stale:
            try:
                result = await self.expire_order(order.order_no)
            except ConflictError:
                continue
            if result.status is OrderStatus.EXPIRED:
                expired += 1
        if expired:
            logger.info("stale_orders_expired", count=expired)
        return expired

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def list_orders(
        self,
        kind: Optional[OrderKind] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PaymentOrder]:
        async with self._session_factory() as session:
            return await OrderRepository(session).list(kind, status, search, limit, offset)

    async def balance(self, kind: Optional[OrderKind] = None) -> Dict[str, Any]:
        """Paid, refunded and net totals formatted to two decimals."""
        async with self._session_factory() as session:
            grouped = await OrderRepository(session).amounts_by_status(kind)
        paid = [Decimal(amount) for amount in grouped[OrderStatus.PAID.value]]
        refunded = [Decimal(amount) for amount in grouped[OrderStatus.REFUNDED.value]]
        paid_total = sum(paid, Decimal("0")) + sum(refunded, Decimal("0"))
        refunded_total = sum(refunded, Decimal("0"))
        return {
            "kind": kind.value if kind else None,
            "paid_count": len(paid) + len(refunded),
            "refunded_count": len(refunded),
            "paid_total": f"{paid_total:.2f}",
            "refunded_total": f"{refunded_total:.2f}",
            "net": f"{paid_total - refunded_total:.2f}",
        }


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
