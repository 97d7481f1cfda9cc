"""
Webhook Reconciler.

Turns inbound gateway notifications into order transitions. The HTTP reply
is decided synchronously from the payload alone; everything that touches the
order runs afterwards in a background task under ``order:<order_no>``.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seat_redemption.core.exceptions import EngineError, UpstreamGatewayError
from seat_redemption.core.orders import OrderStateMachine, parse_gateway_time
from seat_redemption.core.records import OrderKind, OrderStatus
from seat_redemption.core.signing import verify_sign
from seat_redemption.database.repositories import OrderRepository
from seat_redemption.monitoring.logging import order_context
from seat_redemption.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"


class Acknowledgement(str, Enum):
    """Bare-text replies the gateway understands."""

    SUCCESS = "success"
    FAIL = "fail"


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def summarize_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Loggable view of a notification; the signature is reduced to a prefix."""
    sign = _text(payload.get("sign"))
    return {
        "pid": _text(payload.get("pid")) or None,
        "trade_no": _text(payload.get("trade_no")) or None,
        "out_trade_no": _text(payload.get("out_trade_no")) or None,
        "money": _text(payload.get("money")) or None,
        "trade_status": _text(payload.get("trade_status")) or None,
        "sign_prefix": sign[:8] or None,
        "sign_length": len(sign),
    }


class WebhookReconciler:
    """
    Verifies gateway callbacks and applies confirmed payments.

    ``handle_notification`` never waits on fulfillment: once a payment is
    accepted the acknowledgement is returned and the order work is scheduled
    on the running loop. ``drain`` waits for scheduled work (used on shutdown
    and in tests).
    """

    def __init__(
        self,
        orders: OrderStateMachine,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._orders = orders
        self._session_factory = session_factory
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def handle_notification(self, kind: OrderKind, payload: Mapping[str, Any]) -> Acknowledgement:
        """
        Decide the acknowledgement for one notification and schedule processing.

        Args:
            kind: Which gateway sent it
            payload: Merged query-string and form parameters

        Returns:
            Acknowledgement: SUCCESS or FAIL, to be written back verbatim
        """
        started = time.perf_counter()
        kind = OrderKind(kind)
        params = {key: value for key, value in payload.items()}
        summary = summarize_payload(params)
        try:
            ack = self._acknowledge(kind, params, summary)
        finally:
            metrics.record_webhook_duration(kind.value, time.perf_counter() - started)
        metrics.record_webhook(kind.value, ack.value)
        return ack

    def _acknowledge(self, kind: OrderKind, params: Dict[str, Any], summary: Dict[str, Any]) -> Acknowledgement:
        order_no = _text(params.get("out_trade_no"))
        trade_no = _text(params.get("trade_no"))
        if not order_no and not trade_no:
            logger.warning("notify_missing_order_no", gateway=kind.value, payload=summary)
            return Acknowledgement.FAIL

        gateway_config = self._orders.gateway(kind).config
        if not gateway_config.is_configured:
            logger.warning("notify_gateway_not_configured", gateway=kind.value, order_no=order_no)
            return Acknowledgement.FAIL
        if _text(params.get("pid")) != gateway_config.pid:
            logger.warning("notify_pid_mismatch", gateway=kind.value, order_no=order_no, payload=summary)
            return Acknowledgement.FAIL
        if not verify_sign(params, gateway_config.key):
            logger.warning("notify_sign_mismatch", gateway=kind.value, order_no=order_no, payload=summary)
            return Acknowledgement.FAIL

        trade_status = _text(params.get("trade_status"))
        if trade_status != TRADE_SUCCESS:
            logger.info("notify_trade_not_success", gateway=kind.value, order_no=order_no, trade_status=trade_status)
            return Acknowledgement.SUCCESS

        logger.info("notify_accepted", gateway=kind.value, order_no=order_no, trade_no=trade_no)
        self._schedule(kind, order_no or None, trade_no or None, params)
        return Acknowledgement.SUCCESS

    def _schedule(
        self, kind: OrderKind, order_no: Optional[str], trade_no: Optional[str], params: Dict[str, Any]
    ) -> None:
        task = asyncio.get_running_loop().create_task(self._process(kind, order_no, trade_no, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish processing."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process(
        self, kind: OrderKind, order_no: Optional[str], trade_no: Optional[str], params: Dict[str, Any]
    ) -> None:
        with order_context(order_no=order_no, gateway=kind.value, trade_no=trade_no):
            try:
                resolved = order_no or await self.resolve_order_no(kind, trade_no)
                if not resolved:
                    logger.warning("notify_order_not_resolved")
                    return
                await self._orders.confirm_payment(
                    resolved,
                    kind=kind,
                    trade_no=trade_no,
                    reported_amount=params.get("money"),
                    paid_at=parse_gateway_time(params.get("endtime")),
                    payload=params,
                    source="notify",
                )
            except EngineError as e:
                logger.warning("notify_processing_failed", kind=e.kind, error=e.message)
            except Exception:
                logger.exception("notify_processing_crashed")

    async def resolve_order_no(self, kind: OrderKind, trade_no: Optional[str]) -> Optional[str]:
        """Map a gateway trade number to a local order, asking the gateway when allowed."""
        if not trade_no:
            return None
        async with self._session_factory() as session:
            order = await OrderRepository(session).find_by_trade_no(trade_no, kind)
        if order is not None:
            return order.order_no
        if not self._orders.config.server_query_enabled:
            logger.info("trade_no_resolution_skipped", gateway=kind.value, trade_no=trade_no)
            return None
        try:
            data = await self._orders.gateway(kind).query_order(trade_no=trade_no)
        except UpstreamGatewayError as e:
            logger.warning("trade_no_resolution_failed", gateway=kind.value, trade_no=trade_no, error=e.message)
            return None
        return _text(data.get("out_trade_no")) or None

    async def reconcile_pending(self, limit: int = 200) -> int:
        """
        Pull-based reconciliation: query the gateway for every pending order.

        Returns the number of orders that ended up paid.
        """
        if not self._orders.config.server_query_enabled:
            return 0
        async with self._session_factory() as session:
            pending = await OrderRepository(session).list_pending(limit)
        paid = 0
        for order in pending:
            try:
                with order_context(order_no=order.order_no, gateway=order.kind.value):
                    synced = await self._orders.sync_order(order.order_no)
            except EngineError as e:
                logger.warning("pending_order_sync_failed", order_no=order.order_no, kind=e.kind, error=e.message)
                continue
            if synced.status is OrderStatus.PAID:
                paid += 1
        if paid:
            logger.info("pending_orders_reconciled", paid=paid, checked=len(pending))
        return paid
