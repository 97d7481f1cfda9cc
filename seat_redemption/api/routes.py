"""
API routes for redemption, orders, gateway notifications and administration.

Engine errors propagate to the ``EngineError`` handler installed in
``api.main``; routes only translate between schemas and typed records.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from seat_redemption.core.allocator import RedemptionRequest
from seat_redemption.core.locks import resource_key
from seat_redemption.core.reconciler import Acknowledgement
from seat_redemption.core.records import (
    Channel,
    OrderKind,
    OrderStatus,
    PaymentOrder,
    RedemptionCode,
    TargetResource,
)
from seat_redemption.database.repositories import AccountRepository, CodeRepository
from seat_redemption.services import EngineServices

from .dependencies import get_services, require_admin
from .schemas import (
    AdminOrderResponse,
    BalanceResponse,
    CodeListResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    OrderListResponse,
    OrderResponse,
    PoolRedeemRequest,
    RedeemRequest,
    RedemptionResponse,
    ResourceResponse,
    ResourceUsageRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
redemption_router = APIRouter(prefix="/redemptions", tags=["redemptions"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _admin_order(order: PaymentOrder) -> Dict[str, Any]:
    return {
        **order.to_public_dict(),
        "buyer_uid": order.buyer_uid,
        "buyer_email": order.buyer_email,
        "channel": order.channel.value,
        "order_type": order.order_type.value,
        "code": order.code,
        "action_result": order.action.result,
        "query_status": order.query_status,
        "query_at": _iso(order.query_at),
        "notify_at": _iso(order.notify_at),
        "updated_at": _iso(order.updated_at),
    }


def _code(code: RedemptionCode) -> Dict[str, Any]:
    reservation = code.reservation
    return {
        "id": code.id,
        "code": code.code,
        "channel": code.channel.value,
        "is_redeemed": code.is_redeemed,
        "redeemed_at": _iso(code.redeemed_at),
        "redeemed_by": code.redeemed_by,
        "resource_id": code.resource_id,
        "order_type": code.order_type.value if code.order_type else None,
        "reserved_for_uid": reservation.holder_uid if reservation else None,
        "reserved_for_order_no": reservation.order_no if reservation else None,
        "created_at": _iso(code.created_at),
    }


def _resource(resource: TargetResource) -> Dict[str, Any]:
    return {
        "id": resource.id,
        "email": resource.email,
        "used_seats": resource.used_seats,
        "seat_limit": resource.seat_limit,
        "is_demoted": resource.is_demoted,
        "is_open": resource.is_open,
        "is_banned": resource.is_banned,
    }


@redemption_router.post(
    "/redeem",
    response_model=RedemptionResponse,
    summary="Redeem a code",
    description="Consume a redemption code and claim a seat for the buyer",
)
async def redeem_code(
    request: RedeemRequest,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_redeem_request", code=request.code, channel=request.channel)
    result = await services.allocator.redeem(
        RedemptionRequest(
            code=request.code,
            email=request.email,
            channel=Channel.normalize(request.channel),
            order_type=request.order_type,
            redeemer_uid=request.redeemer_uid,
        )
    )
    return result.to_summary()


@redemption_router.post(
    "/pool-redeem",
    response_model=RedemptionResponse,
    summary="Redeem from a channel pool",
    description="Draw the oldest free code of a channel and redeem it",
)
async def redeem_from_pool(
    request: PoolRedeemRequest,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_pool_redeem_request", channel=request.channel, strict_today=request.strict_today)
    result = await services.allocator.redeem_from_pool(
        email=request.email,
        channel=Channel.normalize(request.channel),
        order_type=request.order_type,
        strict_today=request.strict_today,
        redeemer_uid=request.redeemer_uid,
    )
    return result.to_summary()


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create (or reuse) an order, reserve a code and return the signed pay request",
)
async def create_order(
    request: CreateOrderRequest,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_create_order_request",
        kind=request.kind.value,
        buyer_uid=request.buyer_uid,
        amount=str(request.amount),
    )
    created = await services.orders.create_order(
        kind=request.kind,
        buyer_uid=request.buyer_uid,
        amount=request.amount,
        buyer_email=request.buyer_email,
        scene=request.scene,
        title=request.title,
        channel=Channel.normalize(request.channel),
        order_type=request.order_type,
        target_resource_id=request.target_resource_id,
    )
    return {
        "order": created.order.to_public_dict(),
        "pay_request": created.pay_request,
        "reused": created.reused,
    }


@order_router.get(
    "/{order_no}",
    response_model=OrderResponse,
    summary="Get order status",
    description="Fetch an order, refreshing it from the gateway when active query is enabled",
)
async def get_order(
    order_no: str,
    buyer_uid: str = Query(..., min_length=1, description="Buyer identity"),
    force_sync: bool = Query(default=False, description="Bypass the query interval"),
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orders.get_order(order_no, buyer_uid=buyer_uid, force_sync=force_sync)
    return order.to_public_dict()


@webhook_router.api_route(
    "/{gateway}/notify",
    methods=["GET", "POST"],
    response_class=PlainTextResponse,
    summary="Gateway notify endpoint",
    description="Answer with a bare success/fail token; payment processing continues in the background",
)
async def gateway_notify(
    gateway: str,
    request: Request,
    services: EngineServices = Depends(get_services),
) -> PlainTextResponse:
    try:
        kind = OrderKind(gateway)
    except ValueError:
        return PlainTextResponse(Acknowledgement.FAIL.value, status_code=status.HTTP_404_NOT_FOUND)

    payload: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})

    ack = services.reconciler.handle_notification(kind, payload)
    return PlainTextResponse(ack.value)


@admin_router.post(
    "/orders/{order_no}/sync",
    response_model=AdminOrderResponse,
    summary="Force-sync an order",
)
async def sync_order(
    order_no: str,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_admin_sync_order", order_no=order_no)
    order = await services.orders.sync_order(order_no, force=True)
    return _admin_order(order)


@admin_router.post(
    "/orders/{order_no}/refund",
    response_model=AdminOrderResponse,
    summary="Refund a paid order",
)
async def refund_order(
    order_no: str,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_admin_refund_order", order_no=order_no)
    order = await services.orders.refund_order(order_no)
    return _admin_order(order)


@admin_router.post(
    "/orders/{order_no}/fulfill",
    response_model=AdminOrderResponse,
    summary="Retry fulfillment of a paid order",
)
async def fulfill_order(
    order_no: str,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_admin_fulfill_order", order_no=order_no)
    order = await services.orders.retry_fulfillment(order_no)
    return _admin_order(order)


@admin_router.get("/orders", response_model=OrderListResponse, summary="List orders")
async def list_orders(
    kind: Optional[OrderKind] = Query(default=None),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    orders = await services.orders.list_orders(kind, order_status, search, limit, offset)
    return {"items": [_admin_order(order) for order in orders], "limit": limit, "offset": offset}


@admin_router.get("/codes", response_model=CodeListResponse, summary="List redemption codes")
async def list_codes(
    channel: Optional[str] = Query(default=None),
    redeemed: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    selected = Channel.normalize(channel) if channel else None
    async with services.session_factory() as session:
        codes = await CodeRepository(session).list(selected, redeemed, limit, offset)
    return {"items": [_code(code) for code in codes], "limit": limit, "offset": offset}


@admin_router.get("/balance", response_model=BalanceResponse, summary="Paid/refunded balance")
async def balance(
    kind: Optional[OrderKind] = Query(default=None),
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.orders.balance(kind)


@admin_router.get("/resources", response_model=list[ResourceResponse], summary="List target resources")
async def list_resources(services: EngineServices = Depends(get_services)) -> list[Dict[str, Any]]:
    async with services.session_factory() as session:
        resources = await AccountRepository(session).list_all()
    return [_resource(resource) for resource in resources]


@admin_router.put(
    "/resources/{resource_id}/usage",
    response_model=ResourceResponse,
    summary="Sync a resource's seat usage",
)
async def sync_resource_usage(
    resource_id: int,
    request: ResourceUsageRequest,
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    async with services.locks.hold(resource_key(resource_id)):
        async with services.session_factory() as session, session.begin():
            resource = await services.ledger.sync_usage(session, resource_id, request.used_seats)
    logger.info("api_admin_resource_usage_synced", resource_id=resource_id, used_seats=request.used_seats)
    return _resource(resource)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: EngineServices = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: EngineServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: EngineServices = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
