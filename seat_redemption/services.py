"""
Engine wiring.

Builds every engine component from ``Settings`` once, so the API and the
workers share the same lock manager, store and gateway clients.
"""
from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from seat_redemption.config import EngineConfig, Settings, get_settings
from seat_redemption.core.allocator import RedemptionAllocator
from seat_redemption.core.capacity import CapacityLedger
from seat_redemption.core.locks import LockManager
from seat_redemption.core.orders import OrderStateMachine
from seat_redemption.core.reconciler import WebhookReconciler
from seat_redemption.core.records import OrderKind
from seat_redemption.database.connection import build_engine, build_session_factory, init_db
from seat_redemption.integrations.gateway import GatewayClient
from seat_redemption.integrations.membership import (
    DisabledMembershipClient,
    HttpMembershipClient,
    MembershipClient,
)
from seat_redemption.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class EngineServices:
    settings: Settings
    config: EngineConfig
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    locks: LockManager
    ledger: CapacityLedger
    membership: MembershipClient
    gateways: Dict[OrderKind, GatewayClient]
    allocator: RedemptionAllocator
    orders: OrderStateMachine
    reconciler: WebhookReconciler
    health: HealthCheck

    async def start(self) -> None:
        await init_db(self.engine)
        logger.info(
            "engine_started",
            server_query_enabled=self.config.server_query_enabled,
            server_refund_enabled=self.config.server_refund_enabled,
            gateways={kind.value: client.is_configured for kind, client in self.gateways.items()},
        )

    async def close(self) -> None:
        """Wait for queued notifications, then release network and database resources."""
        await self.reconciler.drain()
        for client in self.gateways.values():
            await client.close()
        if isinstance(self.membership, HttpMembershipClient):
            await self.membership.close()
        await self.engine.dispose()
        logger.info("engine_stopped")


def build_services(
    settings: Optional[Settings] = None,
    membership: Optional[MembershipClient] = None,
    gateways: Optional[Dict[OrderKind, GatewayClient]] = None,
) -> EngineServices:
    """
    Assemble the engine from settings.

    Args:
        settings: Application settings (defaults to the cached environment settings)
        membership: Override for the membership collaborator
        gateways: Override for the gateway clients, keyed by order kind

    Returns:
        EngineServices: Wired components sharing one lock manager and store
    """
    settings = settings or get_settings()
    config = settings.engine_config()
    engine = build_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    session_factory = build_session_factory(engine)
    locks = LockManager()
    ledger = CapacityLedger()

    if membership is None:
        if settings.membership_api_url:
            membership = HttpMembershipClient(
                settings.membership_api_url,
                token=settings.membership_api_token,
                timeout=config.invite_timeout_seconds,
            )
        else:
            membership = DisabledMembershipClient()

    if gateways is None:
        gateways = {
            OrderKind.CREDIT: GatewayClient(
                OrderKind.CREDIT, settings.credit_gateway(), timeout=config.gateway_timeout_seconds
            ),
            OrderKind.PURCHASE: GatewayClient(
                OrderKind.PURCHASE, settings.purchase_gateway(), timeout=config.gateway_timeout_seconds
            ),
        }

    allocator = RedemptionAllocator(session_factory, locks, ledger, membership, config)
    orders = OrderStateMachine(
        session_factory,
        locks,
        allocator,
        gateways,
        config,
        public_base_url=settings.public_base_url,
    )
    reconciler = WebhookReconciler(orders, session_factory)

    return EngineServices(
        settings=settings,
        config=config,
        engine=engine,
        session_factory=session_factory,
        locks=locks,
        ledger=ledger,
        membership=membership,
        gateways=gateways,
        allocator=allocator,
        orders=orders,
        reconciler=reconciler,
        health=HealthCheck(session_factory, gateways),
    )
