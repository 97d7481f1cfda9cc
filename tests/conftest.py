"""
Pytest configuration and fixtures.

Every test gets its own aiosqlite file database and a fresh set of engine
components wired the same way ``build_services`` wires them, with a frozen
clock and stubbed membership collaborator.
"""
import random
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from seat_redemption.config import EngineConfig, GatewayConfig
from seat_redemption.core.allocator import RedemptionAllocator
from seat_redemption.core.capacity import CapacityLedger
from seat_redemption.core.locks import LockManager
from seat_redemption.core.orders import OrderStateMachine
from seat_redemption.core.reconciler import WebhookReconciler
from seat_redemption.core.records import (
    Channel,
    OrderKind,
    OrderType,
    PaymentOrder,
    RedemptionCode,
    TargetResource,
)
from seat_redemption.core.signing import build_sign
from seat_redemption.database.connection import build_session_factory, init_db
from seat_redemption.database.repositories import AccountRepository, CodeRepository, OrderRepository
from seat_redemption.integrations.gateway import GatewayClient
from seat_redemption.integrations.membership import InviteResult

GATEWAY_PID = "1001"
GATEWAY_KEY = "merchant-secret"
GATEWAY_URL = "https://pay.example.com"


class FrozenClock:
    """Callable clock the engine reads instead of ``datetime.now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 14, 12, 0, 0))


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration for tests; override per test with ``dataclasses.replace``."""
    return EngineConfig(
        server_query_enabled=False,
        server_refund_enabled=True,
        query_min_interval_seconds=8.0,
        order_expire_minutes=15,
        invite_timeout_seconds=1.0,
        gateway_timeout_seconds=1.0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """File-backed SQLite store so concurrent tasks use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        poolclass=NullPool,
    )
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def membership() -> AsyncMock:
    client = AsyncMock()
    client.invite.return_value = InviteResult(sent=True, detail="invited")
    return client


@pytest.fixture
def gateways() -> Dict[OrderKind, GatewayClient]:
    config = GatewayConfig(pid=GATEWAY_PID, key=GATEWAY_KEY, base_url=GATEWAY_URL)
    return {
        OrderKind.CREDIT: GatewayClient(OrderKind.CREDIT, config, timeout=1.0),
        OrderKind.PURCHASE: GatewayClient(OrderKind.PURCHASE, config, timeout=1.0),
    }


class Engine:
    """The engine components under test plus seeding helpers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: EngineConfig,
        membership: AsyncMock,
        gateways: Dict[OrderKind, GatewayClient],
        clock: FrozenClock,
    ):
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.membership = membership
        self.gateways = gateways
        self.locks = LockManager()
        self.ledger = CapacityLedger(rng=random.Random(7))
        self.allocator = RedemptionAllocator(
            session_factory, self.locks, self.ledger, membership, config, clock=clock
        )
        self.orders = OrderStateMachine(
            session_factory,
            self.locks,
            self.allocator,
            gateways,
            config,
            public_base_url="https://shop.example.com",
            clock=clock,
            rng=random.Random(11),
        )
        self.reconciler = WebhookReconciler(self.orders, session_factory)

    async def add_account(
        self,
        email: str = "owner@example.com",
        used_seats: int = 0,
        is_demoted: bool = False,
        is_banned: bool = False,
    ) -> TargetResource:
        async with self.session_factory() as session, session.begin():
            return await AccountRepository(session).add(
                email, used_seats=used_seats, is_demoted=is_demoted, is_banned=is_banned
            )

    async def add_code(
        self,
        code: str,
        channel: Channel = Channel.COMMON,
        resource_id: Optional[int] = None,
        order_type: Optional[OrderType] = None,
        created_at: Optional[datetime] = None,
    ) -> RedemptionCode:
        async with self.session_factory() as session, session.begin():
            return await CodeRepository(session).add(
                code,
                channel=channel,
                resource_id=resource_id,
                order_type=order_type,
                created_at=created_at or self.clock(),
            )

    async def code(self, code: str) -> RedemptionCode:
        async with self.session_factory() as session:
            return await CodeRepository(session).get_by_code(code)

    async def account(self, resource_id: int) -> TargetResource:
        async with self.session_factory() as session:
            return await AccountRepository(session).get(resource_id)

    async def order(self, order_no: str) -> PaymentOrder:
        async with self.session_factory() as session:
            return await OrderRepository(session).get(order_no)


@pytest.fixture
def make_engine(
    session_factory: async_sessionmaker[AsyncSession],
    engine_config: EngineConfig,
    membership: AsyncMock,
    gateways: Dict[OrderKind, GatewayClient],
    clock: FrozenClock,
) -> Any:
    """Factory for an engine with an optional config override."""

    def factory(config: Optional[EngineConfig] = None) -> Engine:
        return Engine(session_factory, config or engine_config, membership, gateways, clock)

    return factory


@pytest.fixture
def engine(make_engine: Any) -> Engine:
    return make_engine()


def signed_notify(
    order_no: str,
    money: str = "10.00",
    trade_no: str = "2026031412000001",
    trade_status: str = "TRADE_SUCCESS",
    key: str = GATEWAY_KEY,
    **extra: str,
) -> Dict[str, str]:
    """A gateway notification payload signed with ``key``."""
    params = {
        "pid": GATEWAY_PID,
        "trade_no": trade_no,
        "out_trade_no": order_no,
        "type": "alipay",
        "name": "Seat order",
        "money": money,
        "trade_status": trade_status,
        **extra,
    }
    params["sign"] = build_sign(params, key)
    params["sign_type"] = "MD5"
    return params


@pytest.fixture
def notify() -> Any:
    return signed_notify
