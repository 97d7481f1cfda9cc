"""
Redemption Allocator.

Validates a code against the caller's channel and identity, consumes it, and
claims a seat on a target resource, all inside one critical section keyed by
the code's pool (or its bound resource). The membership invite runs after the
critical section and can only degrade the result, never undo it.

Validation order:
1. malformed input
2. code not found
3. already redeemed
4. channel mismatch (unless common-pool fallback applies)
5. reservation held by a different identity
6. reservation's order missing, unusable, refunded or unpaid
7. buyer email differs from the reservation's email
"""
import asyncio
import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seat_redemption.config import EngineConfig
from seat_redemption.core.capacity import CapacityLedger
from seat_redemption.core.exceptions import (
    CapacityExhaustedError,
    ConflictError,
    EngineError,
    NotFoundError,
    ValidationError,
)
from seat_redemption.core.locks import LockManager, pool_key, resource_key
from seat_redemption.core.records import (
    COMMON_FALLBACK_CHANNELS,
    Channel,
    OrderKind,
    OrderStatus,
    OrderType,
    PaymentOrder,
    RedemptionCode,
    TargetResource,
)
from seat_redemption.database.repositories import CodeRepository, OrderRepository
from seat_redemption.integrations.membership import MembershipClient, MembershipError
from seat_redemption.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_code(rng: Optional[random.Random] = None) -> str:
    """Return a fresh ``XXXX-XXXX-XXXX`` code over the unambiguous alphabet."""
    chooser = rng or random.SystemRandom()
    groups = ["".join(chooser.choice(CODE_ALPHABET) for _ in range(4)) for _ in range(3)]
    return "-".join(groups)


def normalize_code(value: Any) -> str:
    return str(value or "").strip().upper()


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def redeemer_identity(channel: Channel, email: str, uid: Optional[str]) -> str:
    if channel is Channel.LINUX_DO and uid:
        return f"UID:{uid} | Email:{email}"
    return email


@dataclass(frozen=True)
class RedemptionRequest:
    code: str
    email: str
    channel: Channel = Channel.COMMON
    order_type: Optional[OrderType] = None
    redeemer_uid: Optional[str] = None
    skip_format_validation: bool = False
    allow_common_fallback: bool = False


@dataclass(frozen=True)
class InviteOutcome:
    sent: bool
    detail: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _Claim:
    code: RedemptionCode
    resource: TargetResource
    email: str
    channel: Channel
    order_type: OrderType
    redeemed_by: str
    redeemed_at: datetime


@dataclass(frozen=True)
class RedemptionResult:
    code: str
    code_id: int
    channel: Channel
    order_type: OrderType
    resource: TargetResource
    redeemed_by: str
    redeemed_at: datetime
    invite: InviteOutcome

    @property
    def degraded(self) -> bool:
        """The seat is taken but the invite did not go through."""
        return self.invite.error is not None

    def to_summary(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "channel": self.channel.value,
            "order_type": self.order_type.value,
            "resource_id": self.resource.id,
            "resource_email": self.resource.email,
            "used_seats": self.resource.used_seats,
            "seat_limit": self.resource.seat_limit,
            "redeemed_by": self.redeemed_by,
            "redeemed_at": self.redeemed_at.isoformat(),
            "invite_sent": self.invite.sent,
            "invite_detail": self.invite.detail,
            "invite_error": self.invite.error,
            "degraded": self.degraded,
        }


class RedemptionAllocator:
    """
    Consumes redemption codes and assigns seats.

    Lock keys: ``resource:<id>`` for codes bound to a resource, otherwise
    ``pool:<stored channel>``. Pool draws additionally hold the requested
    channel's pool, and ``pool:common`` while borrowing from the common pool.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        ledger: CapacityLedger,
        membership: MembershipClient,
        config: EngineConfig,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self._ledger = ledger
        self._membership = membership
        self._config = config
        self._clock = clock

    @staticmethod
    def _validate(request: RedemptionRequest) -> RedemptionRequest:
        """
        Normalize and validate a request.

        Raises:
            ValidationError: On missing or malformed fields
        """
        email = normalize_email(request.email)
        if not email:
            raise ValidationError("Email is required")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Email is invalid")
        code = normalize_code(request.code)
        if not code:
            raise ValidationError("Redemption code is required")
        if not request.skip_format_validation and not CODE_PATTERN.match(code):
            raise ValidationError("Redemption code must look like XXXX-XXXX-XXXX")
        channel = Channel.normalize(request.channel)
        uid = str(request.redeemer_uid).strip() if request.redeemer_uid is not None else ""
        if channel is Channel.LINUX_DO and not uid:
            raise ValidationError("The linux-do channel requires a redeemer uid")
        order_type = OrderType.normalize(request.order_type) if request.order_type else None
        return replace(
            request, code=code, email=email, channel=channel, order_type=order_type, redeemer_uid=uid or None
        )

    @staticmethod
    def code_lock_key(code: RedemptionCode) -> str:
        if code.resource_id is not None:
            return resource_key(code.resource_id)
        return pool_key(code.channel.value)

    @staticmethod
    def reservation_lock_key(channel: Channel, resource_id: Optional[int]) -> str:
        if resource_id is not None:
            return resource_key(resource_id)
        return pool_key(channel.value)

    async def redeem(self, request: RedemptionRequest) -> RedemptionResult:
        """
        Redeem one code for one buyer.

        Args:
            request: Code, buyer email, channel context and eligibility hints

        Returns:
            RedemptionResult: The claimed seat plus the invite outcome

        Raises:
            ValidationError: Malformed input
            NotFoundError: Unknown code
            ConflictError: Already redeemed, wrong channel or reservation mismatch
            CapacityExhaustedError: No eligible resource with a free seat
        """
        request = self._validate(request)
        try:
            async with self._session_factory() as session:
                code = await CodeRepository(session).get_by_code(request.code)
            if code is None:
                raise NotFoundError("Redemption code not found", payload={"code": request.code})

            async with self._locks.hold(self.code_lock_key(code)):
                claim = await self._redeem_locked(request)
        except EngineError as e:
            metrics.record_redemption(request.channel.value, e.kind)
            logger.info(
                "redemption_rejected",
                code=request.code,
                channel=request.channel.value,
                kind=e.kind,
                reason=e.message,
            )
            raise
        return await self._finish(claim)

    async def _redeem_locked(self, request: RedemptionRequest) -> _Claim:
        """Re-read everything and consume the code. The caller holds the code's lock."""
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            codes = CodeRepository(session)
            code = await codes.get_by_code(request.code)
            if code is None:
                raise NotFoundError("Redemption code not found", payload={"code": request.code})
            if code.is_redeemed:
                raise ConflictError("Redemption code was already used", status_code=400)

            borrowed = (
                request.allow_common_fallback
                and code.channel is Channel.COMMON
                and request.channel in COMMON_FALLBACK_CHANNELS
            )
            if code.channel is not request.channel and not borrowed:
                raise ConflictError("Redemption code belongs to another channel")

            reservation_order = await self._check_reservation(session, code, request)

            # A reserved order's type wins over whatever the redeemer sends.
            if reservation_order is not None:
                order_type = reservation_order.order_type
            else:
                order_type = request.order_type or code.order_type or OrderType.WARRANTY
            resource = await self._pick_resource(session, code, request.channel, order_type, reservation_order)
            await self._ledger.claim_seat(session, resource)

            redeemed_by = redeemer_identity(request.channel, request.email, request.redeemer_uid)
            stored_channel = request.channel if borrowed else code.channel
            won = await codes.mark_redeemed(code.id, redeemed_by, stored_channel, order_type, now)
            if not won:
                raise ConflictError("Redemption code was already used", status_code=400)

            claimed = replace(resource, used_seats=resource.used_seats + 1)

        logger.info(
            "code_redeemed",
            code=code.code,
            channel=request.channel.value,
            borrowed_from_common=borrowed,
            resource_id=claimed.id,
            used_seats=claimed.used_seats,
            order_type=order_type.value,
        )
        return _Claim(
            code=code,
            resource=claimed,
            email=request.email,
            channel=stored_channel,
            order_type=order_type,
            redeemed_by=redeemed_by,
            redeemed_at=now,
        )

    async def _check_reservation(
        self, session: AsyncSession, code: RedemptionCode, request: RedemptionRequest
    ) -> Optional[PaymentOrder]:
        reservation = code.reservation
        if reservation is None:
            return None
        if reservation.holder_uid and reservation.holder_uid != request.redeemer_uid:
            raise ConflictError("Redemption code is reserved for another buyer")
        if not reservation.order_no:
            return None

        order = await OrderRepository(session).get(reservation.order_no)
        if order is None:
            raise ConflictError("Reserved order no longer exists")
        if order.kind is OrderKind.CREDIT and order.scene != self._config.board_scene:
            raise ConflictError("Reserved order cannot back a redemption")
        if order.is_refunded:
            raise ConflictError("Reserved order was refunded")
        if order.status is not OrderStatus.PAID:
            raise ConflictError("Reserved order is not paid")
        expected_email = normalize_email(reservation.order_email or order.buyer_email)
        if expected_email and expected_email != request.email:
            raise ConflictError("Use the email the order was placed with")
        return order

    async def _pick_resource(
        self,
        session: AsyncSession,
        code: RedemptionCode,
        channel: Channel,
        order_type: OrderType,
        reservation_order: Optional[PaymentOrder],
    ) -> TargetResource:
        must_undemoted = (
            channel is Channel.XHS
            or (channel is Channel.XIANYU and order_type is not OrderType.NO_WARRANTY)
            or (reservation_order is not None and order_type is not OrderType.ANTI_BAN)
        )
        must_demoted = channel is Channel.XIANYU and order_type is OrderType.NO_WARRANTY

        if code.resource_id is not None:
            resource = await self._ledger.get(session, code.resource_id)
            if resource is None or not resource.has_free_seat:
                raise CapacityExhaustedError(
                    "The resource bound to this code is full",
                    payload={"resource_id": code.resource_id},
                )
            if must_undemoted and resource.is_demoted:
                raise CapacityExhaustedError("The resource bound to this code is demoted")
            if must_demoted and not resource.is_demoted:
                raise CapacityExhaustedError("No-warranty orders need a code bound to a demoted resource")
            return resource

        if must_undemoted and must_demoted:
            raise CapacityExhaustedError("No resource satisfies the eligibility rules")
        require_demoted = True if must_demoted else (False if must_undemoted else None)
        resource = await self._ledger.select_least_loaded(session, require_demoted)
        if resource is None:
            message = "No demoted resource has a free seat" if must_demoted else "No resource has a free seat"
            raise CapacityExhaustedError(message)
        return resource

    async def _finish(self, claim: _Claim) -> RedemptionResult:
        invite = await self._invite(claim)
        result = RedemptionResult(
            code=claim.code.code,
            code_id=claim.code.id,
            channel=claim.channel,
            order_type=claim.order_type,
            resource=claim.resource,
            redeemed_by=claim.redeemed_by,
            redeemed_at=claim.redeemed_at,
            invite=invite,
        )
        metrics.record_redemption(claim.channel.value, "degraded" if result.degraded else "success")
        return result

    async def _invite(self, claim: _Claim) -> InviteOutcome:
        try:
            outcome = await asyncio.wait_for(
                self._membership.invite(claim.resource, claim.email),
                timeout=self._config.invite_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("membership_invite_timeout", code=claim.code.code, resource_id=claim.resource.id)
            return InviteOutcome(sent=False, error="invite_timeout")
        except MembershipError as e:
            logger.warning(
                "membership_invite_failed", code=claim.code.code, resource_id=claim.resource.id, error=str(e)
            )
            return InviteOutcome(sent=False, error=str(e))
        return InviteOutcome(sent=outcome.sent, detail=outcome.detail)

    def _draw_windows(self, strict_today: bool) -> Tuple[List[Tuple[datetime, datetime]], Tuple[datetime, datetime]]:
        now = self._clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        windows = [(today, tomorrow)]
        if not strict_today and self._config.in_fallback_window(now.hour):
            windows.append((today - timedelta(days=1), today))
        return windows, (today, tomorrow)

    async def _draw_locked(
        self,
        source: Channel,
        template: RedemptionRequest,
        held_key: str,
        windows: List[Tuple[datetime, datetime]],
    ) -> Optional[_Claim]:
        for created_from, created_before in windows:
            async with self._session_factory() as session:
                code = await CodeRepository(session).find_pool_candidate(source, created_from, created_before)
            if code is None:
                continue
            request = replace(template, code=code.code)
            key = self.code_lock_key(code)
            if key == held_key:
                return await self._redeem_locked(request)
            async with self._locks.hold(key):
                return await self._redeem_locked(request)
        return None

    async def redeem_from_pool(
        self,
        email: str,
        channel: Channel,
        order_type: Optional[OrderType] = None,
        strict_today: bool = False,
        redeemer_uid: Optional[str] = None,
    ) -> RedemptionResult:
        """
        Draw the oldest free code of a channel and redeem it for ``email``.

        Today's codes come first, then yesterday's while inside the fallback
        window. Channels allowed to borrow then repeat both steps on the
        common pool under ``pool:common``.

        Raises:
            CapacityExhaustedError: With an ``error_code`` explaining why the pool is empty
        """
        channel = Channel.normalize(channel)
        template = self._validate(
            RedemptionRequest(
                code="POOL",
                email=email,
                channel=channel,
                order_type=order_type,
                redeemer_uid=redeemer_uid,
                skip_format_validation=True,
            )
        )
        windows, today_window = self._draw_windows(strict_today)

        try:
            own_key = pool_key(channel.value)
            async with self._locks.hold(own_key):
                claim = await self._draw_locked(channel, template, own_key, windows)

            if claim is None and channel in COMMON_FALLBACK_CHANNELS:
                common_key = pool_key(Channel.COMMON.value)
                async with self._locks.hold(common_key):
                    claim = await self._draw_locked(
                        Channel.COMMON,
                        replace(template, allow_common_fallback=True),
                        common_key,
                        windows,
                    )

            if claim is None:
                raise await self._out_of_stock(channel, today_window)
        except EngineError as e:
            metrics.record_redemption(channel.value, e.kind)
            raise
        return await self._finish(claim)

    async def _out_of_stock(self, channel: Channel, today_window: Tuple[datetime, datetime]) -> CapacityExhaustedError:
        async with self._session_factory() as session:
            total, today_total, today_unused = await CodeRepository(session).pool_stats(channel, *today_window)
        if total == 0:
            error_code = "codes_not_configured"
        elif today_total == 0:
            error_code = "no_today_codes"
        elif today_unused == 0:
            error_code = "today_codes_exhausted"
        else:
            error_code = "codes_unavailable"
        logger.warning("pool_out_of_stock", channel=channel.value, error_code=error_code)
        return CapacityExhaustedError(
            "No redemption code is available right now",
            payload={"error_code": error_code, "channel": channel.value},
        )

    async def reserve_code(
        self,
        session: AsyncSession,
        order_no: str,
        holder_uid: str,
        order_email: Optional[str],
        channel: Channel,
        resource_id: Optional[int] = None,
    ) -> Optional[RedemptionCode]:
        """
        Put an advisory hold on the oldest free code for a new order.

        Runs in the caller's transaction; the caller holds
        ``reservation_lock_key(channel, resource_id)``.
        """
        codes = CodeRepository(session)
        for _ in range(3):
            candidate = await codes.find_reservable(channel, resource_id)
            if candidate is None:
                return None
            if await codes.reserve(candidate.id, holder_uid, order_no, order_email, self._clock()):
                logger.info("code_reserved", code=candidate.code, order_no=order_no, resource_id=resource_id)
                return await codes.get(candidate.id)
        return None

    async def release_reservation(self, session: AsyncSession, order_no: str) -> int:
        released = await CodeRepository(session).clear_reservation(order_no)
        if released:
            logger.info("reservation_released", order_no=order_no, codes=released)
        return released
