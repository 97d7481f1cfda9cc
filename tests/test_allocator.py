"""
Redemption allocator tests.

Validation order, channel rules, resource eligibility, invite degradation
and pool draws.
"""
import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from seat_redemption.core.allocator import (
    CODE_ALPHABET,
    CODE_PATTERN,
    RedemptionRequest,
    generate_code,
    redeemer_identity,
)
from seat_redemption.core.exceptions import (
    CapacityExhaustedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from seat_redemption.core.records import Channel, OrderKind, OrderType
from seat_redemption.integrations.membership import MembershipError

EMAIL = "buyer@example.com"


def request(code: str, **overrides) -> RedemptionRequest:
    return RedemptionRequest(code=code, email=overrides.pop("email", EMAIL), **overrides)


@pytest.mark.unit
def test_generate_code_matches_format() -> None:
    code = generate_code()
    assert CODE_PATTERN.match(code)
    assert all(ch in CODE_ALPHABET for ch in code.replace("-", ""))


@pytest.mark.unit
def test_redeemer_identity() -> None:
    assert redeemer_identity(Channel.LINUX_DO, EMAIL, "77") == f"UID:77 | Email:{EMAIL}"
    assert redeemer_identity(Channel.XHS, EMAIL, "77") == EMAIL


@pytest.mark.unit
@pytest.mark.parametrize(
    "value,expected",
    [
        (Channel.XHS, Channel.XHS),
        ("xianyu", Channel.XIANYU),
        (" Linux-Do ", Channel.LINUX_DO),
        ("somewhere", Channel.COMMON),
        (None, Channel.COMMON),
    ],
)
def test_channel_normalize(value, expected) -> None:
    assert Channel.normalize(value) is expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "value,expected",
    [
        (OrderType.ANTI_BAN, OrderType.ANTI_BAN),
        ("NO_WARRANTY", OrderType.NO_WARRANTY),
        ("", OrderType.WARRANTY),
    ],
)
def test_order_type_normalize(value, expected) -> None:
    assert OrderType.normalize(value) is expected


class TestValidation:
    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,email",
        [
            ("AAAA-BBBB-CCCC", ""),
            ("AAAA-BBBB-CCCC", "not-an-email"),
            ("", EMAIL),
            ("AAAABBBBCCCC", EMAIL),
        ],
    )
    async def test_malformed_input(self, engine, code: str, email: str) -> None:
        with pytest.raises(ValidationError):
            await engine.allocator.redeem(request(code, email=email))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_linux_do_requires_uid(self, engine) -> None:
        with pytest.raises(ValidationError):
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC", channel=Channel.LINUX_DO))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_code(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_code_is_normalized(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")

        result = await engine.allocator.redeem(request("  aaaa-bbbb-cccc "))

        assert result.code == "AAAA-BBBB-CCCC"


class TestRedeem:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_consumes_code_and_seat(self, engine) -> None:
        resource = await engine.add_account(used_seats=2)
        await engine.add_code("AAAA-BBBB-CCCC")

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC", email="Buyer@Example.com"))

        assert result.resource.id == resource.id
        assert result.resource.used_seats == 3
        assert result.redeemed_by == EMAIL
        assert result.invite.sent
        assert not result.degraded
        stored = await engine.code("AAAA-BBBB-CCCC")
        assert stored.is_redeemed
        assert stored.redeemed_by == EMAIL
        assert stored.order_type is OrderType.WARRANTY
        assert (await engine.account(resource.id)).used_seats == 3
        engine.membership.invite.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_redemption_conflicts(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")
        await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        with pytest.raises(ConflictError) as excinfo:
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))
        assert excinfo.value.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_channel_mismatch(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.XHS)

        with pytest.raises(ConflictError) as excinfo:
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC", channel=Channel.COMMON))
        assert excinfo.value.status_code == 403
        assert not (await engine.code("AAAA-BBBB-CCCC")).is_redeemed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_common_fallback_retags_code(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.COMMON)

        result = await engine.allocator.redeem(
            request("AAAA-BBBB-CCCC", channel=Channel.XIANYU, allow_common_fallback=True)
        )

        assert result.channel is Channel.XIANYU
        assert (await engine.code("AAAA-BBBB-CCCC")).channel is Channel.XIANYU

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_common_fallback_not_allowed_for_other_channels(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.COMMON)

        with pytest.raises(ConflictError):
            await engine.allocator.redeem(
                request("AAAA-BBBB-CCCC", channel=Channel.ARTISAN_FLOW, allow_common_fallback=True)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_linux_do_identity_is_recorded(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.LINUX_DO)

        result = await engine.allocator.redeem(
            request("AAAA-BBBB-CCCC", channel=Channel.LINUX_DO, redeemer_uid="77")
        )

        assert result.redeemed_by == f"UID:77 | Email:{EMAIL}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bound_resource_is_the_only_candidate(self, engine) -> None:
        await engine.add_account("empty@example.com", used_seats=0)
        bound = await engine.add_account("bound@example.com", used_seats=3)
        await engine.add_code("AAAA-BBBB-CCCC", resource_id=bound.id)

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        assert result.resource.id == bound.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_bound_resource_fails_with_capacity(self, engine) -> None:
        await engine.add_account("empty@example.com", used_seats=0)
        bound = await engine.add_account("bound@example.com", used_seats=5)
        await engine.add_code("AAAA-BBBB-CCCC", resource_id=bound.id)

        with pytest.raises(CapacityExhaustedError):
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))
        assert not (await engine.code("AAAA-BBBB-CCCC")).is_redeemed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_free_resource(self, engine) -> None:
        await engine.add_account(used_seats=5)
        await engine.add_code("AAAA-BBBB-CCCC")

        with pytest.raises(CapacityExhaustedError):
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))
        assert not (await engine.code("AAAA-BBBB-CCCC")).is_redeemed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_banned_resources_are_never_chosen(self, engine) -> None:
        await engine.add_account("banned@example.com", used_seats=0, is_banned=True)
        healthy = await engine.add_account("healthy@example.com", used_seats=4)
        await engine.add_code("AAAA-BBBB-CCCC")

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        assert result.resource.id == healthy.id


class TestEligibility:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_xianyu_no_warranty_needs_demoted(self, engine) -> None:
        await engine.add_account("plain@example.com", used_seats=0)
        demoted = await engine.add_account("demoted@example.com", used_seats=4, is_demoted=True)
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.XIANYU)

        result = await engine.allocator.redeem(
            request("AAAA-BBBB-CCCC", channel=Channel.XIANYU, order_type=OrderType.NO_WARRANTY)
        )

        assert result.resource.id == demoted.id
        assert result.order_type is OrderType.NO_WARRANTY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_xhs_needs_undemoted(self, engine) -> None:
        await engine.add_account("demoted@example.com", used_seats=0, is_demoted=True)
        await engine.add_code("AAAA-BBBB-CCCC", channel=Channel.XHS)

        with pytest.raises(CapacityExhaustedError):
            await engine.allocator.redeem(request("AAAA-BBBB-CCCC", channel=Channel.XHS))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_type_falls_back_to_code(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC", order_type=OrderType.ANTI_BAN)

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        assert result.order_type is OrderType.ANTI_BAN


class TestReservations:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserved_code_rejects_other_holder(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")
        created = await engine.orders.create_order(OrderKind.CREDIT, "1024", "10.00", EMAIL)

        with pytest.raises(ConflictError):
            await engine.allocator.redeem(
                request(created.order.code, redeemer_uid="2048", skip_format_validation=True)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reservation_without_paid_order_is_void(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")
        created = await engine.orders.create_order(OrderKind.CREDIT, "1024", "10.00", EMAIL)

        with pytest.raises(ConflictError) as excinfo:
            await engine.allocator.redeem(request(created.order.code, redeemer_uid="1024"))
        assert "not paid" in excinfo.value.message
        assert not (await engine.code("AAAA-BBBB-CCCC")).is_redeemed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reservation_email_must_match(self, engine, mocker) -> None:
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")
        created = await engine.orders.create_order(OrderKind.CREDIT, "1024", "10.00", EMAIL)
        # Pay without fulfilling so the code stays available to the buyer
        mocker.patch.object(engine.orders, "_fulfill_locked", mocker.AsyncMock())
        await engine.orders.confirm_payment(created.order.order_no, trade_no="T1", reported_amount="10.00")

        with pytest.raises(ConflictError) as excinfo:
            await engine.allocator.redeem(
                request(created.order.code, email="other@example.com", redeemer_uid="1024")
            )
        assert "email" in excinfo.value.message

        result = await engine.allocator.redeem(request(created.order.code, redeemer_uid="1024"))
        assert result.code == "AAAA-BBBB-CCCC"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserved_order_type_overrides_request(self, engine, mocker) -> None:
        await engine.add_account("demoted@example.com", is_demoted=True)
        await engine.add_code("AAAA-BBBB-CCCC")
        created = await engine.orders.create_order(OrderKind.CREDIT, "1024", "10.00", EMAIL)
        mocker.patch.object(engine.orders, "_fulfill_locked", mocker.AsyncMock())
        await engine.orders.confirm_payment(created.order.order_no, trade_no="T1", reported_amount="10.00")

        # Asking for anti_ban must not unlock the demoted seat for a warranty order
        with pytest.raises(CapacityExhaustedError):
            await engine.allocator.redeem(
                request(created.order.code, redeemer_uid="1024", order_type=OrderType.ANTI_BAN)
            )

        plain = await engine.add_account("plain@example.com")
        result = await engine.allocator.redeem(
            request(created.order.code, redeemer_uid="1024", order_type=OrderType.ANTI_BAN)
        )
        assert result.order_type is OrderType.WARRANTY
        assert result.resource.id == plain.id


class TestInvite:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invite_failure_degrades_but_keeps_redemption(self, engine) -> None:
        resource = await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")
        engine.membership.invite.side_effect = MembershipError("membership API returned HTTP 500")

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        assert result.degraded
        assert result.invite.error == "membership API returned HTTP 500"
        assert (await engine.code("AAAA-BBBB-CCCC")).is_redeemed
        assert (await engine.account(resource.id)).used_seats == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invite_timeout_degrades(self, make_engine, engine_config) -> None:
        engine = make_engine(replace(engine_config, invite_timeout_seconds=0.05))
        await engine.add_account()
        await engine.add_code("AAAA-BBBB-CCCC")

        async def slow_invite(resource, email):
            await asyncio.sleep(1)

        engine.membership.invite.side_effect = slow_invite

        result = await engine.allocator.redeem(request("AAAA-BBBB-CCCC"))

        assert result.invite.error == "invite_timeout"
        assert result.degraded


class TestPoolDraw:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_draws_oldest_code_of_today(self, engine, clock) -> None:
        await engine.add_account()
        await engine.add_code("BBBB-BBBB-BBBB", channel=Channel.XHS, created_at=clock() - timedelta(hours=1))
        await engine.add_code("AAAA-AAAA-AAAA", channel=Channel.XHS, created_at=clock() - timedelta(hours=2))

        result = await engine.allocator.redeem_from_pool(EMAIL, Channel.XHS)

        assert result.code == "AAAA-AAAA-AAAA"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_falls_back_to_common_pool(self, engine) -> None:
        await engine.add_account()
        await engine.add_code("CCCC-CCCC-CCCC", channel=Channel.COMMON)

        result = await engine.allocator.redeem_from_pool(EMAIL, Channel.XHS)

        assert result.channel is Channel.XHS
        assert (await engine.code("CCCC-CCCC-CCCC")).channel is Channel.XHS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_yesterday_only_inside_fallback_window(self, engine, clock) -> None:
        await engine.add_account()
        clock.now = clock.now.replace(hour=3)
        await engine.add_code("YYYY-YYYY-YYYY", channel=Channel.XHS, created_at=clock() - timedelta(days=1))

        with pytest.raises(CapacityExhaustedError) as excinfo:
            await engine.allocator.redeem_from_pool(EMAIL, Channel.XHS, strict_today=True)
        assert excinfo.value.payload["error_code"] == "no_today_codes"

        result = await engine.allocator.redeem_from_pool(EMAIL, Channel.XHS)
        assert result.code == "YYYY-YYYY-YYYY"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_yesterday_ignored_outside_window(self, engine, clock) -> None:
        await engine.add_account()
        await engine.add_code("YYYY-YYYY-YYYY", channel=Channel.XHS, created_at=clock() - timedelta(days=1))

        with pytest.raises(CapacityExhaustedError) as excinfo:
            await engine.allocator.redeem_from_pool(EMAIL, Channel.XHS)
        assert excinfo.value.payload["error_code"] == "no_today_codes"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_pool_error_codes(self, engine) -> None:
        await engine.add_account()

        with pytest.raises(CapacityExhaustedError) as excinfo:
            await engine.allocator.redeem_from_pool(EMAIL, Channel.ARTISAN_FLOW)
        assert excinfo.value.payload["error_code"] == "codes_not_configured"

        await engine.add_code("AAAA-AAAA-AAAA", channel=Channel.ARTISAN_FLOW)
        await engine.allocator.redeem_from_pool(EMAIL, Channel.ARTISAN_FLOW)

        with pytest.raises(CapacityExhaustedError) as excinfo:
            await engine.allocator.redeem_from_pool("second@example.com", Channel.ARTISAN_FLOW)
        assert excinfo.value.payload["error_code"] == "today_codes_exhausted"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_codes_bound_to_demoted_resources_are_skipped(self, engine) -> None:
        demoted = await engine.add_account("demoted@example.com", is_demoted=True)
        await engine.add_code("DDDD-DDDD-DDDD", channel=Channel.ARTISAN_FLOW, resource_id=demoted.id)

        with pytest.raises(CapacityExhaustedError) as excinfo:
            await engine.allocator.redeem_from_pool(EMAIL, Channel.ARTISAN_FLOW)
        assert excinfo.value.payload["error_code"] == "codes_unavailable"
