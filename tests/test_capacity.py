"""Capacity ledger tests against the SQLite store."""
from dataclasses import replace

import pytest

from seat_redemption.core.exceptions import CapacityExhaustedError, ConflictError, NotFoundError, ValidationError
from seat_redemption.database.repositories import AccountRepository


@pytest.mark.unit
@pytest.mark.asyncio
async def test_select_least_loaded_prefers_fewest_used_seats(engine) -> None:
    await engine.add_account("busy@example.com", used_seats=3)
    light = await engine.add_account("light@example.com", used_seats=1)
    await engine.add_account("full@example.com", used_seats=5)

    async with engine.session_factory() as session:
        chosen = await engine.ledger.select_least_loaded(session)

    assert chosen.id == light.id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_select_least_loaded_filters_tier_and_bans(engine) -> None:
    await engine.add_account("banned@example.com", used_seats=0, is_banned=True)
    undemoted = await engine.add_account("plain@example.com", used_seats=4)
    demoted = await engine.add_account("demoted@example.com", used_seats=5, is_demoted=True)

    async with engine.session_factory() as session:
        assert (await engine.ledger.select_least_loaded(session, require_demoted=True)).id == demoted.id
        assert (await engine.ledger.select_least_loaded(session, require_demoted=False)).id == undemoted.id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_select_least_loaded_spreads_ties(engine) -> None:
    first = await engine.add_account("a@example.com", used_seats=2)
    second = await engine.add_account("b@example.com", used_seats=2)

    chosen = set()
    async with engine.session_factory() as session:
        for _ in range(30):
            chosen.add((await engine.ledger.select_least_loaded(session)).id)

    assert chosen == {first.id, second.id}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_select_least_loaded_returns_none_when_everything_is_full(engine) -> None:
    await engine.add_account("full@example.com", used_seats=5)
    await engine.add_account("demoted-full@example.com", used_seats=6, is_demoted=True)

    async with engine.session_factory() as session:
        assert await engine.ledger.select_least_loaded(session) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_claim_seat_stops_at_limit(engine) -> None:
    resource = await engine.add_account("edge@example.com", used_seats=4)

    async with engine.session_factory() as session, session.begin():
        await engine.ledger.claim_seat(session, resource)

    with pytest.raises(CapacityExhaustedError):
        async with engine.session_factory() as session, session.begin():
            await engine.ledger.claim_seat(session, resource)

    assert (await engine.account(resource.id)).used_seats == 5


@pytest.mark.unit
@pytest.mark.asyncio
async def test_demoted_resource_has_six_seats(engine) -> None:
    resource = await engine.add_account("demoted@example.com", used_seats=5, is_demoted=True)
    assert resource.seat_limit == 6

    async with engine.session_factory() as session, session.begin():
        await engine.ledger.claim_seat(session, resource)

    assert (await engine.account(resource.id)).free_seats == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_banned_resource_cannot_be_claimed(engine) -> None:
    resource = await engine.add_account("banned@example.com", is_banned=True)

    with pytest.raises(CapacityExhaustedError):
        async with engine.session_factory() as session, session.begin():
            await engine.ledger.claim_seat(session, resource)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_release_seat_never_goes_negative(engine) -> None:
    resource = await engine.add_account("a@example.com", used_seats=1)

    async with engine.session_factory() as session, session.begin():
        assert await engine.ledger.release_seat(session, resource.id)
        assert not await engine.ledger.release_seat(session, resource.id)

    assert (await engine.account(resource.id)).used_seats == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_usage_validates_range(engine) -> None:
    resource = await engine.add_account("a@example.com", used_seats=1)

    async with engine.session_factory() as session, session.begin():
        synced = await engine.ledger.sync_usage(session, resource.id, 4)
    assert synced.used_seats == 4

    with pytest.raises(ValidationError):
        async with engine.session_factory() as session, session.begin():
            await engine.ledger.sync_usage(session, resource.id, 6)

    with pytest.raises(NotFoundError):
        async with engine.session_factory() as session, session.begin():
            await engine.ledger.sync_usage(session, 999, 1)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_usage_refuses_when_a_seat_moved_since_the_read(engine, mocker) -> None:
    resource = await engine.add_account("a@example.com", used_seats=2)
    real_get = AccountRepository.get
    calls = []

    async def stale_get(self, resource_id):
        record = await real_get(self, resource_id)
        calls.append(resource_id)
        # First read sees the counter before a concurrent claim landed
        return replace(record, used_seats=1) if len(calls) == 1 else record

    mocker.patch.object(AccountRepository, "get", stale_get)

    with pytest.raises(ConflictError) as excinfo:
        async with engine.session_factory() as session, session.begin():
            await engine.ledger.sync_usage(session, resource.id, 4)

    assert excinfo.value.status_code == 409
    mocker.stopall()
    assert (await engine.account(resource.id)).used_seats == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_set_used_seats_with_expected_value(engine) -> None:
    resource = await engine.add_account("a@example.com", used_seats=2)

    async with engine.session_factory() as session, session.begin():
        accounts = AccountRepository(session)
        assert not await accounts.set_used_seats(resource.id, 3, expected=1)
        assert await accounts.set_used_seats(resource.id, 3, expected=2)

    assert (await engine.account(resource.id)).used_seats == 3
