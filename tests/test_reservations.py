import asyncio

import pytest
from sqlalchemy import select, func

from cinefans.errors import (
    Conflict, Forbidden, Invalid, NotFound, SeatUnavailable, TierNotAllowed,
)
from cinefans.model import reservations
from cinefans.model.db import Reservation, Seat, User


async def _add_users(db, n, now, membership_id="tier-gold"):
    async with db.session.begin():
        db.session.add_all([
            User(id=f"u-{i}", email=f"buyer{i}@example.com",
                 membership_id=membership_id, created_at=now)
            for i in range(n)
        ])
    return [f"u-{i}" for i in range(n)]


async def test_reserve_holds_seat(db, world):
    res = await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)
    assert res.status == "pending"
    assert res.expires_at == world.now + reservations.HOLD_WINDOW_SECONDS

    seat = await db.session.get(Seat, "seat-e1", populate_existing=True)
    assert seat.status == "held"
    assert seat.held_by == res.id


async def test_reserving_a_held_seat_conflicts(db, world):
    await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)
    with pytest.raises(Conflict) as exc:
        await reservations.reserve(
            db, "seat-e1", "u-alice", now=world.now + 1
        )
    assert isinstance(exc.value, SeatUnavailable)
    assert "E1" in exc.value.reason


async def test_concurrent_claims_have_one_winner(make_db, world):
    users = await _add_users(make_db(), 8, world.now)

    async def attempt(user_id):
        try:
            return await reservations.reserve(
                make_db(), "seat-e1", user_id, now=world.now
            )
        except SeatUnavailable:
            return None

    results = await asyncio.gather(*(attempt(u) for u in users))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1

    db = make_db()
    active = (await db.session.execute(
        select(func.count(Reservation.id)).where(
            Reservation.seat_id == "seat-e1",
            Reservation.status == "pending",
        )
    )).scalar_one()
    assert active == 1


async def test_elapsed_hold_is_void(db, world):
    first = await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)
    later = world.now + reservations.HOLD_WINDOW_SECONDS + 1

    # no sweep in between; expiry is evaluated on the claim itself
    second = await reservations.reserve(db, "seat-e1", "u-alice", now=later)
    assert second.seat_id == "seat-e1"

    old = await db.session.get(Reservation, first.id, populate_existing=True)
    assert old.status == "expired"
    assert not reservations.is_active(old, later)


async def test_seat_state_reads_lapsed_hold_as_free(db, world):
    await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)
    seat = await db.session.get(Seat, "seat-e1", populate_existing=True)
    assert reservations.seat_state(seat, world.now) == "held"
    later = world.now + reservations.HOLD_WINDOW_SECONDS
    assert reservations.seat_state(seat, later) == "free"


async def test_tier_gate(db, world):
    # bronze member may not sit in gold seats
    with pytest.raises(Forbidden) as exc:
        await reservations.reserve(db, "seat-a1", "u-bob", now=world.now)
    assert isinstance(exc.value, TierNotAllowed)

    # gold member may sit anywhere
    res = await reservations.reserve(db, "seat-e2", "u-alice", now=world.now)
    assert res.status == "pending"


async def test_past_event_and_missing_seat(db, world):
    with pytest.raises(Invalid):
        await reservations.reserve(db, "seat-old", "u-bob", now=world.now)
    with pytest.raises(NotFound):
        await reservations.reserve(db, "nope", "u-bob", now=world.now)


async def test_release(db, make_db, world):
    res = await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)

    with pytest.raises(Forbidden):
        await reservations.release(db, res.id, "u-alice")

    released = await reservations.release(db, res.id, "u-bob")
    assert released.status == "released"
    seat = await make_db().session.get(Seat, "seat-e1")
    assert seat.status == "free"

    # releasing again is a no-op
    again = await reservations.release(db, res.id, "u-bob")
    assert again.status == "released"


async def test_sweep_expired(db, world):
    await reservations.reserve(db, "seat-e1", "u-bob", now=world.now)
    await reservations.reserve(db, "seat-e2", "u-alice", now=world.now + 5)

    cutoff = world.now + reservations.HOLD_WINDOW_SECONDS + 1
    async with db.session.begin():
        out = await reservations.sweep_expired(db.session, cutoff)
    assert out["seats_freed"] == 1
    assert out["reservations_expired"] == 1

    seat = await db.session.get(Seat, "seat-e1", populate_existing=True)
    assert seat.status == "free"
    seat2 = await db.session.get(Seat, "seat-e2", populate_existing=True)
    assert seat2.status == "held"
