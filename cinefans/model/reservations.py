# model/reservations.py
"""
Seat holds.

A seat is claimed with one conditional UPDATE (free, or held past its
deadline -> held by us). Whoever's UPDATE matches the row owns the seat;
everybody else gets SeatUnavailable. Hold expiry is a computed predicate
(`held_until <= now`), so a stale hold is reclaimable the moment it lapses
even if `sweep_expired` has not run yet.
"""

from __future__ import annotations
import os
from typing import Optional, Dict, Any, List, Tuple

from loguru import logger
from sqlalchemy import select, text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    NotFound, Invalid, Forbidden, Conflict, SeatUnavailable, TierNotAllowed,
)
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession
from .db import (
    Event, MembershipTier, Reservation, Seat, User,
    SEAT_FREE, SEAT_HELD, SEAT_RESERVED,
    RES_PENDING, RES_CONFIRMED, RES_RELEASED, RES_EXPIRED,
)

HOLD_WINDOW_SECONDS = max(
    1, int(os.getenv("RESERVATION_HOLD_SECONDS", "600"))
)


# ------------------------------------------------------------------------------
# Expiry predicates (evaluated on every read)
# ------------------------------------------------------------------------------

def is_active(reservation: Reservation, now: float) -> bool:
    if reservation.status == RES_CONFIRMED:
        return True
    return (
        reservation.status == RES_PENDING
        and reservation.expires_at is not None
        and now < reservation.expires_at
    )


def seat_state(seat: Seat, now: float) -> str:
    if seat.status == SEAT_HELD and (
        seat.held_until is None or seat.held_until <= now
    ):
        return SEAT_FREE
    return seat.status


def seconds_left(reservation: Reservation, now: float) -> Optional[int]:
    if reservation.status != RES_PENDING or reservation.expires_at is None:
        return None
    return max(0, int(reservation.expires_at - now))


# ------------------------------------------------------------------------------
# Eligibility (read phase)
# ------------------------------------------------------------------------------

async def check_eligibility(
    session: AsyncSession, seat_id: str, user_id: str, now: float
) -> Seat:
    (seat,) = await check_seats(session, [seat_id], user_id, now)
    return seat


async def check_seats(
    session: AsyncSession,
    seat_ids: List[str],
    user_id: str,
    now: float,
    event_id: Optional[str] = None,
) -> List[Seat]:
    """
    Every seat exists (in `event_id`, when given), they all belong to one
    event that is still ahead, and the user's membership tier may sit in
    each seat's tier (lower priority value = more privilege). Seats the
    tier rules out are reported together.
    """
    if not seat_ids:
        raise Invalid("Pick at least one seat")
    seats: List[Seat] = []
    for seat_id in seat_ids:
        seat = await session.get(Seat, seat_id, populate_existing=True)
        if seat is None or (
            event_id is not None and seat.event_id != event_id
        ):
            raise NotFound("Seat not found")
        seats.append(seat)
    if len({seat.event_id for seat in seats}) > 1:
        raise Invalid("All seats must belong to the same event")

    event = await session.get(Event, seats[0].event_id)
    if event is None:
        raise NotFound("Event not found")
    if event.starts_at < now:
        raise Invalid("Cannot reserve seats for past events")

    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    user_tier = None
    if user.membership_id:
        user_tier = await session.get(MembershipTier, user.membership_id)

    seat_tiers: Dict[str, Optional[MembershipTier]] = {}
    denied: List[Seat] = []
    for seat in seats:
        if seat.tier not in seat_tiers:
            seat_tiers[seat.tier] = (await session.execute(
                select(MembershipTier).where(MembershipTier.name == seat.tier)
            )).scalar_one_or_none()
        seat_tier = seat_tiers[seat.tier]
        if seat_tier is None:
            # unrestricted seat
            continue
        if user_tier is None or user_tier.priority > seat_tier.priority:
            denied.append(seat)
    if denied:
        raise TierNotAllowed(
            user_tier.name if user_tier else "current",
            " or ".join(sorted({seat.tier for seat in denied})),
            tuple(seat.seat_number for seat in denied)
            if len(seats) > 1 else (),
        )
    return seats


# ------------------------------------------------------------------------------
# Claim phase (must run as the first write of its transaction)
# ------------------------------------------------------------------------------

async def claim_seat(
    session: AsyncSession,
    seat: Seat,
    user_id: str,
    order_id: Optional[str],
    now: float,
) -> Reservation:
    """
    Compare-and-swap the seat into HELD and insert the reservation row.
    Caller owns the transaction.
    """
    reservation_id = new_id()
    expires_at = now + HOLD_WINDOW_SECONDS

    row = (await session.execute(text("""
        UPDATE seats
        SET status='held', held_by=:rid, held_until=:until
        WHERE id=:sid
          AND (status='free'
               OR (status='held' AND held_until <= :now))
        RETURNING id
    """), {
        "rid": reservation_id, "until": expires_at,
        "sid": seat.id, "now": now,
    })).first()
    if row is None:
        raise SeatUnavailable(seat.seat_number)

    # whoever held it before us lapsed
    await session.execute(text("""
        UPDATE reservations
        SET status='expired'
        WHERE seat_id=:sid AND status='pending'
    """), {"sid": seat.id})

    reservation = Reservation(
        id=reservation_id,
        seat_id=seat.id,
        user_id=user_id,
        order_id=order_id,
        status=RES_PENDING,
        created_at=now,
        expires_at=expires_at,
    )
    session.add(reservation)
    await session.flush()
    return reservation


async def reserve(
    db: GatedAsyncSession,
    seat_id: str,
    user_id: str,
    order_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Reservation:
    """Hold one seat for HOLD_WINDOW_SECONDS or raise SeatUnavailable."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            seat = await check_eligibility(db.session, seat_id, user_id, now)
        async with db.session.begin():
            reservation = await claim_seat(
                db.session, seat, user_id, order_id, now
            )
    logger.info(
        "hold seat={} reservation={} user={} until={:.0f}",
        seat_id, reservation.id, user_id, reservation.expires_at,
    )
    return reservation


# ------------------------------------------------------------------------------
# Release / expiry
# ------------------------------------------------------------------------------

async def release_rows(
    session: AsyncSession, reservation_ids: List[str], new_status: str
) -> int:
    """
    Free the seats still held by these reservations and close the pending
    reservations with `new_status`. Caller owns the transaction.
    """
    if not reservation_ids:
        return 0
    await session.execute(
        text("""
            UPDATE seats
            SET status='free', held_by=NULL, held_until=NULL
            WHERE status='held' AND held_by IN :ids
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": list(reservation_ids)},
    )
    rows = (await session.execute(
        text("""
            UPDATE reservations
            SET status=:st
            WHERE status='pending' AND id IN :ids
            RETURNING id
        """).bindparams(bindparam("ids", expanding=True)),
        {"st": new_status, "ids": list(reservation_ids)},
    )).all()
    return len(rows)


async def release(
    db: GatedAsyncSession,
    reservation_id: str,
    user_id: Optional[str] = None,
) -> Reservation:
    """Explicitly give a held seat back. No-op for released/expired holds."""
    async with db.gated():
        async with db.session.begin():
            reservation = await db.session.get(
                Reservation, reservation_id, populate_existing=True
            )
            if reservation is None:
                raise NotFound("Reservation not found")
            if user_id is not None and reservation.user_id != user_id:
                raise Forbidden("This reservation belongs to someone else")
            if reservation.status == RES_CONFIRMED:
                raise Conflict("This seat is already paid for")
            if reservation.status == RES_PENDING:
                await release_rows(
                    db.session, [reservation.id], RES_RELEASED
                )
                await db.session.refresh(reservation)
                logger.info(
                    "release reservation={} seat={}",
                    reservation.id, reservation.seat_id,
                )
    return reservation


async def sweep_expired(
    session: AsyncSession, now: float
) -> Dict[str, Any]:
    """
    Housekeeping: materialise lapsed holds. Correctness does not depend on
    this, every read re-checks `held_until`. Caller owns the transaction.
    """
    freed = (await session.execute(text("""
        UPDATE seats
        SET status='free', held_by=NULL, held_until=NULL
        WHERE status='held' AND held_until <= :now
        RETURNING id
    """), {"now": now})).all()
    expired = (await session.execute(text("""
        UPDATE reservations
        SET status='expired'
        WHERE status='pending' AND expires_at <= :now
        RETURNING id, order_id
    """), {"now": now})).all()
    return {
        "seats_freed": len(freed),
        "reservations_expired": len(expired),
        "order_ids": sorted({r[1] for r in expired if r[1]}),
    }


# ------------------------------------------------------------------------------
# Confirmation (payment approved)
# ------------------------------------------------------------------------------

async def confirm_for_order(
    session: AsyncSession, order_id: str, now: float
) -> Tuple[List[str], List[str]]:
    """
    Make the order's seat holds permanent. A hold that lapsed is still
    honoured if nobody else claimed the seat in the meantime (late payment).
    Returns (confirmed_ids, lost_ids). Caller owns the transaction.
    """
    rows = (await session.execute(text("""
        SELECT r.id, r.seat_id, r.status
        FROM order_items AS i
        JOIN reservations AS r ON r.id = i.reservation_id
        WHERE i.order_id=:oid AND i.kind='seat'
    """), {"oid": order_id})).all()

    confirmed: List[str] = []
    lost: List[str] = []
    for rid, seat_id, status in rows:
        if status == RES_CONFIRMED:
            confirmed.append(rid)
            continue
        if status not in (RES_PENDING, RES_EXPIRED):
            lost.append(rid)
            continue
        got = (await session.execute(text("""
            UPDATE seats
            SET status='reserved', held_by=:rid, held_until=NULL
            WHERE id=:sid
              AND ((status='held' AND held_by=:rid)
                   OR status='free'
                   OR (status='held' AND held_until <= :now))
            RETURNING id
        """), {"rid": rid, "sid": seat_id, "now": now})).first()
        if got is None:
            await session.execute(text("""
                UPDATE reservations SET status='expired'
                WHERE id=:rid AND status='pending'
            """), {"rid": rid})
            lost.append(rid)
            continue
        await session.execute(text("""
            UPDATE reservations
            SET status='expired'
            WHERE seat_id=:sid AND status='pending' AND id != :rid
        """), {"sid": seat_id, "rid": rid})
        await session.execute(text("""
            UPDATE reservations
            SET status='confirmed', expires_at=NULL
            WHERE id=:rid
        """), {"rid": rid})
        confirmed.append(rid)

    if lost:
        logger.warning(
            "order={} paid but lost seats for reservations={}",
            order_id, lost,
        )
    return confirmed, lost


__all__ = [
    "HOLD_WINDOW_SECONDS", "SEAT_FREE", "SEAT_HELD", "SEAT_RESERVED",
    "is_active", "seat_state", "seconds_left", "check_eligibility",
    "check_seats",
    "claim_seat", "reserve", "release", "release_rows", "sweep_expired",
    "confirm_for_order",
]
