# model/catalog.py
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func

from ..errors import NotFound
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .db import Event, Seat, Product, MembershipTier, SEAT_FREE
from .orders import seat_price
from .reservations import seat_state


def _event_dict(e: Event) -> Dict[str, Any]:
    return {
        "id": e.id,
        "title": e.title,
        "description": e.description or "",
        "starts_at": to_iso(e.starts_at),
    }


async def list_events(
    db: GatedAsyncSession,
    upcoming_only: bool = True,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    now = now_ts() if now is None else now
    stmt = select(Event).order_by(Event.starts_at)
    if upcoming_only:
        stmt = stmt.where(Event.starts_at >= now)
    async with db.gated():
        async with db.session.begin():
            events = (await db.session.execute(stmt)).scalars().all()
            seats = (await db.session.execute(
                select(Seat.event_id, func.count(Seat.id))
                .group_by(Seat.event_id)
            )).all()
    totals = {eid: n for eid, n in seats}
    out = []
    for e in events:
        d = _event_dict(e)
        d["seats"] = totals.get(e.id, 0)
        out.append(d)
    return out


async def get_event(
    db: GatedAsyncSession, event_id: str, now: Optional[float] = None
) -> Dict[str, Any]:
    """Event plus its seat map; lapsed holds show up as free."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            event = await db.session.get(Event, event_id)
            if event is None:
                raise NotFound("Event not found")
            seats = (await db.session.execute(
                select(Seat)
                .where(Seat.event_id == event_id)
                .order_by(Seat.seat_number)
                .execution_options(populate_existing=True)
            )).scalars().all()
            tiers = (await db.session.execute(
                select(MembershipTier).order_by(MembershipTier.priority)
            )).scalars().all()

    seat_map = []
    available = 0
    for s in seats:
        state = seat_state(s, now)
        if state == SEAT_FREE:
            available += 1
        seat_map.append({
            "id": s.id,
            "seat_number": s.seat_number,
            "tier": s.tier,
            "price": seat_price(s.tier),
            "status": state,
        })
    out = _event_dict(event)
    out.update(
        seats=seat_map,
        available=available,
        tiers=[{"name": t.name, "priority": t.priority} for t in tiers],
    )
    return out


async def list_products(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            products = (await db.session.execute(
                select(Product).order_by(Product.name)
            )).scalars().all()
    return [
        {
            "id": p.id,
            "name": p.name,
            "description": p.description or "",
            "price": p.price,
            "stock": p.stock,
        }
        for p in products
    ]
