# model/orders.py
"""
Cart / order aggregation.

A user has at most one PENDING order (the cart). It is created implicitly by
the first `add_item`. After every mutation the totals are recomputed from
the lines whose holds are still active; seat lines whose hold lapsed are
pruned on the way. An order that loses its last line is cancelled.

    pending --[payment approved]--> paid
    pending --[all lines removed | holds lapsed]--> cancelled
"""

from __future__ import annotations
import json
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Iterable

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    NotFound, Invalid, Forbidden, OrderNotFound, OrderClosed,
    InsufficientStock,
)
from ..helpers import now_ts, new_id, to_iso, percent_of
from ..infra.sql import GatedAsyncSession
from . import reservations
from .db import (
    Event, Order, OrderItem, Product, Reservation,
    ORDER_PENDING, ORDER_CANCELLED, ITEM_SEAT, ITEM_PRODUCT,
    RES_PENDING, RES_RELEASED, RES_EXPIRED,
)
from .discounts import resolve_in

# cents per seat tier
SEAT_TIER_PRICES: Dict[str, int] = json.loads(os.environ.get(
    "SEAT_TIER_PRICES", '{"Gold": 5000, "Silver": 3500, "Bronze": 2500}'
))
DEFAULT_SEAT_PRICE = 2500
CURRENCY = os.environ.get("CURRENCY", "eur")


@dataclass(frozen=True)
class SeatItem:
    seat_id: str


@dataclass(frozen=True)
class SeatsItem:
    seat_ids: Tuple[str, ...]
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ProductItem:
    product_id: str
    quantity: int = 1


def seat_price(tier: str) -> int:
    return int(SEAT_TIER_PRICES.get(tier, DEFAULT_SEAT_PRICE))


def compute_totals(
    lines: Iterable[Tuple[int, int]], percentage: int
) -> Tuple[int, int, int]:
    """(unit_price, quantity) lines -> (subtotal, discount_amount, total)"""
    subtotal = sum(int(price) * int(qty) for price, qty in lines)
    discount_amount = min(subtotal, percent_of(subtotal, int(percentage)))
    return subtotal, discount_amount, subtotal - discount_amount


# ------------------------------------------------------------------------------
# Helpers (caller owns the transaction)
# ------------------------------------------------------------------------------

async def load_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound()
    return order


def ensure_owner(order: Order, user_id: Optional[str],
                 is_admin: bool = False) -> None:
    if user_id is None or is_admin:
        return
    if order.user_id != user_id:
        raise Forbidden("This order belongs to someone else")


def ensure_pending(order: Order) -> None:
    if order.status != ORDER_PENDING:
        raise OrderClosed(order.status)


async def _find_pending(
    session: AsyncSession, user_id: str
) -> Optional[Order]:
    return (await session.execute(
        select(Order)
        .where(Order.user_id == user_id, Order.status == ORDER_PENDING)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def _get_or_create_pending(
    session: AsyncSession, user_id: str, now: float
) -> Order:
    order = await _find_pending(session, user_id)
    if order is not None:
        return order
    order = Order(
        id=new_id(),
        user_id=user_id,
        status=ORDER_PENDING,
        currency=CURRENCY,
        created_at=now,
    )
    session.add(order)
    await session.flush()
    logger.info("order={} created for user={}", order.id, user_id)
    return order


async def order_lines(
    session: AsyncSession, order_id: str
) -> List[Tuple[OrderItem, Optional[Reservation]]]:
    rows = (await session.execute(
        select(OrderItem, Reservation)
        .outerjoin(Reservation, Reservation.id == OrderItem.reservation_id)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.created_at, OrderItem.id)
        .execution_options(populate_existing=True)
    )).all()
    return [(item, res) for item, res in rows]


async def cancel_pending(
    session: AsyncSession, order: Order, now: float
) -> bool:
    row = (await session.execute(text("""
        UPDATE orders
        SET status='cancelled', cancelled_at=:now
        WHERE id=:id AND status='pending'
        RETURNING id
    """), {"id": order.id, "now": now})).first()
    if row is None:
        return False
    held = (await session.execute(text("""
        SELECT id FROM reservations
        WHERE order_id=:oid AND status='pending'
    """), {"oid": order.id})).scalars().all()
    await reservations.release_rows(session, list(held), RES_RELEASED)
    await session.refresh(order)
    logger.info("order={} cancelled", order.id)
    return True


async def recompute_in(
    session: AsyncSession,
    order: Order,
    now: float,
    removed: int = 0,
) -> int:
    """
    Prune seat lines whose hold is no longer active, then rewrite the
    totals. `removed` counts lines the caller already deleted; if anything
    went away and nothing is left, the order is cancelled.
    """
    lines = await order_lines(session, order.id)
    keep: List[OrderItem] = []
    lapsed: List[str] = []
    for item, res in lines:
        if item.kind == ITEM_SEAT and (
            res is None or not reservations.is_active(res, now)
        ):
            if res is not None and res.status == RES_PENDING:
                lapsed.append(res.id)
            await session.delete(item)
            removed += 1
            continue
        keep.append(item)
    if lapsed:
        await reservations.release_rows(session, lapsed, RES_EXPIRED)

    subtotal, discount_amount, total = compute_totals(
        ((item.unit_price, item.quantity) for item in keep),
        order.discount_percentage or 0,
    )
    order.subtotal = subtotal
    order.discount_amount = discount_amount
    order.total_amount = total
    await session.flush()

    if removed and not keep:
        await cancel_pending(session, order, now)
    return order.total_amount


async def order_view(
    session: AsyncSession, order: Order, now: float
) -> Dict[str, Any]:
    items = []
    for item, res in await order_lines(session, order.id):
        items.append({
            "item_id": item.id,
            "kind": item.kind,
            "label": item.label,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.unit_price * item.quantity,
            "product_id": item.product_id,
            "reservation_id": item.reservation_id,
            "seat_id": res.seat_id if res is not None else None,
            "reservation_status": res.status if res is not None else None,
            "expires_at": to_iso(res.expires_at) if res is not None else None,
            "seconds_left": (
                reservations.seconds_left(res, now)
                if res is not None else None
            ),
        })
    discount = None
    if order.discount_code:
        discount = {
            "code": order.discount_code,
            "percentage": order.discount_percentage,
            "amount": order.discount_amount,
        }
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "discount": discount,
        "total": order.total_amount,
        "external_reference": order.external_reference,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "cancelled_at": to_iso(order.cancelled_at),
        "items": items,
    }


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def _add_seats(
    db: GatedAsyncSession,
    user_id: str,
    item: SeatItem | SeatsItem,
    order_id: Optional[str],
    now: float,
) -> Order:
    if isinstance(item, SeatItem):
        seat_ids, event_id = [item.seat_id], None
    else:
        seat_ids, event_id = list(dict.fromkeys(item.seat_ids)), item.event_id

    async with db.session.begin():
        seats = await reservations.check_seats(
            db.session, seat_ids, user_id, now, event_id
        )
        if order_id is not None:
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)

    # all seats or none: the first SeatUnavailable rolls back every claim
    async with db.session.begin():
        # seat claims first: they are the writes that serialise racing buyers
        held = [
            await reservations.claim_seat(
                db.session, seat, user_id, None, now
            )
            for seat in seats
        ]
        if order_id is not None:
            order = await load_order(db.session, order_id)
            ensure_pending(order)
        else:
            order = await _get_or_create_pending(db.session, user_id, now)

        event = await db.session.get(Event, seats[0].event_id)
        title = event.title if event is not None else "Event"
        for seat, reservation in zip(seats, held):
            reservation.order_id = order.id
            db.session.add(OrderItem(
                id=new_id(),
                order_id=order.id,
                kind=ITEM_SEAT,
                reservation_id=reservation.id,
                label=f"{title} - Seat {seat.seat_number} ({seat.tier})",
                quantity=1,
                unit_price=seat_price(seat.tier),
                created_at=now,
            ))
        await db.session.flush()
        await recompute_in(db.session, order, now)
    logger.info(
        "order={} hold seats={} reservations={} total={}",
        order.id, [seat.id for seat in seats], [r.id for r in held],
        order.total_amount,
    )
    return order


async def _add_product(
    db: GatedAsyncSession,
    user_id: str,
    item: ProductItem,
    order_id: Optional[str],
    now: float,
) -> Order:
    if item.quantity < 1:
        raise Invalid("Quantity must be at least 1")
    async with db.session.begin():
        product = await db.session.get(
            Product, item.product_id, populate_existing=True
        )
        if product is None:
            raise NotFound("Product not found")

        if order_id is not None:
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
        else:
            order = await _get_or_create_pending(db.session, user_id, now)

        line = (await db.session.execute(
            select(OrderItem).where(
                OrderItem.order_id == order.id,
                OrderItem.product_id == product.id,
            )
        )).scalar_one_or_none()
        quantity = item.quantity + (line.quantity if line else 0)
        if product.stock < quantity:
            raise InsufficientStock("Insufficient stock")

        if line is not None:
            line.quantity = quantity
            line.unit_price = product.price
        else:
            db.session.add(OrderItem(
                id=new_id(),
                order_id=order.id,
                kind=ITEM_PRODUCT,
                product_id=product.id,
                label=product.name,
                quantity=quantity,
                unit_price=product.price,
                created_at=now,
            ))
        await db.session.flush()
        await recompute_in(db.session, order, now)
    return order


async def add_item(
    db: GatedAsyncSession,
    user_id: str,
    item: SeatItem | SeatsItem | ProductItem,
    order_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Order:
    """
    Add seats (held for the hold window) or a product to `order_id`, or to
    the user's pending order, creating it on first use. A `SeatsItem` holds
    every seat it names or none of them.
    """
    now = now_ts() if now is None else now
    if isinstance(item, (SeatItem, SeatsItem)):
        add = _add_seats
    elif isinstance(item, ProductItem):
        add = _add_product
    else:
        raise Invalid("Unknown item type")

    async with db.gated():
        try:
            return await add(db, user_id, item, order_id, now)
        except IntegrityError:
            # lost the race creating the user's cart; it exists now
            if order_id is not None:
                raise
            logger.info("pending order race for user={}, retrying", user_id)
            return await add(db, user_id, item, order_id, now)


async def update_quantity(
    db: GatedAsyncSession,
    user_id: str,
    order_id: str,
    item_id: str,
    quantity: int,
    now: Optional[float] = None,
) -> Order:
    if quantity == 0:
        return await remove_item(db, user_id, order_id, item_id, now=now)
    if quantity < 0:
        raise Invalid("Quantity cannot be negative")
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
            line = await db.session.get(OrderItem, item_id)
            if line is None or line.order_id != order.id:
                raise NotFound("Item not found in order")
            if line.kind != ITEM_PRODUCT:
                raise Invalid("Seat lines always have quantity 1")
            product = await db.session.get(Product, line.product_id)
            if product is None or product.stock < quantity:
                raise InsufficientStock("Insufficient stock")
            line.quantity = quantity
            line.unit_price = product.price
            await db.session.flush()
            await recompute_in(db.session, order, now)
    return order


async def remove_item(
    db: GatedAsyncSession,
    user_id: str,
    order_id: str,
    item_id: str,
    now: Optional[float] = None,
) -> Order:
    """Drop a line; seat lines give their hold back. Last line cancels."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
            line = await db.session.get(OrderItem, item_id)
            if line is None or line.order_id != order.id:
                raise NotFound("Item not found in order")
            if line.kind == ITEM_SEAT and line.reservation_id:
                await reservations.release_rows(
                    db.session, [line.reservation_id], RES_RELEASED
                )
            await db.session.delete(line)
            await db.session.flush()
            await recompute_in(db.session, order, now, removed=1)
    logger.info("order={} removed item={}", order.id, item_id)
    return order


async def recompute(
    db: GatedAsyncSession,
    order_id: str,
    now: Optional[float] = None,
) -> int:
    """Total after pruning lapsed holds. Calling it twice changes nothing."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            if order.status == ORDER_PENDING:
                await recompute_in(db.session, order, now)
            return order.total_amount


async def apply_discount(
    db: GatedAsyncSession,
    user_id: str,
    order_id: str,
    code: str,
    membership_id: Optional[str],
    now: Optional[float] = None,
) -> Order:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
            info = await resolve_in(db.session, code, membership_id, now)
            order.discount_code = info.code
            order.discount_percentage = info.percentage
            await recompute_in(db.session, order, now)
    logger.info(
        "order={} discount={} ({}%) total={}",
        order.id, info.code, info.percentage, order.total_amount,
    )
    return order


async def clear_discount(
    db: GatedAsyncSession,
    user_id: str,
    order_id: str,
    now: Optional[float] = None,
) -> Order:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
            order.discount_code = None
            order.discount_percentage = 0
            await recompute_in(db.session, order, now)
    return order


async def get_order(
    db: GatedAsyncSession,
    order_id: str,
    user_id: Optional[str] = None,
    is_admin: bool = False,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id, is_admin)
            if order.status == ORDER_PENDING:
                await recompute_in(db.session, order, now)
            return await order_view(db.session, order, now)


async def get_pending_order(
    db: GatedAsyncSession,
    user_id: str,
    now: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await _find_pending(db.session, user_id)
            if order is None:
                return None
            await recompute_in(db.session, order, now)
            return await order_view(db.session, order, now)


async def sweep(
    db: GatedAsyncSession, now: Optional[float] = None
) -> Dict[str, Any]:
    """Expire lapsed holds, prune their lines, cancel carts left empty."""
    now = now_ts() if now is None else now
    cancelled = 0
    async with db.gated():
        async with db.session.begin():
            out = await reservations.sweep_expired(db.session, now)
            for oid in out["order_ids"]:
                order = await db.session.get(
                    Order, oid, populate_existing=True
                )
                if order is None or order.status != ORDER_PENDING:
                    continue
                await recompute_in(db.session, order, now)
                if order.status == ORDER_CANCELLED:
                    cancelled += 1
    out["orders_cancelled"] = cancelled
    if out["seats_freed"] or out["reservations_expired"]:
        logger.info(
            "sweep freed={} expired={} cancelled={}",
            out["seats_freed"], out["reservations_expired"], cancelled,
        )
    return out


async def list_orders(
    db: GatedAsyncSession, limit: int = 200
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                text("""
                    SELECT o.id, o.status, o.total_amount, o.currency,
                           o.discount_code, o.created_at, o.paid_at,
                           u.email,
                           (SELECT COUNT(*) FROM order_items AS i
                            WHERE i.order_id = o.id) AS items
                    FROM orders AS o
                    JOIN users AS u ON u.id = o.user_id
                    ORDER BY o.created_at DESC
                    LIMIT :limit
                """),
                {"limit": max(1, min(limit, 500))},
            )).mappings().all()
    return [
        {
            "id": r["id"],
            "status": r["status"],
            "total": r["total_amount"],
            "currency": r["currency"],
            "discount_code": r["discount_code"] or "",
            "items": int(r["items"]),
            "email": r["email"] or "",
            "created_at": to_iso(r["created_at"]),
            "paid_at": to_iso(r["paid_at"]),
        }
        for r in rows
    ]
