# model/checkout.py
"""
Checkout / payment bridge.

`initiate` turns the pending order into a hosted checkout session.
`reconcile` is driven by the provider (webhook or back-URL) and settles the
order with conditional transitions, so replays and races change nothing:

    approved             pending -> paid       (holds confirmed, stock taken)
    rejected | cancelled pending -> cancelled  (holds released)
    anything else        order untouched, payment row updated
"""

from __future__ import annotations
from typing import Optional, Dict, Any, Callable, Awaitable

from loguru import logger
from sqlalchemy import select, text

from ..errors import (
    Invalid, HoldExpired, OrderNotFound, PaymentNotFound,
)
from ..helpers import now_ts, new_id, is_valid_email
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..mockpay import (
    PaymentAdapter, CheckoutRequest, CheckoutLine, ProviderPayment,
    map_status, STATUS_APPROVED, STATUS_FAILED, STATUS_REFUNDED,
)
from . import reservations
from .db import Order, Payment, ORDER_PAID, ORDER_CANCELLED
from .orders import (
    load_order, ensure_owner, ensure_pending, order_lines, recompute_in,
    cancel_pending,
)

OnPaid = Callable[[Order], Awaitable[None]]

PAYMENT_STATUSES = {
    "pending", "approved", "rejected", "cancelled", "refunded",
}


async def initiate(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    user_id: str,
    email: Optional[str],
    order_id: str,
    base_url: str,
    now: Optional[float] = None,
    on_paid: Optional[OnPaid] = None,
) -> Dict[str, Any]:
    """
    Hand the order to the payment provider. Returns
    {order_id, redirect_url, amount, currency, order_status}.

    An order that costs nothing (a 100% discount) is settled here and the
    buyer goes straight to the success page; providers refuse zero-priced
    lines.
    """
    now = now_ts() if now is None else now
    if not is_valid_email(email):
        raise Invalid("A valid email address is required for checkout")
    base_url = base_url.rstrip("/")

    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            ensure_owner(order, user_id)
            ensure_pending(order)
            before = len(await order_lines(db.session, order.id))
            await recompute_in(db.session, order, now)
            lines = [item for item, _ in
                     await order_lines(db.session, order.id)]
            lost = before - len(lines)
            if not lost:
                if not lines:
                    raise Invalid("Your order is empty")
                order.external_reference = order.id
    if lost:
        # pruning is committed; the buyer should look at the new total
        raise HoldExpired(
            "Some seat holds expired; please review your order"
        )

    back_urls = {
        "success": f"{base_url}/payments/return?outcome=success",
        "failure": f"{base_url}/payments/return?outcome=failure",
        "pending": f"{base_url}/payments/return?outcome=pending",
    }
    if order.total_amount == 0:
        await _settle_free(db, order, now, on_paid)
        return {
            "order_id": order.id,
            "redirect_url": (f"{back_urls['success']}"
                             f"&external_reference={order.id}"),
            "amount": 0,
            "currency": order.currency,
            "order_status": order.status,
        }

    request = CheckoutRequest(
        external_reference=order.id,
        amount=order.total_amount,
        currency=order.currency,
        payer_email=email.strip(),
        items=[
            CheckoutLine(
                title=item.label, quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in lines
        ],
        back_urls=back_urls,
        notification_url=f"{base_url}/payments/webhook",
    )
    if order.discount_amount:
        # providers only see line prices; express the discount as a line
        request.items = [CheckoutLine(
            title=f"Order {order.id[:8]}", quantity=1,
            unit_price=order.total_amount,
        )]

    async with timeit(f"provider.{adapter.name}.create_checkout"):
        session = await adapter.create_checkout(request)

    async with db.gated():
        async with db.session.begin():
            db.session.add(Payment(
                id=new_id(),
                order_id=order.id,
                provider=adapter.name,
                checkout_ref=session.checkout_ref,
                status="pending",
                amount=order.total_amount,
                currency=order.currency,
                created_at=now,
                updated_at=now,
            ))
    logger.info(
        "order={} checkout ref={} amount={}",
        order.id, session.checkout_ref, order.total_amount,
    )
    return {
        "order_id": order.id,
        "redirect_url": session.redirect_url,
        "amount": order.total_amount,
        "currency": order.currency,
        "order_status": order.status,
    }


async def _settle_free(
    db: GatedAsyncSession,
    order: Order,
    now: float,
    on_paid: Optional[OnPaid],
) -> bool:
    async with db.gated():
        async with db.session.begin():
            transitioned = await _settle_paid(db, order, now)
            if transitioned:
                db.session.add(Payment(
                    id=new_id(),
                    order_id=order.id,
                    provider="none",
                    status="approved",
                    amount=0,
                    currency=order.currency,
                    created_at=now,
                    updated_at=now,
                ))
            await db.session.refresh(order)
    if not transitioned:
        ensure_pending(order)
        return False
    logger.info("order={} settled without payment, total is 0", order.id)
    if on_paid is not None:
        await on_paid(order)
    return True


async def _find_order(db: GatedAsyncSession, reference: str) -> Order:
    async with db.session.begin():
        order = (await db.session.execute(
            select(Order)
            .where(Order.external_reference == reference)
            .execution_options(populate_existing=True)
        )).scalars().first()
        if order is None:
            order = await db.session.get(
                Order, reference, populate_existing=True
            )
    if order is None:
        raise OrderNotFound(f"No order for reference {reference}")
    return order


async def _upsert_payment(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    order: Order,
    payment: ProviderPayment,
    now: float,
) -> None:
    status = payment.status.lower()
    if status not in PAYMENT_STATUSES:
        status = "refunded" if map_status(status) == STATUS_REFUNDED \
            else "pending"

    row = (await db.session.execute(
        select(Payment).where(Payment.external_payment_id == payment.id)
    )).scalar_one_or_none()
    if row is None:
        # the row `initiate` left behind, still waiting for its payment id
        row = (await db.session.execute(
            select(Payment)
            .where(
                Payment.order_id == order.id,
                Payment.external_payment_id.is_(None),
            )
            .order_by(Payment.created_at.desc())
        )).scalars().first()
    if row is None:
        row = Payment(
            id=new_id(),
            order_id=order.id,
            provider=adapter.name,
            created_at=now,
        )
        db.session.add(row)
    row.external_payment_id = payment.id
    row.status = status
    row.amount = payment.amount or order.total_amount
    row.currency = payment.currency or order.currency
    row.updated_at = now
    await db.session.flush()


async def _settle_paid(
    db: GatedAsyncSession, order: Order, now: float
) -> bool:
    # conditional transition first: it is the write that picks the winner
    won = (await db.session.execute(text("""
        UPDATE orders
        SET status='paid', paid_at=:now
        WHERE id=:id AND status='pending'
        RETURNING id
    """), {"id": order.id, "now": now})).first()
    if won is None:
        return False

    await reservations.confirm_for_order(db.session, order.id, now)
    rows = (await db.session.execute(text("""
        SELECT product_id, quantity FROM order_items
        WHERE order_id=:oid AND kind='product'
    """), {"oid": order.id})).all()
    for product_id, quantity in rows:
        took = (await db.session.execute(text("""
            UPDATE products SET stock = stock - :q
            WHERE id=:pid AND stock >= :q
            RETURNING id
        """), {"pid": product_id, "q": quantity})).first()
        if took is None:
            logger.warning(
                "order={} product={} paid beyond stock (qty={})",
                order.id, product_id, quantity,
            )
    return True


async def reconcile(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    external_payment_id: str,
    now: Optional[float] = None,
    on_paid: Optional[OnPaid] = None,
) -> Order:
    """
    Bring our order in line with the provider's view of a payment.
    `on_paid` runs once, for the call that moved the order to paid.
    """
    now = now_ts() if now is None else now
    if not external_payment_id:
        raise Invalid("Missing payment id")

    async with timeit(f"provider.{adapter.name}.fetch_payment"):
        payment = await adapter.fetch_payment(external_payment_id)
    if payment is None:
        raise PaymentNotFound(external_payment_id)
    if not payment.external_reference:
        raise OrderNotFound("Payment carries no order reference")

    outcome = map_status(payment.status)
    transitioned = False
    async with db.gated():
        order = await _find_order(db, payment.external_reference)
        async with db.session.begin():
            if outcome == STATUS_APPROVED:
                transitioned = await _settle_paid(db, order, now)
            elif outcome == STATUS_FAILED:
                transitioned = await cancel_pending(db.session, order, now)
            await _upsert_payment(db, adapter, order, payment, now)
            await db.session.refresh(order)

    if outcome == STATUS_APPROVED:
        if transitioned:
            logger.info(
                "order={} paid via payment={} amount={}",
                order.id, payment.id, payment.amount,
            )
            if payment.amount and payment.amount != order.total_amount:
                logger.warning(
                    "order={} paid amount {} differs from total {}",
                    order.id, payment.amount, order.total_amount,
                )
        elif order.status == ORDER_CANCELLED:
            logger.warning(
                "order={} was cancelled but payment={} was approved; "
                "needs a refund", order.id, payment.id,
            )
    elif outcome == STATUS_FAILED and transitioned:
        logger.info(
            "order={} cancelled, payment={} {}",
            order.id, payment.id, payment.status,
        )
    elif outcome == STATUS_REFUNDED and order.status == ORDER_PAID:
        logger.warning(
            "order={} payment={} {}; order left paid",
            order.id, payment.id, payment.status,
        )

    if transitioned and order.status == ORDER_PAID and on_paid is not None:
        await on_paid(order)
    return order


__all__ = ["initiate", "reconcile"]
