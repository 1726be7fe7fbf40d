import asyncio
import json

import pytest
from sqlalchemy import select

from cinefans.errors import (
    HoldExpired, Invalid, OrderClosed, OrderNotFound, PaymentNotFound,
)
from cinefans.mockpay import (
    PaymentAdapter, CheckoutSession, ProviderPayment,
)
from cinefans.model import checkout, orders, reservations
from cinefans.model.db import (
    Discount, Order, OrderItem, Payment, Product, Reservation, Seat,
)
from cinefans.model.orders import ProductItem, SeatItem


class FakePay(PaymentAdapter):
    """Provider whose payments the test sets by hand."""

    name = "fake"

    def __init__(self):
        self.requests = []
        self.payments = {}

    async def create_checkout(self, request):
        self.requests.append(request)
        ref = f"pref-{len(self.requests)}"
        return CheckoutSession(
            checkout_ref=ref, redirect_url=f"https://pay.example/{ref}"
        )

    async def fetch_payment(self, payment_id):
        return self.payments.get(payment_id)

    def verify_webhook(self, payload, headers):
        return json.loads(payload)

    def pay(self, payment_id, order_id, status="approved", amount=0):
        self.payments[payment_id] = ProviderPayment(
            id=payment_id, status=status, external_reference=order_id,
            amount=amount, currency="eur",
        )


@pytest.fixture
def provider():
    return FakePay()


async def _payments(db, order_id):
    return (await db.session.execute(
        select(Payment).where(Payment.order_id == order_id)
    )).scalars().all()


async def test_approved_payment_settles_once(db, make_db, world, provider):
    async with db.session.begin():
        db.session.add(Order(
            id="order-42", user_id="u-bob", status="pending",
            subtotal=2000, total_amount=2000, currency="eur",
            external_reference="order-42", created_at=world.now,
        ))
        db.session.add(OrderItem(
            id="line-1", order_id="order-42", kind="product",
            product_id="p-popcorn", label="Popcorn", quantity=2,
            unit_price=1000, created_at=world.now,
        ))
    provider.pay("pay-1", "order-42", amount=2000)

    announced = []

    async def on_paid(order):
        announced.append(order.id)

    first = await checkout.reconcile(
        db, provider, "pay-1", now=world.now, on_paid=on_paid
    )
    second = await checkout.reconcile(
        make_db(), provider, "pay-1", now=world.now + 10, on_paid=on_paid
    )
    assert first.status == second.status == "paid"
    assert second.paid_at == world.now
    assert announced == ["order-42"]

    check = make_db()
    rows = await _payments(check, "order-42")
    assert len(rows) == 1
    assert rows[0].external_payment_id == "pay-1"
    assert rows[0].status == "approved"
    popcorn = await check.session.get(Product, "p-popcorn")
    assert popcorn.stock == 8


async def test_concurrent_notifications(make_db, world, provider):
    db = make_db()
    order = await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    provider.pay("pay-1", order.id, amount=1000)

    announced = []

    async def on_paid(o):
        announced.append(o.id)

    done = await asyncio.gather(*(
        checkout.reconcile(
            make_db(), provider, "pay-1", now=world.now, on_paid=on_paid
        )
        for _ in range(5)
    ))
    assert {o.status for o in done} == {"paid"}
    assert announced == [order.id]


async def test_full_checkout_confirms_seat(db, make_db, world, provider):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )

    out = await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test/", now=world.now,
    )
    assert out["order_id"] == order.id
    assert out["amount"] == 3500
    assert out["redirect_url"] == "https://pay.example/pref-1"

    sent = provider.requests[0]
    assert sent.external_reference == order.id
    assert sent.notification_url == "http://shop.test/payments/webhook"
    assert sent.back_urls["success"].startswith(
        "http://shop.test/payments/return"
    )
    assert sorted(line.unit_price for line in sent.items) == [1000, 2500]

    provider.pay("pay-9", order.id, amount=3500)
    paid = await checkout.reconcile(db, provider, "pay-9", now=world.now + 5)
    assert paid.status == "paid"

    check = make_db()
    seat = await check.session.get(Seat, "seat-e1")
    assert seat.status == "reserved"
    res = (await check.session.execute(
        select(Reservation).where(Reservation.seat_id == "seat-e1")
    )).scalar_one()
    assert res.status == "confirmed"
    assert res.expires_at is None

    # the payment row written at checkout is the one that got the id
    rows = await _payments(check, order.id)
    assert len(rows) == 1
    assert rows[0].checkout_ref == "pref-1"
    assert rows[0].external_payment_id == "pay-9"

    with pytest.raises(OrderClosed):
        await orders.add_item(
            db, "u-bob", ProductItem("p-popcorn"), order_id=order.id,
            now=world.now,
        )


async def test_discount_is_sent_as_a_single_line(db, world, provider):
    order = await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    await orders.add_item(db, "u-bob", ProductItem("p-nachos"), now=world.now)
    await orders.apply_discount(
        db, "u-bob", order.id, "TEN", "tier-bronze", now=world.now
    )
    out = await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now,
    )
    assert out["amount"] == 2700
    (line,) = provider.requests[0].items
    assert line.unit_price == 2700
    assert line.quantity == 1


async def test_free_order_skips_the_provider(db, make_db, world, provider):
    async with db.session.begin():
        db.session.add(Discount(id="d-comp", code="COMP", percentage=100))
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    await orders.apply_discount(
        db, "u-bob", order.id, "COMP", "tier-bronze", now=world.now
    )

    announced = []

    async def on_paid(o):
        announced.append(o.id)

    out = await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now, on_paid=on_paid,
    )
    assert provider.requests == []
    assert out["amount"] == 0
    assert out["order_status"] == "paid"
    assert out["redirect_url"] == (
        "http://shop.test/payments/return?outcome=success"
        f"&external_reference={order.id}"
    )
    assert announced == [order.id]

    check = make_db()
    seat = await check.session.get(Seat, "seat-e1")
    assert seat.status == "reserved"
    popcorn = await check.session.get(Product, "p-popcorn")
    assert popcorn.stock == 9
    (payment,) = await _payments(check, order.id)
    assert payment.provider == "none"
    assert payment.status == "approved"
    assert payment.amount == 0


async def test_rejected_payment_cancels_and_frees_seat(
    db, make_db, world, provider
):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now,
    )
    provider.pay("pay-1", order.id, status="rejected")

    announced = []

    async def on_paid(o):
        announced.append(o.id)

    done = await checkout.reconcile(
        db, provider, "pay-1", now=world.now, on_paid=on_paid
    )
    assert done.status == "cancelled"
    assert announced == []

    # seat can be held again right away
    res = await reservations.reserve(
        make_db(), "seat-e1", "u-alice", now=world.now + 1
    )
    assert res.status == "pending"

    # a later approval cannot revive a cancelled order
    provider.pay("pay-2", order.id, status="approved", amount=2500)
    late = await checkout.reconcile(
        make_db(), provider, "pay-2", now=world.now + 2, on_paid=on_paid
    )
    assert late.status == "cancelled"
    assert announced == []


async def test_pending_payment_leaves_order_alone(db, world, provider):
    order = await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    provider.pay("pay-1", order.id, status="in_process")
    done = await checkout.reconcile(db, provider, "pay-1", now=world.now)
    assert done.status == "pending"
    rows = await _payments(db, order.id)
    assert rows[0].status == "pending"


async def test_late_payment_keeps_unclaimed_seat(
    db, make_db, world, provider
):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now,
    )
    later = world.now + reservations.HOLD_WINDOW_SECONDS + 60
    provider.pay("pay-1", order.id, amount=2500)
    done = await checkout.reconcile(db, provider, "pay-1", now=later)
    assert done.status == "paid"

    seat = await make_db().session.get(Seat, "seat-e1")
    assert seat.status == "reserved"


async def test_late_payment_after_seat_was_taken(
    db, make_db, world, provider
):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now,
    )
    later = world.now + reservations.HOLD_WINDOW_SECONDS + 60
    alice = await reservations.reserve(
        make_db(), "seat-e1", "u-alice", now=later
    )

    provider.pay("pay-1", order.id, amount=2500)
    done = await checkout.reconcile(
        make_db(), provider, "pay-1", now=later + 1
    )
    assert done.status == "paid"

    check = make_db()
    seat = await check.session.get(Seat, "seat-e1")
    assert seat.status == "held"
    assert seat.held_by == alice.id
    bobs = (await check.session.execute(
        select(Reservation).where(Reservation.user_id == "u-bob")
    )).scalar_one()
    assert bobs.status == "expired"


async def test_late_payment_after_sweep_cancelled_the_cart(
    db, make_db, world, provider
):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await checkout.initiate(
        db, provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=world.now,
    )
    later = world.now + reservations.HOLD_WINDOW_SECONDS + 60
    out = await orders.sweep(make_db(), now=later)
    assert out["orders_cancelled"] == 1

    provider.pay("pay-1", order.id, amount=2500)
    done = await checkout.reconcile(
        make_db(), provider, "pay-1", now=later + 1
    )
    assert done.status == "cancelled"

    check = make_db()
    seat = await check.session.get(Seat, "seat-e1")
    assert seat.status == "free"
    (payment,) = await _payments(check, order.id)
    assert payment.status == "approved"
    assert payment.external_payment_id == "pay-1"


async def test_initiate_with_lapsed_hold(db, make_db, world, provider):
    order = await orders.add_item(
        db, "u-bob", SeatItem("seat-e1"), now=world.now
    )
    await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    later = world.now + reservations.HOLD_WINDOW_SECONDS + 1
    with pytest.raises(HoldExpired):
        await checkout.initiate(
            db, provider, "u-bob", "bob@example.com", order.id,
            "http://shop.test", now=later,
        )
    assert provider.requests == []

    # the pruning stuck; a second attempt goes through with the new total
    out = await checkout.initiate(
        make_db(), provider, "u-bob", "bob@example.com", order.id,
        "http://shop.test", now=later,
    )
    assert out["amount"] == 1000


async def test_initiate_rejects_bad_input(db, world, provider):
    order = await orders.add_item(
        db, "u-bob", ProductItem("p-popcorn"), now=world.now
    )
    with pytest.raises(Invalid):
        await checkout.initiate(
            db, provider, "u-bob", "not-an-email", order.id,
            "http://shop.test", now=world.now,
        )
    with pytest.raises(OrderNotFound):
        await checkout.initiate(
            db, provider, "u-bob", "bob@example.com", "missing",
            "http://shop.test", now=world.now,
        )

    async with db.session.begin():
        db.session.add(Order(
            id="empty", user_id="u-alice", status="pending",
            created_at=world.now,
        ))
    with pytest.raises(Invalid):
        await checkout.initiate(
            db, provider, "u-alice", "alice@example.com", "empty",
            "http://shop.test", now=world.now,
        )


async def test_reconcile_unknown_payment_or_order(db, world, provider):
    with pytest.raises(PaymentNotFound):
        await checkout.reconcile(db, provider, "nope", now=world.now)
    with pytest.raises(Invalid):
        await checkout.reconcile(db, provider, "", now=world.now)

    provider.pay("pay-x", "no-such-order")
    with pytest.raises(OrderNotFound):
        await checkout.reconcile(db, provider, "pay-x", now=world.now)
