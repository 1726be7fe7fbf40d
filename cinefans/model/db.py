from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    text,
)


Base = declarative_base()

# seat / reservation / order states
SEAT_FREE = "free"
SEAT_HELD = "held"
SEAT_RESERVED = "reserved"

RES_PENDING = "pending"
RES_CONFIRMED = "confirmed"
RES_RELEASED = "released"
RES_EXPIRED = "expired"

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_CANCELLED = "cancelled"

ITEM_SEAT = "seat"
ITEM_PRODUCT = "product"


# ----------------------------
# ORM models
# ----------------------------
class MembershipTier(Base):
    __tablename__ = "membership_tiers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    # lower = higher privilege
    priority = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # cents
    description = Column(Text, nullable=True)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    membership_id = Column(
        String, ForeignKey("membership_tiers.id"), nullable=True
    )
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    starts_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class Seat(Base):
    __tablename__ = "seats"
    __table_args__ = (
        UniqueConstraint("event_id", "seat_number", name="uq_seat_number"),
        CheckConstraint(
            "status IN ('free','held','reserved')", name="ck_seat_status"
        ),
        Index("ix_seats_event", "event_id"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    seat_number = Column(String, nullable=False)
    # name of a membership tier: Gold | Silver | Bronze
    tier = Column(String, nullable=False)

    # free | held | reserved ; held rows past held_until read as free
    status = Column(String, nullable=False, default=SEAT_FREE)
    held_by = Column(String, nullable=True)  # reservation id
    held_until = Column(Float, nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint(
            "expires_at IS NULL OR expires_at > created_at",
            name="ck_reservation_window",
        ),
        Index("ix_reservations_seat_status", "seat_id", "status"),
        Index("ix_reservations_order", "order_id"),
    )
    id = Column(String, primary_key=True)
    seat_id = Column(String, ForeignKey("seats.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)

    # pending | confirmed | released | expired
    status = Column(String, nullable=False, default=RES_PENDING)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=True)  # NULL once confirmed


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # cents
    stock = Column(Integer, nullable=False, default=0)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        # one open cart per user
        Index(
            "uq_orders_one_pending_per_user", "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_orders_external_reference", "external_reference"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    # pending | paid | cancelled
    status = Column(String, nullable=False, default=ORDER_PENDING)
    subtotal = Column(Integer, nullable=False, default=0)  # cents
    discount_code = Column(String, nullable=True)
    discount_percentage = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="eur")

    external_reference = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    kind = Column(String, nullable=False)  # seat | product
    reservation_id = Column(
        String, ForeignKey("reservations.id"), nullable=True
    )
    product_id = Column(String, ForeignKey("products.id"), nullable=True)
    label = Column(String, nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False)  # cents
    created_at = Column(Float, nullable=False)


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (
        CheckConstraint(
            "percentage BETWEEN 0 AND 100", name="ck_discount_percentage"
        ),
    )
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)  # uppercase
    percentage = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)
    membership_tier_id = Column(
        String, ForeignKey("membership_tiers.id"), nullable=True
    )


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    provider = Column(String, nullable=False)
    # provider's payment id, known once the buyer paid
    external_payment_id = Column(String, nullable=True, unique=True)
    # provider's checkout/preference id
    checkout_ref = Column(String, nullable=True)

    # pending | approved | rejected | cancelled | refunded
    status = Column(String, nullable=False, default="pending")
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="eur")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    id = Column(String, primary_key=True)
    endpoint = Column(String, nullable=False, unique=True)
    keys = Column(Text, nullable=False, default="{}")  # JSON
    created_at = Column(Float, nullable=False)
