import asyncio
import os
import tempfile
from types import SimpleNamespace

# Configure the app before anything imports it
_tmp = tempfile.mkdtemp(prefix="cinefans-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp}/test.db"
os.environ["PAYSESSION_BACKEND"] = "sql"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["RESERVATION_SWEEP_SECONDS"] = "0"
os.environ["SESSION_SECRET"] = "test-secret"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ.pop("PUBLIC_BASE_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import text  # noqa: E402

from cinefans import notify  # noqa: E402
from cinefans.auth import SessionUser, issue_session_token  # noqa: E402
from cinefans.helpers import now_ts  # noqa: E402
from cinefans.model.db import (  # noqa: E402
    Base, MembershipTier, User, Event, Seat, Product, Discount,
)
from cinefans.model.paymentsession._sql import create_schema  # noqa: E402
from cinefans.server import app, database, engine  # noqa: E402

RAW_TABLES = (
    "payment_sessions", "payment_sessions_pending", "idempotency_keys",
)

DAY = 86400.0


@pytest_asyncio.fixture(autouse=True)
async def tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        for name in RAW_TABLES:
            await conn.execute(text(f"DROP TABLE IF EXISTS {name}"))
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield
    # pooled aiosqlite connections are tied to this test's event loop
    await database.dispose()


@pytest_asyncio.fixture
async def make_db():
    """Open extra sessions, e.g. one per concurrent buyer."""
    opened = []

    def _make():
        session = database.sessionmaker()
        opened.append(session)
        return database.wrap(session)

    yield _make
    for session in opened:
        await session.close()


@pytest.fixture
def db(make_db):
    return make_db()


@pytest_asyncio.fixture
async def world(db):
    """Tiers, three users, one upcoming screening, two products."""
    now = now_ts()
    w = SimpleNamespace(now=now)
    async with db.session.begin():
        w.gold = MembershipTier(id="tier-gold", name="Gold", priority=1)
        w.silver = MembershipTier(id="tier-silver", name="Silver",
                                  priority=2)
        w.bronze = MembershipTier(id="tier-bronze", name="Bronze",
                                  priority=3)
        db.session.add_all([w.gold, w.silver, w.bronze])

        w.alice = User(id="u-alice", email="alice@example.com",
                       membership_id="tier-gold", created_at=now)
        w.bob = User(id="u-bob", email="bob@example.com",
                     membership_id="tier-bronze", created_at=now)
        w.admin = User(id="u-admin", email="admin@example.com",
                       membership_id="tier-gold", is_admin=True,
                       created_at=now)
        db.session.add_all([w.alice, w.bob, w.admin])

        w.event = Event(id="ev-1", title="Metropolis",
                        starts_at=now + 30 * DAY, created_at=now)
        w.past_event = Event(id="ev-old", title="Nosferatu",
                             starts_at=now - DAY, created_at=now - 2 * DAY)
        db.session.add_all([w.event, w.past_event])

        w.seat_gold = Seat(id="seat-a1", event_id="ev-1", seat_number="A1",
                           tier="Gold")
        w.seat_bronze = Seat(id="seat-e1", event_id="ev-1",
                             seat_number="E1", tier="Bronze")
        w.seat_bronze2 = Seat(id="seat-e2", event_id="ev-1",
                              seat_number="E2", tier="Bronze")
        w.seat_past = Seat(id="seat-old", event_id="ev-old",
                           seat_number="A1", tier="Bronze")
        db.session.add_all([
            w.seat_gold, w.seat_bronze, w.seat_bronze2, w.seat_past,
        ])

        w.popcorn = Product(id="p-popcorn", name="Popcorn", price=1000,
                            stock=10)
        w.nachos = Product(id="p-nachos", name="Nachos", price=2000,
                           stock=1)
        db.session.add_all([w.popcorn, w.nachos])

        db.session.add(Discount(id="d-ten", code="TEN", percentage=10))
    return w


@pytest.fixture
def auth():
    def _headers(user: User) -> dict:
        token = issue_session_token(SessionUser(
            user_id=user.id, email=user.email,
            is_admin=bool(user.is_admin),
            membership_id=user.membership_id,
        ))
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    # MockPay posts its webhook through this client; loop it back into
    # the app instead of the network
    app.state.http = httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    )
    async with AsyncClient(transport=transport,
                           base_url="http://test") as c:
        yield c
    # let sale announcements finish before the loop goes away
    pending = [t for t in notify._background if not t.done()]
    await asyncio.gather(*pending, return_exceptions=True)
    await app.state.http.aclose()
    app.state.http = None
