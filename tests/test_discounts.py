from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from cinefans.errors import (
    DiscountExpired, DiscountNotFound, DiscountNotYetActive,
    DiscountWrongTier, Invalid, NotFound,
)
from cinefans.model import discounts
from cinefans.model.db import Discount


def ts(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc).timestamp()


@pytest_asyncio.fixture
async def save10(db, world):
    async with db.session.begin():
        db.session.add(Discount(
            id="d-save10", code="SAVE10", percentage=15,
            description="Gold members save 15%",
            valid_from=ts(2024, 1, 1), valid_until=ts(2024, 12, 31),
            membership_tier_id="tier-gold",
        ))
    return world


async def test_valid_code(db, save10):
    info = await discounts.resolve(
        db, "SAVE10", "tier-gold", now=ts(2024, 6, 1)
    )
    assert info.code == "SAVE10"
    assert info.percentage == 15
    assert info.membership_tier_name == "Gold"
    assert info.as_dict()["valid_from"].startswith("2024-01-01")


async def test_code_is_case_insensitive(db, save10):
    info = await discounts.resolve(
        db, "  save10 ", "tier-gold", now=ts(2024, 6, 1)
    )
    assert info.code == "SAVE10"


async def test_expired(db, save10):
    with pytest.raises(DiscountExpired) as exc:
        await discounts.resolve(db, "SAVE10", "tier-gold", now=ts(2025, 1, 1))
    assert isinstance(exc.value, Invalid)


async def test_not_yet_active(db, save10):
    with pytest.raises(DiscountNotYetActive):
        await discounts.resolve(
            db, "SAVE10", "tier-gold", now=ts(2023, 12, 31)
        )


async def test_wrong_tier(db, save10):
    with pytest.raises(DiscountWrongTier) as exc:
        await discounts.resolve(
            db, "SAVE10", "tier-bronze", now=ts(2024, 6, 1)
        )
    assert "Gold" in exc.value.reason

    with pytest.raises(DiscountWrongTier):
        await discounts.resolve(db, "SAVE10", None, now=ts(2024, 6, 1))


async def test_validity_is_checked_before_tier(db, save10):
    # outside the window the date error wins even for the wrong tier
    with pytest.raises(DiscountExpired):
        await discounts.resolve(
            db, "SAVE10", "tier-bronze", now=ts(2025, 1, 1)
        )


async def test_unknown_code(db, world):
    with pytest.raises(DiscountNotFound) as exc:
        await discounts.resolve(db, "NOPE", None, now=world.now)
    assert isinstance(exc.value, NotFound)
    with pytest.raises(DiscountNotFound):
        await discounts.resolve(db, "   ", None, now=world.now)


async def test_unbounded_code(db, world):
    info = await discounts.resolve(db, "ten", None, now=world.now)
    assert info.percentage == 10
    assert info.description == "10% off"
    assert info.as_dict()["valid_until"] is None


async def test_percentage_is_bounded(db, world):
    with pytest.raises(IntegrityError):
        async with db.session.begin():
            db.session.add(Discount(
                id="d-bad", code="TOOMUCH", percentage=150,
            ))
