# model/discounts.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    DiscountNotFound, DiscountNotYetActive, DiscountExpired, DiscountWrongTier,
)
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .db import Discount, MembershipTier


@dataclass(frozen=True)
class DiscountInfo:
    id: str
    code: str
    percentage: int
    description: str
    membership_tier_id: Optional[str]
    membership_tier_name: Optional[str]
    valid_from: Optional[float]
    valid_until: Optional[float]

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "percentage": self.percentage,
            "description": self.description,
            "membership_tier_id": self.membership_tier_id,
            "membership_tier_name": self.membership_tier_name,
            "valid_from": to_iso(self.valid_from),
            "valid_until": to_iso(self.valid_until),
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


async def resolve_in(
    session: AsyncSession,
    code: str,
    membership_id: Optional[str],
    now: float,
) -> DiscountInfo:
    """
    Check order: exists -> not before valid_from -> not after valid_until
    -> tier restriction. Absent bounds are unbounded; a restricted code is
    rejected for a user without the matching membership.
    """
    normalized = normalize_code(code)
    if not normalized:
        raise DiscountNotFound()

    discount = (await session.execute(
        select(Discount).where(Discount.code == normalized)
    )).scalar_one_or_none()
    if discount is None:
        raise DiscountNotFound()

    if discount.valid_from is not None and discount.valid_from > now:
        raise DiscountNotYetActive()
    if discount.valid_until is not None and discount.valid_until < now:
        raise DiscountExpired()

    tier_name = None
    if discount.membership_tier_id:
        tier = await session.get(MembershipTier, discount.membership_tier_id)
        tier_name = tier.name if tier else None
        if discount.membership_tier_id != membership_id:
            raise DiscountWrongTier(tier_name)

    return DiscountInfo(
        id=discount.id,
        code=discount.code,
        percentage=int(discount.percentage),
        description=(
            discount.description or f"{discount.percentage}% off"
        ),
        membership_tier_id=discount.membership_tier_id,
        membership_tier_name=tier_name,
        valid_from=discount.valid_from,
        valid_until=discount.valid_until,
    )


async def resolve(
    db: GatedAsyncSession,
    code: str,
    membership_id: Optional[str],
    now: Optional[float] = None,
) -> DiscountInfo:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            return await resolve_in(db.session, code, membership_id, now)
