#!/usr/bin/env python3
"""
Demo data: membership tiers, users, two upcoming screenings with a seat
map, snack products and a few discount codes. Optionally writes one dev
session token per buyer for the load client.

    DATABASE_URL=sqlite:///./cinefans.db python seed.py --tokens tokens.json
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import select

from cinefans.auth import SessionUser, issue_session_token
from cinefans.helpers import now_ts, new_id
from cinefans.infra.log import setup_logging
from cinefans.infra.sql import make_database
from cinefans.model.db import (
    Base, MembershipTier, User, Event, Seat, Product, Discount,
)
from cinefans.model.paymentsession._sql import create_schema

# name -> (priority, yearly price in cents); lower priority = more access
TIERS = {
    "Gold": (1, 9900),
    "Silver": (2, 5900),
    "Bronze": (3, 0),
}

# row letter -> seat tier
ROWS = {"A": "Gold", "B": "Gold", "C": "Silver", "D": "Silver",
        "E": "Bronze", "F": "Bronze"}
SEATS_PER_ROW = 10

PRODUCTS = [
    ("Popcorn", "Large salted popcorn", 650, 200),
    ("Nachos", "Nachos with cheese dip", 750, 100),
    ("Soda", "Fountain drink 0.5l", 350, 300),
]


def ts(year, month, day) -> float:
    return datetime(year, month, day, tzinfo=timezone.utc).timestamp()


async def seed(database_url: str, buyers: int, reset: bool):
    database = make_database(database_url)
    async with database.engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)

    now = now_ts()
    tokens = []
    async with database.session() as db:
        session = db.session
        async with session.begin():
            existing = (await session.execute(
                select(MembershipTier)
            )).scalars().all()
            if existing:
                logger.warning("database already seeded; use --reset")
                await database.dispose()
                return []

            tier_ids = {}
            for name, (priority, price) in TIERS.items():
                tier_ids[name] = new_id()
                session.add(MembershipTier(
                    id=tier_ids[name], name=name, priority=priority,
                    price=price, description=f"{name} membership",
                ))

            users = [User(
                id=new_id(), email="admin@cinefans.dev", name="Admin",
                membership_id=tier_ids["Gold"], is_admin=True,
                created_at=now,
            )]
            names = list(TIERS)
            for n in range(buyers):
                users.append(User(
                    id=new_id(), email=f"buyer{n}@cinefans.dev",
                    name=f"Buyer {n}",
                    membership_id=tier_ids[names[n % len(names)]],
                    created_at=now,
                ))
            session.add_all(users)

            for days, title in ((7, "Metropolis (restored)"),
                                (14, "Stalker")):
                event = Event(
                    id=new_id(), title=title,
                    description=f"{title} on the big screen",
                    starts_at=now + days * 86400, created_at=now,
                )
                session.add(event)
                for row, tier in ROWS.items():
                    for k in range(1, SEATS_PER_ROW + 1):
                        session.add(Seat(
                            id=new_id(), event_id=event.id,
                            seat_number=f"{row}{k}", tier=tier,
                        ))

            for name, desc, price, stock in PRODUCTS:
                session.add(Product(
                    id=new_id(), name=name, description=desc,
                    price=price, stock=stock,
                ))

            year = datetime.now(timezone.utc).year
            session.add_all([
                Discount(id=new_id(), code="WELCOME10", percentage=10,
                         description="10% off your first visit"),
                Discount(id=new_id(), code="GOLD20", percentage=20,
                         description="Gold members save 20%",
                         membership_tier_id=tier_ids["Gold"]),
                Discount(id=new_id(), code="SUMMER15", percentage=15,
                         valid_from=ts(year, 6, 1),
                         valid_until=ts(year, 8, 31)),
            ])

            for u in users:
                tokens.append({
                    "email": u.email,
                    "token": issue_session_token(SessionUser(
                        user_id=u.id, email=u.email, is_admin=u.is_admin,
                        membership_id=u.membership_id,
                    )),
                })

    await database.dispose()
    logger.info(
        "seeded {} tiers, {} users, 2 events x {} seats, {} products",
        len(TIERS), len(tokens), len(ROWS) * SEATS_PER_ROW, len(PRODUCTS),
    )
    return tokens


def main():
    ap = argparse.ArgumentParser(description="Seed CineFans demo data")
    ap.add_argument("--buyers", type=int, default=50)
    ap.add_argument("--tokens", default=None,
                    help="write session tokens to this JSON file")
    ap.add_argument("--reset", action="store_true",
                    help="drop all tables first")
    args = ap.parse_args()

    setup_logging()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        logger.error("NEED DATABASE_URL! e.g. sqlite:///./cinefans.db")
        sys.exit(1)

    tokens = asyncio.run(seed(database_url, args.buyers, args.reset))
    if args.tokens and tokens:
        with open(args.tokens, "w") as f:
            json.dump(tokens, f, indent=2)
        logger.info("wrote {} tokens to {}", len(tokens), args.tokens)


if __name__ == "__main__":
    main()
