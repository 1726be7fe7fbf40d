"""Push subscriptions and best-effort delivery."""

import asyncio
import json
from typing import Optional, Dict, Any, Set, Awaitable

import httpx
from loguru import logger
from sqlalchemy import select, delete

from .errors import Invalid
from .helpers import now_ts, new_id
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model.db import PushSubscription

# endpoints answering these are gone for good
GONE = (404, 410)

_background: Set[asyncio.Task] = set()


async def subscribe(
    db: GatedAsyncSession, endpoint: str, keys: Optional[Dict[str, Any]]
) -> str:
    endpoint = (endpoint or "").strip()
    if not endpoint.startswith(("https://", "http://")):
        raise Invalid("Subscription endpoint must be an http(s) URL")
    payload = json.dumps(keys or {})
    async with db.gated():
        async with db.session.begin():
            sub = (await db.session.execute(
                select(PushSubscription)
                .where(PushSubscription.endpoint == endpoint)
            )).scalar_one_or_none()
            if sub is None:
                sub = PushSubscription(
                    id=new_id(), endpoint=endpoint, keys=payload,
                    created_at=now_ts(),
                )
                db.session.add(sub)
            else:
                sub.keys = payload
    return sub.id


async def broadcast(
    db: GatedAsyncSession,
    http: httpx.AsyncClient,
    title: str,
    body: str,
    url: Optional[str] = None,
) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            subs = (await db.session.execute(
                select(PushSubscription.id, PushSubscription.endpoint)
            )).all()

    message = {"title": title, "body": body, "url": url or "/"}
    success = 0
    gone = []
    for sub_id, endpoint in subs:
        try:
            async with timeit("push.deliver"):
                resp = await http.post(
                    endpoint, json=message, headers={"TTL": "60"}
                )
        except httpx.HTTPError as e:
            logger.warning("push to {} failed: {}", endpoint, e)
            continue
        if resp.status_code in GONE:
            gone.append(sub_id)
        elif resp.status_code < 300:
            success += 1
        else:
            logger.warning(
                "push to {} answered {}", endpoint, resp.status_code
            )

    if gone:
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(
                    delete(PushSubscription)
                    .where(PushSubscription.id.in_(gone))
                )
        logger.info("dropped {} stale push subscriptions", len(gone))

    return {
        "total": len(subs),
        "success": success,
        "failed": len(subs) - success,
    }


def fire_and_forget(coro: Awaitable[Any], what: str = "background") -> None:
    """Run `coro` without awaiting it; failures are logged, not raised."""
    task = asyncio.ensure_future(coro)
    _background.add(task)

    def _done(t: asyncio.Task) -> None:
        _background.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.opt(exception=exc).error("{} task failed", what)

    task.add_done_callback(_done)
