import json

import httpx
import pytest
from sqlalchemy import select

from cinefans import notify
from cinefans.errors import Invalid
from cinefans.model.db import PushSubscription


async def test_subscribe_upserts(db, world):
    first = await notify.subscribe(
        db, "https://push.example/a", {"p256dh": "x"}
    )
    again = await notify.subscribe(
        db, "https://push.example/a", {"p256dh": "y"}
    )
    assert first == again

    subs = (await db.session.execute(
        select(PushSubscription)
    )).scalars().all()
    assert len(subs) == 1
    assert json.loads(subs[0].keys) == {"p256dh": "y"}


async def test_subscribe_rejects_non_http(db, world):
    with pytest.raises(Invalid):
        await notify.subscribe(db, "mailto:bob@example.com", {})


async def test_broadcast_prunes_gone_endpoints(db, make_db, world):
    for path in ("ok", "gone", "broken"):
        await notify.subscribe(db, f"https://push.example/{path}", {})

    sent = []

    def handler(request):
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response({
            "/ok": 201, "/gone": 410, "/broken": 500,
        }[request.url.path])

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    ) as http:
        out = await notify.broadcast(
            db, http, "Tickets sold", "Seats are going fast"
        )
    assert out == {"total": 3, "success": 1, "failed": 2}
    assert sent[0][1] == {
        "title": "Tickets sold", "body": "Seats are going fast", "url": "/",
    }

    left = (await make_db().session.execute(
        select(PushSubscription.endpoint)
    )).scalars().all()
    assert sorted(left) == [
        "https://push.example/broken", "https://push.example/ok",
    ]


async def test_fire_and_forget_logs_failures():
    async def boom():
        raise RuntimeError("nope")

    before = set(notify._background)
    notify.fire_and_forget(boom(), "test")
    (task,) = notify._background - before
    with pytest.raises(RuntimeError):
        await task
