# paymentsession/_redis.py
from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_ps(psid: str) -> str: return f"ps:{psid}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


PENDING_INDEX = "pendings"
IDEMPOTENCY_TTL = 24 * 3600


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.PENDING_INDEX = PENDING_INDEX

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]) -> None:
        # hash values must be strings (decode_responses=True)
        created = float(mapping.get("created_at") or now_ts())
        h = {
            k: str(v) for k, v in mapping.items() if v is not None
        }
        h.setdefault("status", "pending")
        h["created_at"] = str(created)
        h["updated_at"] = str(created)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(psid), mapping=h)
        pipe.expire(k_ps(psid), self.ttl)
        pipe.zadd(PENDING_INDEX, {psid: created})
        await pipe.execute()

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_ps(psid))
        if not h:
            return None
        out: Dict[str, Any] = dict(h)
        out["psid"] = psid
        out["amount"] = int(out.get("amount", "0"))
        return out

    async def set_status(self, psid: str, status: str) -> bool:
        if not await self.r.exists(k_ps(psid)):
            return False
        await self.r.hset(k_ps(psid), mapping={
            "status": status,
            "updated_at": str(now_ts()),
        })
        return True

    async def remove_pending(self, psid: str) -> None:
        # the session hash stays until its TTL; the provider still answers
        # payment lookups for it
        await self.r.zrem(PENDING_INDEX, psid)

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True if the event id is new, False for a replay."""
        if not evt_id:
            return True
        ok = await self.r.set(
            k_idemp(evt_id), "1", nx=True, ex=IDEMPOTENCY_TTL
        )
        return bool(ok)

    async def forget_event(self, evt_id: Optional[str]) -> None:
        if evt_id:
            await self.r.delete(k_idemp(evt_id))

    async def _list_recent_psids(
            self, limit: int = 200
    ) -> Tuple[int, List[str]]:
        total = await self.r.zcard(PENDING_INDEX)
        psids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        return total, psids

    async def _get_payment_sessions(self, psids: List[str]):
        pipe = self.r.pipeline()
        for psid in psids:
            pipe.hgetall(k_ps(psid))
        return await pipe.execute()

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total, psids = await self._list_recent_psids(limit=limit)
        rows = await self._get_payment_sessions(psids)

        now = now_ts()
        items = []
        for psid, h in zip(psids, rows):
            # house-keeping: session hash expired
            if not h:
                await self.remove_pending(psid)
                continue

            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "psid": psid,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "order_id": h.get("order_id", ""),
                "email": h.get("payer_email", ""),
                "amount": int(h.get("amount", "0")),
                "currency": h.get("currency", "eur"),
                "status": h.get("status", "pending").upper(),
            })
        return total, items
