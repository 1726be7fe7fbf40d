import os
from typing import Optional
import redis.asyncio as redis

from ...infra.sql import GatedAsyncSession

BACKEND = os.getenv("PAYSESSION_BACKEND", "sql").lower()  # 'sql' | 'redis'
SESSION_TTL_SECONDS = int(os.getenv("PAYSESSION_TTL_SECONDS", "86400"))

if BACKEND == "redis":
    from ._redis import PaymentSessionStore as _PaymentSessionStore
else:
    from ._sql import PaymentSessionStore as _PaymentSessionStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[GatedAsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = SESSION_TTL_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "PaymentSessionStore(redis) requires r=redis.Redis"
            )
        return _PaymentSessionStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError(
            "PaymentSessionStore(sql) requires db=GatedAsyncSession"
        )
    return _PaymentSessionStore(db=db, ttl_seconds=ttl_seconds)


PaymentSessionStore = _PaymentSessionStore
__all__ = ["PaymentSessionStore", "new_store", "BACKEND"]
