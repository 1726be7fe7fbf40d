from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession


# ------------------------------------------------------------------------------
# DDL (idempotent, runs on SQLite and PostgreSQL)
# ------------------------------------------------------------------------------
SQL_CREATE_PAYMENT_SESSIONS = r"""
CREATE TABLE IF NOT EXISTS payment_sessions (
  psid              TEXT PRIMARY KEY,
  order_id          TEXT NOT NULL,
  title             TEXT NOT NULL,
  amount            INTEGER NOT NULL,
  currency          TEXT NOT NULL,
  payer_email       TEXT NOT NULL,
  success_url       TEXT,
  failure_url       TEXT,
  pending_url       TEXT,
  notification_url  TEXT,
  status            TEXT NOT NULL,
  created_at        DOUBLE PRECISION NOT NULL,
  updated_at        DOUBLE PRECISION NOT NULL,
  expires_at        DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_PAYMENT_SESSIONS_PENDING = r"""
-- live "pending" index for the admin view
CREATE TABLE IF NOT EXISTS payment_sessions_pending (
  psid       TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDEMPOTENCY_KEYS = r"""
-- webhook event ids already processed
CREATE TABLE IF NOT EXISTS idempotency_keys (
  key        TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PS_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_ps_created_at
  ON payment_sessions (created_at);
"""

FIELDS = (
    "order_id", "title", "amount", "currency", "payer_email",
    "success_url", "failure_url", "pending_url", "notification_url",
    "status",
)


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PAYMENT_SESSIONS))
    await exec_(text(SQL_CREATE_PAYMENT_SESSIONS_PENDING))
    await exec_(text(SQL_CREATE_IDEMPOTENCY_KEYS))
    await exec_(text(SQL_CREATE_IDX_PS_CREATED_AT))


class PaymentSessionStore:
    def __init__(self, *, db: GatedAsyncSession, ttl_seconds: int) -> None:
        self.db = db.session
        self.gated = db.gated
        self.ttl = ttl_seconds

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]
    ) -> None:
        m = {k: mapping.get(k) for k in FIELDS}
        m["amount"] = int(m["amount"] or 0)
        m["payer_email"] = m["payer_email"] or ""
        m["title"] = m["title"] or ""
        m["status"] = m["status"] or "pending"
        created = float(mapping.get("created_at") or now_ts())
        m.update(
            psid=psid,
            created_at=created,
            updated_at=created,
            expires_at=created + self.ttl,
        )
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_sessions(
                    psid, order_id, title, amount, currency, payer_email,
                    success_url, failure_url, pending_url, notification_url,
                    status, created_at, updated_at, expires_at
                  ) VALUES (
                    :psid, :order_id, :title, :amount, :currency,
                    :payer_email, :success_url, :failure_url, :pending_url,
                    :notification_url, :status, :created_at, :updated_at,
                    :expires_at
                  )
                  ON CONFLICT (psid) DO UPDATE SET
                    order_id=EXCLUDED.order_id, title=EXCLUDED.title,
                    amount=EXCLUDED.amount, currency=EXCLUDED.currency,
                    payer_email=EXCLUDED.payer_email,
                    success_url=EXCLUDED.success_url,
                    failure_url=EXCLUDED.failure_url,
                    pending_url=EXCLUDED.pending_url,
                    notification_url=EXCLUDED.notification_url,
                    status=EXCLUDED.status,
                    updated_at=EXCLUDED.updated_at,
                    expires_at=EXCLUDED.expires_at
                """), m)
                await self.db.execute(text("""
                  INSERT INTO payment_sessions_pending(psid, created_at)
                  VALUES(:psid, :created_at)
                  ON CONFLICT (psid) DO UPDATE
                  SET created_at=EXCLUDED.created_at
                """), {"psid": psid, "created_at": created})

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_sessions
                  WHERE psid=:psid AND expires_at > :now
                """), {"psid": psid, "now": now_ts()})).mappings().first()
                return dict(row) if row else None

    async def set_status(self, psid: str, status: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  UPDATE payment_sessions
                  SET status=:st, updated_at=:now
                  WHERE psid=:psid
                  RETURNING psid
                """), {"psid": psid, "st": status, "now": now_ts()})).first()
        return row is not None

    async def remove_pending(self, psid: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text(
                        "DELETE FROM payment_sessions_pending WHERE psid=:psid"
                    ),
                    {"psid": psid}
                )

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True if the event id is new, False for a replay."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO idempotency_keys(key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (key) DO NOTHING
                  RETURNING key
                """), {"k": evt_id, "now": now_ts()})).first()
        return row is not None

    async def forget_event(self, evt_id: Optional[str]) -> None:
        if not evt_id:
            return
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM idempotency_keys WHERE key=:k"),
                    {"k": evt_id}
                )

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payment_sessions_pending")
                )).scalar_one()

                rows = (await self.db.execute(text("""
                    SELECT
                        p.psid,
                        h.created_at,
                        h.order_id,
                        h.amount,
                        h.currency,
                        h.payer_email,
                        h.status
                    FROM payment_sessions_pending AS p
                    LEFT JOIN payment_sessions AS h ON h.psid = p.psid
                    ORDER BY p.created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

                now = now_ts()
                items: List[Dict[str, Any]] = []
                missing: List[str] = []

                for r in rows:
                    psid = r["psid"]
                    created = r["created_at"]

                    # pending entry without a session row -> drop it
                    if created is None:
                        missing.append(psid)
                        continue

                    created = float(created)
                    items.append({
                        "psid": psid,
                        "created_at": created,
                        "age_ms": int(max(0.0, now - created) * 1000),
                        "order_id": r["order_id"] or "",
                        "email": r["payer_email"] or "",
                        "amount": int(r["amount"] or 0),
                        "currency": r["currency"] or "eur",
                        "status": (r["status"] or "pending").upper(),
                    })

                if missing:
                    stmt = text(
                        "DELETE FROM payment_sessions_pending "
                        "WHERE psid IN :psids"
                        ).bindparams(bindparam("psids", expanding=True))
                    await self.db.execute(stmt, {"psids": list(missing)})

        return int(total), items
