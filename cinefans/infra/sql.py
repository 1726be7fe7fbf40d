"""
Async engine, session factory and the per-process DB gate.

Domain code receives a `GatedAsyncSession` and wraps each unit of work in
`async with db.gated():`; at most `DB_GATE_LIMIT` coroutines per process
talk to the database at once.
"""

import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # wait for the writer instead of failing the seat claim outright
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


def async_url(url: str) -> str:
    for plain, driver in DRIVERS.items():
        if url.startswith(plain):
            return url.replace(plain, driver, 1)
    return url


@asynccontextmanager
async def _hold(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gate_limit: int
    _gate: Optional[asyncio.Semaphore] = field(default=None, repr=False)

    def gated(self) -> AsyncContextManager[None]:
        # created lazily so the semaphore binds to the running loop
        if self._gate is None:
            self._gate = asyncio.Semaphore(self.gate_limit)
        return _hold(self._gate)

    def wrap(self, session: AsyncSession) -> GatedAsyncSession:
        return GatedAsyncSession(session=session, gated=self.gated)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessionmaker() as session:
            yield self.wrap(session)

    async def dispose(self) -> None:
        await self.engine.dispose()
        self._gate = None


def make_database(database_url: str) -> Database:
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        gate_limit = int(os.getenv("DB_GATE_LIMIT", str(pool_size)))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))

    engine = create_async_engine(url, **kw)

    if url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    return Database(
        engine=engine,
        sessionmaker=async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        ),
        gate_limit=max(1, gate_limit),
    )
