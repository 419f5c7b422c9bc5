"""
Async engine construction.

Every engine comes with a gate: a semaphore sized to the connection pool.
Database work is wrapped in ``async with gated():`` so bursts of coroutines
wait on the gate instead of piling up inside the pool's checkout queue.
The gate is not reentrant; never nest it and never hold it across provider
HTTP calls.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    for sync, async_ in (("sqlite://", "sqlite+aiosqlite://"),
                         ("postgresql://", "postgresql+asyncpg://"),
                         ("postgres://", "postgresql+asyncpg://")):
        if url.startswith(sync):
            return async_ + url[len(sync):]
    return url


def is_sqlite(url: str) -> bool:
    return normalize_async_url(url).startswith("sqlite+aiosqlite://")


def _gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield
    return gated


def make_async_engine(
    database_url: str, *, pool_size: int = 10, max_overflow: int = 10,
    pool_timeout: int = 30, gate_limit: Optional[int] = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession], Gated]:
    url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)
    if url.startswith("postgresql+asyncpg://"):
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(url, **kw)

    if is_sqlite(url):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    sessions = async_sessionmaker(engine, class_=AsyncSession,
                                  expire_on_commit=False, autoflush=False)
    return engine, sessions, _gate(gate_limit or pool_size)
