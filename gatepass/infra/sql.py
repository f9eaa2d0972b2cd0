"""
Async SQL plumbing for the booking store.

`open_sql()` hands back the engine, a session factory and `gated`, an async
context that caps how many store operations talk to the database at once.
The cap follows the pool size on Postgres; SQLite serialises writers itself
and only needs a busy timeout so concurrent checkouts wait instead of failing.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..config import (
    DB_GATE_LIMIT, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT,
)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)


class SqlHandle(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated


def normalize_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS.items():
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def open_sql(database_url: str,
             gate_limit: Optional[int] = None) -> SqlHandle:
    url = normalize_async_url(database_url)
    if url.startswith("sqlite+aiosqlite://"):
        engine = create_async_engine(url, pool_pre_ping=True)
        _install_sqlite_pragmas(engine)
        default_gate = 10
    else:
        engine = create_async_engine(
            url,
            pool_pre_ping=True,
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )
        default_gate = DB_POOL_SIZE

    sessions = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )
    limit = gate_limit or DB_GATE_LIMIT or default_gate
    return SqlHandle(engine, sessions, _gate(limit))
