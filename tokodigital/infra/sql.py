import os
import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # supabase / heroku style URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_postgres(url: str) -> bool:
    return normalize_async_url(url).startswith("postgresql+asyncpg://")


# DB gate: never queue more coroutines on the pool than it has connections
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str):
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            # writers wait for each other instead of failing with
            # "database is locked"
            cur.execute("PRAGMA busy_timeout=10000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if pool_size is None:
        # sqlite
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


@dataclass
class Database:
    """Session factory plus the pool gate; one session per operation."""
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as s:
                yield s

    async def dispose(self) -> None:
        await self.engine.dispose()


def open_database(database_url: str) -> Database:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    return Database(engine=engine, sessions=SessionAsync, gated=gated)
