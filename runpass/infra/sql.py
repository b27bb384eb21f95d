import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

from ..config import Settings

logger = logging.getLogger(__name__)

R = TypeVar("R")


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(settings: Settings):
    db_url = _normalize_async_url(settings.database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = settings.db_pool_size
        kw.update(
            pool_size=pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            # driver-level autocommit; BEGIN is emitted by _sqlite_begin
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

        # take the write lock up front: concurrent writers queue on
        # busy_timeout instead of failing on a stale read snapshot
        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Create a per-engine gate. Default to pool_size
    if settings.db_gate_limit is not None:
        gate_limit = settings.db_gate_limit
    elif pool_size is None:
        # sqlite
        gate_limit = 10
    else:
        gate_limit = pool_size

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    # expose a tiny helper for `async with gated(): ...`
    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated


async def run_tx(
    SessionAsync: async_sessionmaker,
    gated: Callable,
    fn: Callable[[AsyncSession], Awaitable[R]],
    *,
    attempts: int = 1,
) -> R:
    """
    Run `fn(session)` in one gated transaction. A unique-key race
    (IntegrityError) rolls the whole transaction back and runs it again, up
    to `attempts` times; the last IntegrityError propagates.
    """
    for attempt in range(max(1, attempts)):
        try:
            async with gated():
                async with SessionAsync() as db:
                    async with db.begin():
                        return await fn(db)
        except IntegrityError:
            if attempt + 1 >= attempts:
                raise
            logger.warning("unique-key race, retrying transaction",
                           extra={"attempt": attempt})
    raise AssertionError("unreachable")
