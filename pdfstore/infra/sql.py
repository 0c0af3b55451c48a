import os
from typing import Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

# plain driver-less urls -> async drivers
_ASYNC_SCHEMES = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),  # heroku-style
)

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    # webhook and checkout writers share one file
    "busy_timeout=5000",
    "synchronous=NORMAL",
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_SCHEMES:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _pool_options(url: str) -> dict:
    opts = {"future": True, "pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg://"):
        opts["pool_size"] = int(os.getenv("DB_POOL_SIZE", "10"))
        opts["max_overflow"] = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        opts["pool_timeout"] = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    return opts


def _on_sqlite_connect(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    url = async_url(database_url)
    engine = create_async_engine(url, **_pool_options(url))
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _on_sqlite_connect)

    # objects stay readable after commit; flushes are explicit
    sessions = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )
    return engine, sessions


async def create_schema(engine: AsyncEngine) -> None:
    from ..model.db import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
