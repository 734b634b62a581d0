"""
Async engine and session scope for the cadence store.

The engine only ever runs short transactions: the claim is one conditional
UPDATE and every other store call is a handful of row reads and writes.
Plain URLs from the config are mapped onto the async drivers:

  postgresql:// | postgres://   → postgresql+asyncpg://
  mysql:// | mysql+pymysql://   → mysql+aiomysql://
  sqlite://                     → sqlite+aiosqlite://
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _engine_options(url: str, config: DatabaseConfig, echo: bool) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # Concurrent claims queue on the write lock instead of failing with "database is locked"
        return {"echo": echo, "connect_args": {"timeout": config.sqlite_busy_timeout}}
    return {
        "echo": echo,
        "pool_size": config.pool_size,
        "max_overflow": config.pool_size,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Shared engine; `db_url` only matters on the call that creates it."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = _to_async_url(db_url or settings.database.url)
        _engine = create_async_engine(url, **_engine_options(url, settings.database, settings.debug))
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redacted(url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on exit, rolled back if the block raises."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessions = None
        logger.info("database_closed")
