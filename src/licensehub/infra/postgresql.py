"""Async database engine for the state store.

PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) for tests and local
runs. Services never hold a session across collaborator calls; they ask
``get_session_factory()`` for short transactions.
"""

import hashlib
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from licensehub.app.config import get_settings
from licensehub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)

    db = get_settings().database
    return create_async_engine(
        url,
        echo=echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables for the store's models."""
    import licensehub.core.models  # noqa: F401  (registers tables on SQLModel.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def init_db(url: str | None = None) -> AsyncEngine:
    """Connect, verify with a round trip and optionally create tables."""
    global _engine, _session_factory

    db = get_settings().database
    engine = build_engine(url or db.url, echo=db.echo)

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        if db.create_tables:
            await create_tables(engine)
    except Exception as exc:
        logger.error(
            "Database connection failed: %s",
            exc,
            extra={"event": LogEvent.DB_ERROR, "error_type": type(exc).__name__},
        )
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = build_session_factory(engine)
    logger.info(
        "Database connected",
        extra={"event": LogEvent.DB_CONNECTED, "dialect": engine.dialect.name},
    )
    return engine


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory


def _lock_key_id(lock_key: str) -> int:
    # pg advisory locks take a signed bigint
    digest = hashlib.sha256(lock_key.encode()).digest()
    return int.from_bytes(digest[:8], "big") & 0x7FFFFFFFFFFFFFFF


async def advisory_xact_lock(db: AsyncSession, lock_key: str) -> None:
    """Serialize writers on ``lock_key`` until the transaction ends.

    PostgreSQL only. SQLite already serializes writers.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _lock_key_id(lock_key)})
