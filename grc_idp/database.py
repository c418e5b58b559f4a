"""SQLAlchemy async engine for the IdP provider and user tables.

The engine and its session factory are module singletons created by
``init_db`` at startup. Request handlers receive a session through
``get_db_session``, which owns the transaction: services flush, the
dependency commits or rolls back.

``JSONType`` maps to JSONB on PostgreSQL so provider ``config``/``meta``
documents can be indexed there, and to plain JSON on SQLite for tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from grc_idp.config import Settings, get_settings
from grc_idp.core.errors import ConfigurationError

log = structlog.get_logger(__name__)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str, echo: bool) -> dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        # aiosqlite connections are cheap and must not be shared across loops
        return {"echo": echo, "poolclass": NullPool}
    return {
        "echo": echo,
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
    }


def init_db(settings: Settings | None = None) -> None:
    """Create the engine and session factory from settings."""
    global _engine, _sessions
    cfg = settings or get_settings()
    _engine = create_async_engine(
        cfg.database_url, **_engine_options(cfg.database_url, cfg.db_echo_sql)
    )
    _sessions = async_sessionmaker(_engine, expire_on_commit=False)
    log.info("database.initialized", backend=make_url(cfg.database_url).get_backend_name())


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    log.info("database.closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for writes that must outlive the request transaction.

    The audit logger uses it so a failed login is still recorded when the
    request session rolls back.
    """
    if _sessions is None:
        raise ConfigurationError("Database is not initialized; call init_db() at startup.")
    return _sessions


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session and one transaction per request."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()
