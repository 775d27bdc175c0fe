"""
Database engine, async session factory, and audit logging.

- Async engine and session for PostgreSQL (asyncpg).
- Optional default database_url via set_database_url() so callers can use get_engine()/get_session_factory() without passing URL.
- log_audit() for executed retention cleanups.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from uuid import UUID

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chat_retention.base import Base
from chat_retention import models  # noqa: F401 - register Conversation, ConversationMessage, MessageContextChunk
from chat_retention import models_gdpr  # noqa: F401 - register GdprSettings with Base.metadata
from chat_retention import models_queue  # noqa: F401 - register FreshdeskTicketQueue with Base.metadata
from chat_retention.models_audit import AuditLog

# Lazy init; default URL can be set by application at startup
_default_url: str | None = None
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def set_database_url(database_url: str) -> None:
    """Set the default database URL for get_engine() and get_session_factory()."""
    global _default_url
    _default_url = database_url


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create or return async engine.
    Uses default URL from set_database_url() if database_url is not provided.
    """
    global _engine
    url = database_url or _default_url
    if url is None:
        raise RuntimeError("database_url not set: call set_database_url() or pass database_url= to get_engine()")
    if _engine is None:
        _engine = create_async_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
        )
    return _engine


async def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine and session factory."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db(engine: AsyncEngine | None = None, database_url: str | None = None) -> None:
    """
    Create tables (for init / tests).
    If engine is provided, use it; otherwise create from database_url or default URL.
    """
    if engine is None:
        engine = get_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Return async session factory. Uses default URL from set_database_url() if not provided."""
    global _session_factory
    url = database_url or _default_url
    if url is None:
        raise RuntimeError("database_url not set: call set_database_url() or pass database_url= to get_session_factory()")
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(url),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for a single DB session (commit on success, rollback on error)."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def log_audit(
    session: AsyncSession,
    action: str,
    resource_type: str,
    resource_id: str | UUID | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Write an audit log entry (e.g. an executed GDPR cleanup).
    Caller is responsible for committing the session.
    """
    await session.execute(
        insert(AuditLog.__table__).values(
            id=uuid.uuid4(),
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id else None,
            details=details,
        )
    )
