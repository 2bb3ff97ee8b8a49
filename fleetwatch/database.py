"""
Async database engine and session management.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fleetwatch.config import get_settings
from fleetwatch.models import Base

settings = get_settings()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, enabling foreign keys on SQLite."""
    new_engine = create_async_engine(url, echo=False, **kwargs)

    if new_engine.dialect.name == "sqlite":
        # SQLite ignores ON DELETE CASCADE unless enabled per connection
        @event.listens_for(new_engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(target: AsyncEngine = None) -> None:
    """Create tables that don't exist yet."""
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""
    async with SessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """FastAPI dependency for work that outlives the request, such as SSE streams."""
    return SessionLocal


@asynccontextmanager
async def get_session_context() -> AsyncIterator[AsyncSession]:
    """Session for code running outside a request (startup, bootstrap)."""
    async with SessionLocal() as session:
        yield session
