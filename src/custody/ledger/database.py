"""Database connection and session management."""

import os
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from custody.config import get_settings
from custody.ledger.models import Base, DerivationCounter

# Callable returning a fresh transactional session scope
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

# Global engine and session factory
_engine = None
_session_factory = None


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        # Convert sqlite:/// to sqlite+aiosqlite:/// if needed
        db_url = settings.database_url
        if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
            db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")

        _engine = create_async_engine(
            db_url,
            echo=settings.debug and not settings.is_production,
            future=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionScope:
    """Build a get_db-style context manager bound to a specific session factory.

    Services accept one of these so tests can run against an in-memory engine.
    """

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


def get_db() -> AsyncContextManager[AsyncSession]:
    """Transactional session on the application engine.

    Commits on success, rolls back on any exception.
    """
    return session_scope(get_session_factory())()


async def create_schema(engine, start_index: int) -> None:
    """Create all tables and seed the derivation counter."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with make_session_factory(engine)() as session:
        if await session.get(DerivationCounter, "global") is None:
            session.add(DerivationCounter(id="global", next_index=start_index))
            await session.commit()


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        # SQLite file databases need their directory to exist
        path = settings.database_url.split("///", 1)[-1]
        directory = os.path.dirname(path)
        if directory and path != ":memory:":
            os.makedirs(directory, exist_ok=True)

    await create_schema(get_engine(), settings.derivation_start_index)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
