"""Async database connection using SQLAlchemy (supports SQLite and PostgreSQL)."""

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url(url: str) -> str:
    """Convert database URL to async format."""
    if url.startswith("sqlite") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with dialect-specific pool settings."""
    database_url = get_database_url(url)
    engine_kwargs = {"echo": False}

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20
        engine_kwargs["pool_recycle"] = 300
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_reset_on_return"] = "rollback"
        # Statement timeout (ms): long-running queries must not hog pool connections
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": "60000"}
        }

    return create_async_engine(database_url, **engine_kwargs)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def configure_database(url: str) -> SessionFactory:
    """Create the process-wide engine and session factory (called once at startup)."""
    global _engine, _session_factory
    _engine = build_engine(url)
    _session_factory = make_session_factory(_engine)
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Initialize database tables."""
    engine = engine or _engine
    logger.info("Initializing database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created successfully.")


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is None:
        return
    logger.info("Closing database connections...")
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed.")

