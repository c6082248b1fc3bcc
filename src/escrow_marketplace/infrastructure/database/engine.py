"""Async database engine and session management.

Provides:
    - build_engine: create an engine for a URL (sqlite URLs skip pool sizing).
    - get_session_factory: the sessionmaker bound to the configured engine.
    - get_async_session: FastAPI dependency that yields a session per request.
    - create_schema / init_db / close_db: lifecycle hooks for FastAPI's lifespan.
    - database_status: SELECT 1 check for the health endpoint.

Usage in FastAPI:
    @router.get("/escrows/{escrow_id}")
    async def get_escrow(session: AsyncSession = Depends(get_async_session)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from escrow_marketplace.config import get_settings
from escrow_marketplace.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

# Module-level singletons (initialized in init_db)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine. Pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    settings = get_settings()
    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=echo,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, echo=settings.db_echo_sql)
        logger.info(
            "database.engine_created",
            sqlite=settings.uses_sqlite,
            pool_size=None if settings.uses_sqlite else settings.db_pool_size,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is committed on success or rolled back on error, so a
    request that fails on a version conflict leaves nothing behind.
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def database_status() -> str:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health.db_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def create_schema(engine: AsyncEngine) -> None:
    from escrow_marketplace.infrastructure.database.orm_models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. Outside development the
    schema is expected to already exist.
    """
    engine = get_engine()
    settings = get_settings()

    if settings.is_development:
        await create_schema(engine)
        logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
