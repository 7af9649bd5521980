"""Metadata store connection for the controls engine.

One async engine serves both the repositories and the query sandbox, so
sandboxed queries run with the same credentials as every other access path.

Key exports:
- init_database(...)     — Call at startup to initialize the engine
- close_database()       — Call at shutdown to dispose the engine
- get_engine()           — The initialized engine (for the query sandbox)
- get_session_factory()  — The initialized session factory (for run records)
- get_db_session()       — FastAPI dependency yielding a transactional session
"""

from collections.abc import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

# Module-level engine and session factory, initialized by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_database(
    database_url: str,
    pool_size: int = 20,
    max_overflow: int = 5,
    pool_timeout: int = 2,
) -> AsyncEngine:
    """Initialize the database engine and session factory.

    Args:
        database_url: SQLAlchemy async URL (postgresql+asyncpg or sqlite+aiosqlite).
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.

    Returns:
        The initialized AsyncEngine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {"echo": False, "pool_pre_ping": True}
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    logger.info(
        "Initializing database engine",
        backend=url.get_backend_name(),
        pool_size=pool_size,
        max_overflow=max_overflow,
    )

    _engine = create_async_engine(url, **engine_kwargs)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    """Dispose the database engine. Safe to call when never initialized."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Return the initialized engine.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _engine is None:
        raise RuntimeError(
            "Database has not been initialized. "
            "Call init_database() in the application lifespan handler."
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. "
            "Call init_database() in the application lifespan handler."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a session committed on success.

    Yields:
        AsyncSession: A session on the metadata store.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
