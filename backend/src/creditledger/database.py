"""Database session management with async SQLAlchemy."""
import asyncio
from typing import AsyncGenerator, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.exc import StaleDataError

from creditledger.config import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    Pool sizing only applies to server databases; SQLite uses its own pool.
    """
    options: dict = {"echo": settings.database_echo, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(pool_size=settings.database_pool_size, max_overflow=10)
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session that commits on success and rolls back on error.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def run_with_retry(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
    fn: Callable[[AsyncSession], Awaitable[T]],
    max_attempts: int = 5,
    retry_on: tuple[type[Exception], ...] = (StaleDataError,),
    on_conflict: Callable[[str], None] | None = None,
) -> T:
    """
    Run `fn` in a fresh transaction, replaying it when it loses a race.

    Version-checked UPDATEs raise StaleDataError when another transaction
    changed the row first; the whole unit of work is then replayed against
    fresh state.

    Args:
        session_factory: Session factory
        operation: Name used in logs
        fn: Coroutine function receiving the session
        max_attempts: Attempts before the conflict is re-raised
        retry_on: Exceptions that mean "lost a race"
        on_conflict: Called with `operation` on every conflict

    Returns:
        Whatever `fn` returns once its transaction committed
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except retry_on as e:
            if on_conflict:
                on_conflict(operation)
            if attempt >= max_attempts:
                logger.error("write_conflict_exhausted", operation=operation, attempts=attempt)
                raise
            logger.info("write_conflict", operation=operation, attempt=attempt, error_type=type(e).__name__)
            await asyncio.sleep(0.005 * attempt)


# Declarative base for all models
Base = declarative_base()
