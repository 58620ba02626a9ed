import logging
from typing import Any, AsyncGenerator

from sqlalchemy import NullPool, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from fsm_outbox.config import settings

logger = logging.getLogger(__name__)


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str, **overrides):
    """Create an async engine, with pooling only where the driver supports it"""
    url = _async_url(url)
    if make_url(url).get_backend_name() == "sqlite":
        # SQLite: one connection per session, writers wait on the file lock
        return create_async_engine(
            url,
            echo=settings.DB_ECHO,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            **overrides,
        )
    if settings.DEBUG:
        # No pool in debug mode
        return create_async_engine(url, echo=settings.DB_ECHO, poolclass=NullPool, **overrides)
    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=settings.DB_POOL_PRE_PING,
        **overrides,
    )


# Create async engine
engine = build_engine(settings.DATABASE_URL)

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_session() -> AsyncGenerator[AsyncSession | Any, Any]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory used by the command handler"""
    return AsyncSessionLocal


async def init_db():
    """Initialize database - create tables if not exist"""
    # Register every table on Base.metadata
    from fsm_outbox.models import fsm_state, fsm_event, outbox, idempotency  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")


async def check_db_connection() -> bool:
    """Check if database is healthy"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
