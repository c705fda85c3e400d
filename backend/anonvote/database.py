"""
AnonVote Database Configuration
Async SQLAlchemy setup (PostgreSQL via asyncpg, SQLite via aiosqlite)
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from typing import AsyncGenerator
import logging

from anonvote.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Convert sync driver URLs to their async driver equivalents"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


DATABASE_URL = normalize_database_url(settings.DATABASE_URL)

logger.info(f"Database URL configured: {DATABASE_URL.split('@')[0]}@...")


def build_engine(url: str):
    """Create an async engine with pool settings appropriate to the driver"""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, future=True)
    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_recycle=3600,
    )


engine = build_engine(DATABASE_URL)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database session

    Usage in FastAPI:
        @app.get("/route")
        async def my_route(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {type(e).__name__}")
            raise


async def init_db():
    """
    Initialize database - create all tables

    Called on application startup
    """
    # Import models so they register on Base.metadata
    from anonvote import models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")
        logger.info(f"  Tables: {', '.join(Base.metadata.tables.keys())}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def drop_all_tables():
    """
    Drop all tables (use with caution!)
    Only for testing/development
    """
    from anonvote import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("All database tables dropped")


async def reset_db():
    """Drop and recreate all tables"""
    logger.warning("Resetting database...")
    await drop_all_tables()
    await init_db()
    logger.info("Database reset complete")


async def close_db():
    """Close database connections"""
    try:
        await engine.dispose()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database: {e}")


async def check_connection() -> bool:
    """Returns True if the database answers a trivial query"""
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
