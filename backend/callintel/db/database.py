# backend/callintel/db/database.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy import text
import logging

from callintel.core.config import settings
from callintel.models.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.DB_ECHO)

    # Workers and API requests share this pool
    return create_async_engine(
        database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,       # Timeout waiting for connection from pool
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_pre_ping=True,    # Validate connections before use
        echo=settings.DB_ECHO
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False
    )


engine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine):
    """Create all tables in the database."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(session_factory: async_sessionmaker = AsyncSessionLocal) -> bool:
    """Check if database connection is working."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
