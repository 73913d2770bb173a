from typing import AsyncGenerator
import logging
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from agentable.models import Base
from agentable.config.settings import settings

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


# Convert sync URLs to their async driver: mysql+pymysql:// -> mysql+aiomysql://, sqlite:// -> sqlite+aiosqlite://
# Note: Can't use simple replace() because 'aiomysql://' contains 'mysql://' as substring
def convert_to_async_url(url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    if url.startswith('mysql+pymysql://'):
        return 'mysql+aiomysql://' + url[len('mysql+pymysql://'):]
    elif url.startswith('mysql://'):
        return 'mysql+aiomysql://' + url[len('mysql://'):]
    elif url.startswith('sqlite://'):
        return 'sqlite+aiosqlite://' + url[len('sqlite://'):]
    else:
        return url


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine. SQLite connections get foreign key enforcement."""
    url = convert_to_async_url(url)
    if _is_sqlite(url):
        engine = create_async_engine(url, echo=settings.DB_ECHO, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=settings.DB_ECHO,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


ASYNC_DATABASE_URL = convert_to_async_url(settings.DATABASE_URL)

async_engine = create_engine_for_url(ASYNC_DATABASE_URL)

AsyncSessionLocal = create_session_factory(async_engine)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides an ASYNC database session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_async_db)):
            result = await db.execute(select(Item))
            return result.scalars().all()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# =============================================================================
# Database Initialization
# =============================================================================

async def init_async_db(engine: AsyncEngine = None):
    """Create all tables if they don't exist."""
    engine = engine or async_engine
    logger.info("Initializing database (async)...")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
