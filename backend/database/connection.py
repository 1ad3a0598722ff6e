from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    """Create the pooled async engine on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.get_database_url(),
            echo=False,
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Session factory bound to the pooled engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _session_factory


@asynccontextmanager
async def session_scope(factory: Optional[async_sessionmaker] = None) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, roll back on error,
    connection returned to the pool on every exit path.
    """
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def init_db():
    """Initialize database connection and verify tables exist"""
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            tables_query = text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
            """)
            result = await conn.execute(tables_query)
            tables = [row[0] for row in result.fetchall()]
            logger.info(f"Available tables: {tables}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def dispose_engine():
    """Close every pooled connection."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
