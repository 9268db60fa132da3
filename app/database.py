import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app import models  # noqa: F401  registers tables on SQLModel.metadata
from app.core.config import get_settings

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url

engine_options = {"echo": False, "future": True, "pool_pre_ping": True}
if DATABASE_URL.startswith("sqlite"):
    # aiosqlite connections are bound to the loop that opened them
    engine_options["poolclass"] = NullPool

# Create async engine
engine = create_async_engine(DATABASE_URL, **engine_options)

# Create async session factory using async_sessionmaker
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# Dependency for getting DB session
async def get_db():
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Dependency for code that needs several independent sessions at once."""
    return async_session


async def check_database() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database check failed: %s", e)
        return False


async def connect_with_retry(attempts: int, delay: float):
    """Wait for the database at startup; give up (and raise) after `attempts` tries."""
    for attempt in range(1, attempts + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connected")
            return
        except (SQLAlchemyError, OSError) as e:
            if attempt == attempts:
                logger.critical("Database unreachable after %d attempts", attempts)
                raise
            logger.warning(
                "Database connection attempt %d/%d failed: %s; retrying in %ss",
                attempt,
                attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)


# Helper function to create tables (development and tests; production uses alembic)
async def create_db_and_tables():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
