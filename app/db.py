import sys
import asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.logging_config import get_logger
logger = get_logger("app.db")

# --- 1. WINDOWS FIX ---
# This is crucial for "getaddrinfo failed" errors on Windows/Asyncpg
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# --- 2. ENGINE SETUP ---
# Nothing connects until the first query
_db_config = settings.database_config
engine = create_async_engine(
    _db_config.pop("url"),
    **_db_config,
)

# --- 3. SESSION FACTORY ---
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# --- 4. BASE MODEL ---
class Base(DeclarativeBase):
    pass

# --- 5. DEPENDENCY ---
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            logger.debug("Database session created")
            yield session
            logger.debug("Database session completed")
        except Exception as e:
            logger.error(f"Database session error: {type(e).__name__}: {str(e)}")
            raise
        finally:
            await session.close()
            logger.debug("Database session closed")
