"""
Create the onboarding_sessions table.
Run this once against a fresh database; alembic handles later changes.
"""
import sys
import asyncio
import traceback

# FORCE WINDOWS TO USE THE CORRECT EVENT LOOP
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from dotenv import load_dotenv
load_dotenv()

from app.logging_config import configure_logging, get_logger
from app.db import engine, Base
from app.models_db.db_models import OnboardingSessionRecord

configure_logging()
logger = get_logger("create_tables")


async def create_tables():
    """Create all tables registered on Base.metadata."""
    logger.info(f"🔧 Creating database tables on {engine.url.render_as_string(hide_password=True)}...")

    async with engine.begin() as conn:
        # Drop all tables (use with caution - only for development)
        # await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"✅ Created table: {OnboardingSessionRecord.__tablename__}")


async def main():
    try:
        await create_tables()
    except Exception as e:
        logger.error(f"❌ Error creating tables: {e}")
        logger.error(traceback.format_exc())
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
