"""Check that the onboarding tables exist and count stored sessions."""
import asyncio

from sqlalchemy import func, inspect, select

from app.db import engine, AsyncSessionLocal
from app.logging_config import configure_logging, get_logger
from app.models_db.db_models import OnboardingSessionRecord

configure_logging()
logger = get_logger("check_tables")


async def check_tables():
    """List the tables in the database and the onboarding session counts."""
    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    logger.info("Tables in database:")
    for table in tables:
        logger.info(f"  - {table}")

    if OnboardingSessionRecord.__tablename__ not in tables:
        logger.warning("onboarding_sessions is missing - run create_tables.py")
        return

    async with AsyncSessionLocal() as db:
        total = await db.scalar(select(func.count()).select_from(OnboardingSessionRecord))
        completed = await db.scalar(
            select(func.count())
            .select_from(OnboardingSessionRecord)
            .where(OnboardingSessionRecord.is_completed.is_(True))
        )
    logger.info(f"✅ {total} stored sessions, {completed} completed")


async def main():
    try:
        await check_tables()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
