"""
Database operations for persisted onboarding sessions.
All CRUD operations for the onboarding_sessions table.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, select
from datetime import datetime
import traceback

from app.models_db.db_models import OnboardingSessionRecord
from app.logging_config import get_logger

# Get logger
logger = get_logger("app.db_operations")


async def get_record(db: AsyncSession, storage_key: str) -> OnboardingSessionRecord | None:
    """Get a persisted session by storage key."""
    result = await db.execute(
        select(OnboardingSessionRecord).where(OnboardingSessionRecord.storage_key == storage_key)
    )
    return result.scalar_one_or_none()


async def upsert_record(
    db: AsyncSession,
    storage_key: str,
    partner_id: str,
    state: dict,
    current_stage: str,
    overall_progress: int,
    is_completed: bool,
    last_activity: datetime,
) -> OnboardingSessionRecord:
    """Write the full snapshot, replacing whatever was stored (last write wins)."""
    try:
        record = await get_record(db, storage_key)

        if record is None:
            record = OnboardingSessionRecord(storage_key=storage_key, partner_id=partner_id)
            db.add(record)
            logger.info(f"Creating session record: {storage_key}")

        # Reassigning the whole dict marks the JSON column as modified
        record.state = state
        record.current_stage = current_stage
        record.overall_progress = overall_progress
        record.is_completed = is_completed
        record.last_activity = last_activity

        await db.commit()
        logger.debug(f"Committed session snapshot: {storage_key}")
        return record

    except Exception as e:
        logger.error(f"ERROR in upsert_record: {type(e).__name__}: {str(e)}")
        logger.error(traceback.format_exc())
        await db.rollback()
        raise


async def delete_record(db: AsyncSession, storage_key: str) -> bool:
    """Delete a persisted session. Returns True if a row was removed."""
    try:
        result = await db.execute(
            delete(OnboardingSessionRecord).where(OnboardingSessionRecord.storage_key == storage_key)
        )
        await db.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted session record: {storage_key}")
        else:
            logger.debug(f"No session record to delete: {storage_key}")
        return deleted

    except Exception as e:
        logger.error(f"ERROR in delete_record: {type(e).__name__}: {str(e)}")
        await db.rollback()
        raise
