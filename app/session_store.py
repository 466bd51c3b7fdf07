"""
Session persistence for partner onboarding.

SessionStore is the port the engine talks to. Adapters only move raw JSON
snapshots; decoding, structural validation and the staleness window are
shared in the base class, so every backend fails open the same way: an
unreadable or expired record is discarded and reported as not found.
"""

import json
from abc import ABC, abstractmethod
from datetime import timedelta, timezone
from typing import Callable, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.db_operations as db_ops
from app.db import AsyncSessionLocal
from app.core.config import Settings, settings
from app.errors import InvalidPersistedState
from app.logging_config import get_logger
from app.models import OnboardingSession, utcnow
from app.stages import STAGE_ORDER

logger = get_logger("app.session_store")


class SessionStore(ABC):
    """Load/save/delete one snapshot per partner."""

    def __init__(
        self,
        max_age: Optional[timedelta] = None,
        key_prefix: Optional[str] = None,
        clock: Callable = utcnow,
    ):
        self.max_age = max_age or settings.session_max_age
        self.key_prefix = key_prefix or settings.STORAGE_KEY_PREFIX
        self._clock = clock

    def storage_key(self, partner_id: str) -> str:
        return f"{self.key_prefix}:{partner_id}"

    # === ADAPTER HOOKS ===

    @abstractmethod
    async def _read(self, key: str) -> Optional[Union[str, dict]]:
        """Raw stored snapshot, or None."""

    @abstractmethod
    async def _write(self, key: str, snapshot: dict, session: OnboardingSession) -> None:
        """Replace the stored snapshot."""

    @abstractmethod
    async def _remove(self, key: str) -> bool:
        """Drop the stored snapshot. Returns True if something was removed."""

    # === PUBLIC API ===

    async def load(self, partner_id: str) -> Optional[OnboardingSession]:
        """
        Restore a partner's session.

        Returns None when nothing is stored, when the record fails
        validation, or when it has been inactive longer than max_age.
        The latter two also delete the record.
        """
        key = self.storage_key(partner_id)
        raw = await self._read(key)
        if raw is None:
            logger.debug(f"No saved onboarding state found for {key}")
            return None

        try:
            session = self.decode(raw, partner_id)
        except InvalidPersistedState as e:
            logger.warning(f"Invalid saved onboarding state for {key}, discarding: {e.reason}")
            await self._remove(key)
            return None

        if self.is_stale(session):
            logger.info(
                f"⏰ Cached onboarding session {key} expired "
                f"(inactive for more than {self.max_age.days} days). Discarding."
            )
            await self._remove(key)
            return None

        logger.info(f"📂 Restored onboarding state for partner: {session.partner_info.name}")
        return session

    async def save(self, session: OnboardingSession) -> None:
        """Full-snapshot write. Last write wins, no version check."""
        key = self.storage_key(session.partner_id)
        await self._write(key, session.to_snapshot(), session)
        logger.debug(f"💾 Saved onboarding state: {key}")

    async def delete(self, partner_id: str) -> bool:
        return await self._remove(self.storage_key(partner_id))

    # === SHARED HELPERS ===

    def is_stale(self, session: OnboardingSession) -> bool:
        last_activity = session.last_activity
        if last_activity.tzinfo is None:
            last_activity = last_activity.replace(tzinfo=timezone.utc)
        return self._clock() - last_activity > self.max_age

    @staticmethod
    def decode(raw: Union[str, dict], partner_id: Optional[str] = None) -> OnboardingSession:
        """Parse and structurally validate a stored snapshot."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise InvalidPersistedState(f"snapshot is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise InvalidPersistedState("snapshot is not a JSON object")

        try:
            session = OnboardingSession.model_validate(raw)
        except ValidationError as e:
            raise InvalidPersistedState(f"snapshot failed validation ({e.error_count()} errors)") from e

        stage_ids = [stage.id for stage in session.stages]
        if stage_ids != STAGE_ORDER:
            raise InvalidPersistedState(
                f"expected {len(STAGE_ORDER)} stages in catalog order, found {len(stage_ids)}"
            )

        if partner_id is not None and session.partner_id != partner_id:
            raise InvalidPersistedState(
                f"snapshot belongs to {session.partner_id}, not {partner_id}"
            )

        return session


class InMemorySessionStore(SessionStore):
    """
    Process-local storage, holding serialized JSON strings like a browser's
    local storage would. Used for development and tests.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._records: Dict[str, str] = {}

    async def _read(self, key: str) -> Optional[str]:
        return self._records.get(key)

    async def _write(self, key: str, snapshot: dict, session: OnboardingSession) -> None:
        self._records[key] = json.dumps(snapshot)

    async def _remove(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def put_raw(self, partner_id: str, raw: Union[str, bytes]) -> None:
        """Seed a raw record (used to simulate records written elsewhere)."""
        self._records[self.storage_key(partner_id)] = raw

    def clear_all(self) -> None:
        count = len(self._records)
        self._records.clear()
        logger.info(f"🗑️  Cleared {count} stored sessions")


class DatabaseSessionStore(SessionStore):
    """Snapshots in the onboarding_sessions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], **kwargs):
        super().__init__(**kwargs)
        self._session_factory = session_factory

    async def _read(self, key: str) -> Optional[dict]:
        async with self._session_factory() as db:
            record = await db_ops.get_record(db, key)
            return record.state if record is not None else None

    async def _write(self, key: str, snapshot: dict, session: OnboardingSession) -> None:
        async with self._session_factory() as db:
            await db_ops.upsert_record(
                db,
                storage_key=key,
                partner_id=session.partner_id,
                state=snapshot,
                current_stage=session.current_stage.value,
                overall_progress=session.overall_progress,
                is_completed=session.is_completed,
                last_activity=session.last_activity,
            )

    async def _remove(self, key: str) -> bool:
        async with self._session_factory() as db:
            return await db_ops.delete_record(db, key)


def create_session_store(current: Settings = settings) -> SessionStore:
    """Build the store selected by SESSION_BACKEND."""
    if current.SESSION_BACKEND == "memory":
        logger.info("Using in-memory session store")
        return InMemorySessionStore(max_age=current.session_max_age, key_prefix=current.STORAGE_KEY_PREFIX)

    logger.info("Using database session store")
    return DatabaseSessionStore(
        AsyncSessionLocal,
        max_age=current.session_max_age,
        key_prefix=current.STORAGE_KEY_PREFIX,
    )
