from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone


from app.db import Base  # This imports from app/db.py (the file with engine setup)


def _utcnow():
    return datetime.now(timezone.utc)


class OnboardingSessionRecord(Base):
    """
    One persisted partner onboarding session.

    The full aggregate lives in `state` as the camelCase JSON snapshot;
    the other columns are copies kept for querying and oversight.
    """
    __tablename__ = "onboarding_sessions"

    # Storage key, e.g. "partner_onboarding_state:partner_1700000000000"
    storage_key = Column(String(255), primary_key=True)

    partner_id = Column(String(255), nullable=False, index=True)

    # Snapshot copies
    current_stage = Column(String(50), nullable=False)
    overall_progress = Column(Integer, default=0, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=False, index=True)

    # Full session snapshot stored as JSONB (plain JSON on other dialects)
    state = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<OnboardingSessionRecord(partner_id={self.partner_id}, "
            f"current_stage={self.current_stage}, is_completed={self.is_completed})>"
        )
