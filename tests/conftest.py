"""
Pytest configuration for the partner onboarding tests.

Key features:
- Forces the in-memory session backend and an SQLite URL before the app imports settings
- Provides a controllable clock, a recording notifier and a ready WorkflowEngine
"""
import os
from datetime import datetime, timedelta, timezone

os.environ["SESSION_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SLACK_ENABLED"] = "false"

import pytest

from app.engine import WorkflowEngine
from app.models import ApprovalStatus, PartnerProfile
from app.notifications import NotificationPort
from app.session_store import InMemorySessionStore
from app.stages import get_stage_definition


# =============================================================================
# Test doubles
# =============================================================================

class FrozenClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(NotificationPort):
    def __init__(self):
        self.events = []

    async def notify(self, event) -> bool:
        self.events.append(event)
        return True

    def kinds(self):
        return [event.kind for event in self.events]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(
        max_age=timedelta(days=7),
        key_prefix="partner_onboarding_state",
        clock=clock,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier, clock):
    return WorkflowEngine(store, notifier, clock=clock)


@pytest.fixture
def profile():
    return PartnerProfile(
        name="Jane Doe",
        organization="Acme Remit",
        email="jane@acme-remit.test",
        country="AE",
    )


@pytest.fixture
async def session(engine, profile):
    return await engine.initialize(profile, partner_id="partner_test")


@pytest.fixture
def complete_stage(engine):
    """Upload every required document and approve every team for one stage."""

    async def _complete(partner_id, stage_id):
        definition = get_stage_definition(stage_id)
        for document in definition.documents:
            if document.required:
                await engine.submit_document(partner_id, document.id, f"{document.id}.pdf", stage_id=stage_id)
        for team in definition.approval_teams:
            await engine.record_approval(partner_id, stage_id, team, ApprovalStatus.APPROVED, approved_by="Ops")

    return _complete
