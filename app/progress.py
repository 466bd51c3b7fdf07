"""
Progress math for onboarding sessions.

Percentages are whole numbers rounded half-up, so 1 of 7 stages reads 14
and 1 of 8 reads 13.
"""

from app.models import OnboardingSession, OnboardingStage


def percent(part: int, total: int) -> int:
    """round(100 * part / total), half-up, integers only."""
    if total <= 0:
        return 0
    return (200 * part + total) // (2 * total)


def overall_progress(session: OnboardingSession) -> int:
    completed = sum(1 for stage in session.stages if stage.completed)
    return percent(completed, len(session.stages))


def stage_completion_flags(session: OnboardingSession) -> dict[OnboardingStage, bool]:
    return {stage.id: stage.completed for stage in session.stages}


def refresh_overall_progress(session: OnboardingSession) -> int:
    """Store the recomputed overall progress on the session and return it."""
    session.overall_progress = overall_progress(session)
    return session.overall_progress
