"""
Team approvals and the stage completion predicate.
"""

from typing import Optional

from app.documents import all_required_satisfied
from app.errors import InvalidDecision, UnknownTeam
from app.logging_config import get_logger
from app.models import (
    ApprovalStatus,
    OnboardingSession,
    OnboardingStage,
    StageApproval,
    StageInstance,
    utcnow,
)

logger = get_logger("app.approvals")

# "not-required" entries never block a stage
SATISFIED_APPROVAL_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.NOT_REQUIRED})

DEFAULT_APPROVER = "System"


def all_approvals_granted(stage: StageInstance) -> bool:
    return all(approval.status in SATISFIED_APPROVAL_STATUSES for approval in stage.approvals)


def is_stage_satisfied(stage: StageInstance) -> bool:
    """Every approval granted and every required document in a satisfied status."""
    return all_approvals_granted(stage) and all_required_satisfied(stage)


def evaluate_stage_completion(stage: StageInstance) -> bool:
    """
    Recompute stage.completed. Skipped stages stay completed.
    Stages without a checklist report 100/0 progress from the completed flag.
    """
    stage.completed = bool(stage.skipped) or is_stage_satisfied(stage)
    if not stage.documents:
        stage.progress = 100 if stage.completed else 0
    return stage.completed


def record_approval(
    stage: StageInstance,
    team: str,
    status: ApprovalStatus,
    reason: Optional[str] = None,
    approved_by: Optional[str] = None,
) -> StageApproval:
    """Update the named team's decision and recompute the stage's completed flag."""
    if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
        raise InvalidDecision(f"Approval decision must be approved or rejected, got {ApprovalStatus(status).value}")

    approval = stage.find_approval(team)
    if approval is None:
        logger.warning(f"Unknown approving team '{team}' for stage {stage.id.value}")
        raise UnknownTeam(f"{team} is not an approving team for the {stage.id.value} stage")

    approval.status = status
    if status == ApprovalStatus.APPROVED:
        approval.approved_by = approved_by or DEFAULT_APPROVER
        approval.approved_date = utcnow()
        approval.rejection_reason = None
    else:
        approval.approved_by = None
        approval.approved_date = None
        approval.rejection_reason = reason

    evaluate_stage_completion(stage)
    logger.info(
        f"Approval {stage.id.value}/{team} -> {status.value} "
        f"(stage completed: {stage.completed})"
    )
    return approval


def pending_approvals(session: OnboardingSession) -> list[StageApproval]:
    """Every pending approval across all stages, in catalog order."""
    return [
        approval
        for stage in session.stages
        for approval in stage.approvals
        if approval.status == ApprovalStatus.PENDING
    ]


def pending_approvals_by_stage(session: OnboardingSession) -> dict[OnboardingStage, list[StageApproval]]:
    grouped = {}
    for stage in session.stages:
        pending = [a for a in stage.approvals if a.status == ApprovalStatus.PENDING]
        if pending:
            grouped[stage.id] = pending
    return grouped
