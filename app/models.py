"""
Pydantic models for the partner onboarding engine and its API.

Persisted snapshots use camelCase keys (see OnboardingSession), so every
domain model shares the same alias configuration.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current time used for every engine timestamp."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# === ENUMS ===

class OnboardingStage(str, Enum):
    """Stage ids, in catalog order."""
    NDA = "nda"
    COMMERCIALS = "commercials"
    KYC = "kyc"
    AGREEMENT = "agreement"
    INTEGRATION = "integration"
    UAT = "uat"
    GO_LIVE = "go-live"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    RECEIVED = "received"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses counted as "satisfied" for progress and completion math
TERMINAL_POSITIVE_STATUSES = frozenset({
    DocumentStatus.UPLOADED,
    DocumentStatus.RECEIVED,
    DocumentStatus.APPROVED,
})


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_REQUIRED = "not-required"


class MessageSender(str, Enum):
    AGENT = "agent"
    PARTNER = "partner"
    SYSTEM = "system"


class MessageType(str, Enum):
    MESSAGE = "message"
    DOCUMENT_REQUEST = "document-request"
    UPLOAD_CONFIRMATION = "upload-confirmation"
    APPROVAL_UPDATE = "approval-update"
    STAGE_COMPLETION = "stage-completion"
    COMMERCIAL_AGREEMENT = "commercial-agreement"
    KYC_DOCUMENTS = "kyc-documents"
    AGREEMENT_PREVIEW = "agreement-preview"
    PRICING_SELECTION = "pricing-selection"


# === CORE DATA MODELS ===

class PartnerProfile(CamelModel):
    """
    Identity of the onboarding subject.
    Persisted under the "partnerInfo" key.
    """
    name: str
    organization: str
    email: str
    phone: Optional[str] = None
    role: Optional[str] = None
    country: Optional[str] = None
    crm_contact_id: Optional[str] = None


class ComplianceDocument(CamelModel):
    """One entry of a stage's document checklist."""
    id: str
    label: str
    description: str = ""
    required: bool = True
    conditional: Optional[bool] = None
    condition_description: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    file_name: Optional[str] = None
    upload_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @property
    def is_satisfied(self) -> bool:
        return self.status in TERMINAL_POSITIVE_STATUSES


class StageApproval(CamelModel):
    """A named team's sign-off for one stage."""
    team: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approved_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class StageDefinition(CamelModel):
    """Static catalog entry. Never mutated at runtime."""
    model_config = ConfigDict(frozen=True)

    id: OnboardingStage
    title: str
    description: str
    prompt: str
    position: int
    documents: List[ComplianceDocument] = []
    approval_teams: List[str] = []
    can_skip: bool = False
    skip_condition: Optional[str] = None


class StageInstance(CamelModel):
    """
    A catalog stage bound to one session's mutable checklist and approvals.
    Title and description live in the catalog, looked up by id.
    """
    id: OnboardingStage
    completed: bool = False
    progress: int = Field(default=0, ge=0, le=100)
    documents: List[ComplianceDocument] = []
    approvals: List[StageApproval] = []
    skipped: Optional[bool] = None
    skip_reason: Optional[str] = None
    messages_initialized: Optional[bool] = None

    def find_document(self, document_id: str) -> Optional[ComplianceDocument]:
        return next((d for d in self.documents if d.id == document_id), None)

    def find_approval(self, team: str) -> Optional[StageApproval]:
        return next((a for a in self.approvals if a.team == team), None)


class ChatMessage(CamelModel):
    """Append-only event log entry."""
    model_config = ConfigDict(frozen=True)

    id: str
    sender: MessageSender
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: MessageType = MessageType.MESSAGE
    metadata: Optional[Dict[str, Any]] = None


class OnboardingSession(CamelModel):
    """
    Aggregate root for one partner's onboarding.
    Only the WorkflowEngine mutates it.
    """
    partner_id: str
    partner_info: PartnerProfile
    current_stage: OnboardingStage = OnboardingStage.NDA
    stages: List[StageInstance]
    messages: List[ChatMessage] = []
    overall_progress: int = Field(default=0, ge=0, le=100)
    is_completed: bool = False
    last_activity: datetime = Field(default_factory=utcnow)
    activation_date: Optional[datetime] = None

    def get_stage(self, stage_id: OnboardingStage) -> Optional[StageInstance]:
        return next((s for s in self.stages if s.id == stage_id), None)

    @property
    def current(self) -> StageInstance:
        return self.get_stage(self.current_stage)

    def to_snapshot(self) -> dict:
        """JSON-ready dict in the persisted layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# === API REQUEST MODELS ===

class InitRequest(CamelModel):
    """Start a new onboarding session, or resume the partner's existing one."""
    partner_id: Optional[str] = None
    partner_info: PartnerProfile


class DocumentSubmitRequest(CamelModel):
    file_name: str = Field(min_length=1)
    stage_id: Optional[OnboardingStage] = None


class DocumentSkipRequest(CamelModel):
    stage_id: Optional[OnboardingStage] = None


class ApprovalRequest(CamelModel):
    stage_id: OnboardingStage
    team: str
    status: ApprovalStatus
    reason: Optional[str] = None
    approved_by: Optional[str] = None


class SkipStageRequest(CamelModel):
    reason: str = Field(min_length=1)


class ChatMessageRequest(CamelModel):
    content: str = Field(min_length=1)


class PricingSelectionRequest(CamelModel):
    """Countries (ISO codes) and the services picked per country."""
    selected_countries: List[str] = []
    selected_services: Dict[str, List[str]] = {}
    country_names: Dict[str, str] = {}


# === API RESPONSE MODELS ===

class OnboardingResponse(BaseModel):
    """
    Response from mutating onboarding endpoints.
    Carries the full session snapshot in its persisted layout.
    """
    partner_id: str
    success: bool = True
    current_stage: OnboardingStage
    overall_progress: int
    is_complete: bool = False
    session: Dict[str, Any]


class PendingApprovalEntry(BaseModel):
    stage_id: OnboardingStage
    team: str
    status: ApprovalStatus


class ErrorResponse(BaseModel):
    """Error response structure."""
    success: bool = False
    error: str
    detail: Optional[str] = None
