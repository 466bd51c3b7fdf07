"""
Stage catalog for partner onboarding.
Defines WHAT each stage requires, not HOW the engine moves between them.
"""

from typing import Optional

from app.models import (
    ApprovalStatus,
    ComplianceDocument,
    OnboardingStage,
    StageApproval,
    StageDefinition,
    StageInstance,
)


# === DOCUMENT CHECKLISTS ===

NDA_DOCUMENTS = [
    ComplianceDocument(
        id="signed-nda",
        label="Signed Non-Disclosure Agreement",
        description="Download, sign and upload the NDA",
        required=True,
    ),
]

KYC_DOCUMENTS = [
    ComplianceDocument(
        id="aml-questionnaire",
        label="AML Questionnaire",
        description="Download, fill and upload the AML questionnaire",
    ),
    ComplianceDocument(
        id="certificate-incorporation",
        label="Certificate of Incorporation",
        description="Upload your company's certificate of incorporation",
    ),
    ComplianceDocument(
        id="memorandum-articles",
        label="Memorandum/Articles of Association",
        description="Upload your company's memorandum or articles of association",
    ),
    ComplianceDocument(
        id="central-bank-license",
        label="Central Bank License/Regulator Authorization Letter",
        description="Upload central bank license or regulator authorization letter",
    ),
    ComplianceDocument(
        id="organization-chart",
        label="Organization Chart",
        description="Upload your organization chart on company letterhead",
    ),
    ComplianceDocument(
        id="shareholder-list",
        label="Shareholder List",
        description="Upload complete shareholder list on company letterhead",
    ),
    ComplianceDocument(
        id="ubo-ids",
        label="IDs of UBOs (>15% ownership)",
        description="Upload ID copies for Ultimate Beneficial Owners with >15% ownership",
    ),
    ComplianceDocument(
        id="director-ids",
        label="IDs of Directors",
        description="Upload ID copies for all directors on company letterhead",
    ),
    ComplianceDocument(
        id="authorized-signatories",
        label="IDs of Authorized Signatories",
        description="Upload ID copies of authorized signatories on company letterhead",
    ),
    ComplianceDocument(
        id="external-audit",
        label="External Audit/Assurance Report",
        description="Upload your latest external audit or assurance report",
    ),
    ComplianceDocument(
        id="aml-policy",
        label="AML Policy & Procedures",
        description="Upload your AML policy and procedures with board approval",
    ),
    ComplianceDocument(
        id="patriot-act",
        label="USA PATRIOT Act Certificate",
        description="Upload USA PATRIOT Act Certificate (only if applicable to your business)",
        required=False,
        conditional=True,
        condition_description="Required only if your business operations involve US transactions or customers",
    ),
    ComplianceDocument(
        id="audited-financials",
        label="Audited Financial Statements (3 years)",
        description="Upload audited financial statements for the last 3 years",
    ),
    ComplianceDocument(
        id="compliance-officer-id",
        label="ID of Compliance Officer/MLRO",
        description="Upload ID copy of your Compliance Officer or Money Laundering Reporting Officer",
    ),
]


# === STAGE DEFINITIONS ===
# Order in this list is the workflow order.

STAGES = [
    StageDefinition(
        id=OnboardingStage.NDA,
        title="Non-Disclosure Agreement",
        description="Review and sign the NDA to protect confidential information",
        prompt="Welcome to WorldAPI Partner Onboarding! Let's start by getting the NDA signed. "
               "This protects both parties' confidential information during our partnership discussions.",
        position=0,
        documents=NDA_DOCUMENTS,
        approval_teams=["Legal"],
    ),
    StageDefinition(
        id=OnboardingStage.COMMERCIALS,
        title="Commercial Terms",
        description="Discuss and agree on commercial terms and pricing",
        prompt="Great job with the NDA! Now let's discuss the commercial terms. Our team will present "
               "the pricing structure and partnership terms for your review.",
        position=1,
        approval_teams=["Business", "Pricing"],
    ),
    StageDefinition(
        id=OnboardingStage.KYC,
        title="Know Your Customer (KYC)",
        description="Complete compliance documentation and verification",
        prompt="Excellent progress! Now we need to complete the KYC process. Please upload the required "
               "compliance documents. You can upload them here or email them to partnerships@digitnine.com.",
        position=2,
        documents=KYC_DOCUMENTS,
        approval_teams=["Compliance"],
    ),
    StageDefinition(
        id=OnboardingStage.AGREEMENT,
        title="Partnership Agreement",
        description="Review and sign the final partnership agreement",
        prompt="Fantastic! Your compliance documentation is approved. Now let's finalize the partnership "
               "agreement based on our agreed commercial terms.",
        position=3,
        approval_teams=["Legal", "Partner"],
    ),
    StageDefinition(
        id=OnboardingStage.INTEGRATION,
        title="Technical Integration",
        description="Set up API access and technical integration",
        prompt="Perfect! With the agreement signed, let's get you set up technically. Our technical team "
               "will provide API credentials and integration support.",
        position=4,
        approval_teams=["Technical"],
        can_skip=True,
        skip_condition="Can be completed after go-live if needed",
    ),
    StageDefinition(
        id=OnboardingStage.UAT,
        title="User Acceptance Testing",
        description="Test the integration in our sandbox environment",
        prompt="Great! Your technical setup is ready. Now let's test everything in our sandbox environment "
               "to ensure everything works perfectly.",
        position=5,
        approval_teams=["Technical", "Partner"],
        can_skip=True,
        skip_condition="Can be skipped if integration is deferred",
    ),
    StageDefinition(
        id=OnboardingStage.GO_LIVE,
        title="Go Live & Activation",
        description="Final activation and go-live process",
        prompt="Congratulations! Everything is tested and ready. Let's activate your partnership and "
               "go live with WorldAPI!",
        position=6,
        approval_teams=["Business"],
    ),
]

_STAGES_BY_ID = {stage.id: stage for stage in STAGES}

# Order in which stages are worked through
STAGE_ORDER = [stage.id for stage in STAGES]


#helper functions

def get_stage_order() -> list[OnboardingStage]:
    return STAGE_ORDER.copy()


def catalog_size() -> int:
    return len(STAGES)


def get_stage_definition(stage_id: OnboardingStage) -> StageDefinition:
    return _STAGES_BY_ID[OnboardingStage(stage_id)]


def find_stage_definition(stage_id) -> Optional[StageDefinition]:
    """Lookup that tolerates unknown ids (returns None)."""
    try:
        return _STAGES_BY_ID.get(OnboardingStage(stage_id))
    except ValueError:
        return None


def get_stage_at(position: int) -> Optional[StageDefinition]:
    if 0 <= position < len(STAGES):
        return STAGES[position]
    return None


def get_next_stage(stage_id: OnboardingStage) -> Optional[StageDefinition]:
    return get_stage_at(get_stage_definition(stage_id).position + 1)


def is_last_stage(stage_id: OnboardingStage) -> bool:
    return get_next_stage(stage_id) is None


def build_stage_instances() -> list[StageInstance]:
    """
    Fresh, independent stage instances for a new session.
    Every document starts pending and every required team's approval pending.
    """
    instances = []
    for stage in STAGES:
        instances.append(
            StageInstance(
                id=stage.id,
                documents=[doc.model_copy(deep=True) for doc in stage.documents],
                approvals=[
                    StageApproval(team=team, status=ApprovalStatus.PENDING)
                    for team in stage.approval_teams
                ],
            )
        )
    return instances
