"""
Message templates and the stage transition table.

Template text is data: adding a stage or rewording a prompt should only
touch this module and app/stages.py, never the engine.
"""

from typing import Optional

from app.models import MessageType, OnboardingStage
from app.stages import STAGE_ORDER


class TransitionEvent:
    ADVANCE = "advance"
    SKIP = "skip"


# === SESSION-LEVEL TEMPLATES ===

WELCOME = {
    "type": MessageType.MESSAGE,
    "content": (
        "Hello {name}! Welcome to WorldAPI Partner Onboarding. I'm your dedicated onboarding agent, "
        "and I'll guide you through each step of becoming a WorldAPI partner.\n\n"
        "🎯 **Your information has been recorded in our system:**\n"
        "• Name: {name}\n"
        "• Company: {organization}\n"
        "• Email: {email}\n\n"
        "Let's start with the NDA to protect our confidential discussions."
    ),
}

RESUME = {
    "type": MessageType.MESSAGE,
    "content": (
        "Welcome back, {name}! We're continuing your onboarding process from where you left off.\n\n"
        "You're currently at the **{stage_title}** stage."
    ),
}

STAGE_COMPLETION = {
    "type": MessageType.STAGE_COMPLETION,
    "content": (
        "🎉 **{title} Completed!**\n\n"
        "Great job! You've successfully completed the {title} stage.\n\n"
        "**Next Step: {next_title}**\n{next_description}"
    ),
}

ONBOARDING_COMPLETE = {
    "type": MessageType.STAGE_COMPLETION,
    "content": (
        "🎉 **{title} Completed!**\n\n"
        "Congratulations {name}! {organization} is now a live WorldAPI partner. "
        "Your partnership was activated on {activation_date}."
    ),
}

STAGE_SKIPPED = {
    "type": MessageType.MESSAGE,
    "content": "⏭️ **Stage Skipped**: {title} was skipped.\n\n**Reason**: {reason}",
}

PRICING_SELECTION = {
    "type": MessageType.PRICING_SELECTION,
    "content": (
        "📋 **Pricing Proposal Selection Summary**\n\n"
        "You've selected {countries_count} countries with a total of {services_count} services.\n\n"
        "**Countries Selected:**\n{country_lines}\n\n"
        "This selection has been saved to your profile and will be used to prepare your commercial proposal."
    ),
}

# Replies are template-driven: there is no language understanding here.
CHAT_REPLY = {
    "type": MessageType.MESSAGE,
    "content": "Thank you for your message. I'm here to help guide you through the onboarding process.",
}

CHAT_HELP_REPLY = {
    "type": MessageType.MESSAGE,
    "content": (
        "You're at the **{stage_title}** stage: {stage_description}.\n\n"
        "{pending_summary}"
    ),
}

HELP_KEYWORDS = ("help", "status", "next", "what now")


# === STAGE-ENTRY TEMPLATES ===
# Sent at most once per stage, when the session first reaches it.

STAGE_ENTRY_MESSAGES = {
    OnboardingStage.NDA: {
        "type": MessageType.DOCUMENT_REQUEST,
        "content": (
            "📄 **NDA Document Download**\n\n"
            "Please download, review, and sign our Non-Disclosure Agreement:\n\n"
            "🔗 **[Download NDA Document](/WorldAPI_NDA.docx)**\n\n"
            "**Next Steps:**\n"
            "1. Download the NDA document\n"
            "2. Review the terms carefully\n"
            "3. Sign the document\n"
            "4. Upload the signed copy back here or email to partnerships@digitnine.com\n\n"
            "💡 **Need Help?**\n"
            "If you have any questions about the NDA terms, please ask and I'll be happy to clarify!"
        ),
    },
    OnboardingStage.COMMERCIALS: {
        "type": MessageType.COMMERCIAL_AGREEMENT,
        "content": (
            "💰 **Commercial Terms Discussion**\n\n"
            "Now that we have the NDA in place, let's discuss the commercial terms for our partnership.\n\n"
            "**First Step: Pricing Selection**\n\n"
            "Before we proceed, please select the countries and services you're interested in from our "
            "pricing proposal. This will help us tailor the commercial terms to your specific needs.\n\n"
            "**What we'll cover after your selection:**\n"
            "• Revenue sharing model\n• Pricing structure\n• Payment terms\n• Volume commitments\n\n"
            "Our business team will reach out to you within 24 hours to schedule a commercial discussion."
        ),
    },
    OnboardingStage.KYC: {
        "type": MessageType.KYC_DOCUMENTS,
        "content": (
            "🔍 **Know Your Customer (KYC) Documentation**\n\n"
            "Excellent! With commercial terms agreed, we now need to complete the KYC process for compliance.\n\n"
            "**Required Documents:**\n{required_documents}\n\n"
            "**Optional Documents:**\n{optional_documents}\n\n"
            "You can upload documents below or email them to partnerships@digitnine.com"
        ),
    },
    OnboardingStage.AGREEMENT: {
        "type": MessageType.AGREEMENT_PREVIEW,
        "content": (
            "✍️ **Partnership Agreement Review**\n\n"
            "Fantastic! Your KYC documentation has been approved by our compliance team.\n\n"
            "**Next Steps:**\n"
            "• Review the Partnership Agreement draft\n• Legal review and approval\n• Digital signature process\n\n"
            "Our legal team is preparing the Partnership Agreement based on your KYC information and agreed "
            "commercial terms. You'll receive the draft agreement for review within 2-3 business days."
        ),
    },
    OnboardingStage.INTEGRATION: {
        "type": MessageType.MESSAGE,
        "content": (
            "🔧 **Technical Integration Setup**\n\n"
            "Congratulations! The Partnership Agreement is fully executed.\n\n"
            "Our technical team will provide:\n"
            "• API keys and endpoints\n• Integration guides\n• Code samples\n• Testing environment access\n\n"
            "Would you like to start the technical integration now or schedule it for later?"
        ),
    },
    OnboardingStage.UAT: {
        "type": MessageType.MESSAGE,
        "content": (
            "🧪 **User Acceptance Testing**\n\n"
            "Great! Your technical integration is set up.\n\n"
            "**Testing Phase:**\n"
            "• Sandbox environment testing\n• Transaction flow validation\n"
            "• Error handling verification\n• Performance testing"
        ),
    },
    OnboardingStage.GO_LIVE: {
        "type": MessageType.MESSAGE,
        "content": (
            "🚀 **Ready for Go-Live!**\n\n"
            "Excellent! All testing is complete and successful.\n\n"
            "**Final Steps:**\n"
            "• Production environment activation\n• Live transaction monitoring\n"
            "• Support team introduction\n• Partnership launch celebration!"
        ),
    },
}

# Markers that identify an already-sent stage prompt in an existing log
STAGE_MESSAGE_TYPES = {
    OnboardingStage.COMMERCIALS: {MessageType.COMMERCIAL_AGREEMENT, MessageType.PRICING_SELECTION},
    OnboardingStage.KYC: {MessageType.KYC_DOCUMENTS},
    OnboardingStage.AGREEMENT: {MessageType.AGREEMENT_PREVIEW},
}

STAGE_CONTENT_MARKERS = {
    OnboardingStage.NDA: ("NDA Document Download",),
    OnboardingStage.COMMERCIALS: ("Commercial Terms", "Pricing Proposal"),
    OnboardingStage.KYC: ("Know Your Customer",),
    OnboardingStage.AGREEMENT: ("Partnership Agreement",),
}


# === TRANSITION TABLE ===

def _build_transitions() -> dict:
    table = {}
    for index, stage_id in enumerate(STAGE_ORDER):
        next_stage = STAGE_ORDER[index + 1] if index + 1 < len(STAGE_ORDER) else None
        if next_stage is None:
            table[(stage_id, TransitionEvent.ADVANCE)] = (None, ONBOARDING_COMPLETE)
        else:
            table[(stage_id, TransitionEvent.ADVANCE)] = (next_stage, STAGE_COMPLETION)
        table[(stage_id, TransitionEvent.SKIP)] = (next_stage, STAGE_SKIPPED)
    return table


TRANSITIONS = _build_transitions()


def resolve_transition(stage_id: OnboardingStage, event: str) -> tuple[Optional[OnboardingStage], dict]:
    """(current stage, event) -> (next stage or None when the workflow ends, message template)"""
    return TRANSITIONS[(OnboardingStage(stage_id), event)]


def render(template: dict, **values) -> tuple[MessageType, str]:
    return template["type"], template["content"].format(**values)
