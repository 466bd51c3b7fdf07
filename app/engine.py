"""
Partner onboarding workflow engine.

Every change to an OnboardingSession goes through WorkflowEngine. Each
operation validates first, mutates, recomputes progress and then writes the
whole snapshot through the SessionStore before returning.

Concurrency: one writer per partner session. There is no version counter or
lock, so two writers racing on the same partner resolve as last write wins.
"""

import time
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from app import approvals, documents
from app.errors import (
    CannotSkipStage,
    SessionCompleted,
    SessionNotFound,
    StageNotComplete,
    UnknownStage,
)
from app.documents import DocumentSink
from app.logging_config import get_logger
from app.messages import (
    CHAT_HELP_REPLY,
    CHAT_REPLY,
    HELP_KEYWORDS,
    PRICING_SELECTION,
    RESUME,
    STAGE_CONTENT_MARKERS,
    STAGE_ENTRY_MESSAGES,
    STAGE_MESSAGE_TYPES,
    WELCOME,
    TransitionEvent,
    render,
    resolve_transition,
)
from app.models import (
    ApprovalStatus,
    ChatMessage,
    ComplianceDocument,
    MessageSender,
    MessageType,
    OnboardingSession,
    OnboardingStage,
    PartnerProfile,
    StageApproval,
    StageInstance,
    utcnow,
)
from app.notifications import CompositeNotifier, NotificationEvent, NotificationKind, NotificationPort
from app.progress import refresh_overall_progress
from app.core.config import settings
from app.session_store import SessionStore
from app.stages import build_stage_instances, get_stage_definition

logger = get_logger("app.engine")


def generate_message_id(prefix: str = "msg") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def generate_partner_id() -> str:
    return f"partner_{int(time.time() * 1000)}"


class WorkflowEngine:
    """
    Orchestrates stage transitions, the message log, persistence and
    notifications for partner onboarding sessions.
    """

    def __init__(
        self,
        store: SessionStore,
        notifier: Optional[NotificationPort] = None,
        clock: Callable = utcnow,
        document_sink: Optional[DocumentSink] = None,
        cache_size: Optional[int] = None,
    ):
        self.store = store
        self.notifier = notifier or CompositeNotifier([])
        self.document_sink = document_sink
        self.cache_size = cache_size or settings.SESSION_CACHE_SIZE
        self._clock = clock
        # Active sessions keyed by partner id, least recently used first.
        # The store is the source of truth; completed sessions are not kept.
        self._sessions: OrderedDict[str, OnboardingSession] = OrderedDict()

    # === SESSION ACCESS ===

    def _cache(self, session: OnboardingSession) -> None:
        if session.is_completed:
            self._sessions.pop(session.partner_id, None)
            return
        self._sessions[session.partner_id] = session
        self._sessions.move_to_end(session.partner_id)
        while len(self._sessions) > self.cache_size:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug(f"Evicted {evicted} from the session cache")

    async def find_session(self, partner_id: str) -> Optional[OnboardingSession]:
        """
        Cached session or the stored one. Cached sessions go through the
        same staleness window as stored ones.
        """
        session = self._sessions.get(partner_id)
        if session is not None:
            if not self.store.is_stale(session):
                self._sessions.move_to_end(partner_id)
                return session
            logger.info(f"⏰ Cached onboarding session {partner_id} expired. Discarding.")
            self._sessions.pop(partner_id, None)
            await self.store.delete(partner_id)
            return None

        session = await self.store.load(partner_id)
        if session is not None:
            self._cache(session)
        return session

    async def get_session(self, partner_id: str) -> OnboardingSession:
        session = await self.find_session(partner_id)
        if session is None:
            raise SessionNotFound(f"No onboarding session found for {partner_id}")
        return session

    async def _get_active_session(self, partner_id: str) -> OnboardingSession:
        session = await self.get_session(partner_id)
        if session.is_completed:
            logger.warning(f"Rejected change to completed session {partner_id}")
            raise SessionCompleted("Onboarding is already complete for this partner")
        return session

    @staticmethod
    def _resolve_stage(session: OnboardingSession, stage_id=None) -> StageInstance:
        if stage_id is None:
            return session.current
        try:
            stage = session.get_stage(OnboardingStage(stage_id))
        except ValueError:
            stage = None
        if stage is None:
            raise UnknownStage(f"'{stage_id}' is not an onboarding stage")
        return stage

    async def _commit(self, session: OnboardingSession) -> None:
        """Recompute progress, stamp activity and write the full snapshot."""
        refresh_overall_progress(session)
        session.last_activity = self._clock()
        try:
            await self.store.save(session)
        except Exception as e:
            # Next access reloads the last persisted snapshot
            self._sessions.pop(session.partner_id, None)
            logger.error(f"Failed to save onboarding state for {session.partner_id}: {type(e).__name__}: {e}")
            raise
        self._cache(session)

    # === MESSAGE LOG ===

    def _append_message(
        self,
        session: OnboardingSession,
        sender: MessageSender,
        message_type: MessageType,
        content: str,
        prefix: str = "msg",
        metadata: Optional[dict] = None,
    ) -> ChatMessage:
        message = ChatMessage(
            id=generate_message_id(prefix),
            sender=sender,
            content=content,
            timestamp=self._clock(),
            type=message_type,
            metadata=metadata,
        )
        session.messages.append(message)
        return message

    @staticmethod
    def _has_stage_prompt(session: OnboardingSession, stage_id: OnboardingStage) -> bool:
        """
        Look for a prompt for this stage already in the log: by metadata
        tag, by stage-specific message type, or by content marker.
        Partner messages, completion notices and engine bookkeeping
        messages (those tagged with an "event") never count.
        """
        message_types = STAGE_MESSAGE_TYPES.get(stage_id, set())
        markers = STAGE_CONTENT_MARKERS.get(stage_id, ())

        for message in session.messages:
            metadata = message.metadata or {}
            if (
                message.sender == MessageSender.PARTNER
                or message.type == MessageType.STAGE_COMPLETION
                or metadata.get("event")
            ):
                continue

            if metadata.get("stageId") == stage_id.value:
                return True
            if message.type in message_types:
                return True
            if any(marker in message.content for marker in markers):
                return True
        return False

    async def _send_stage_entry_message(self, session: OnboardingSession, stage_id: OnboardingStage) -> bool:
        """Send a stage's one-time prompt. Returns True if a message was appended."""
        stage = session.get_stage(stage_id)

        if stage.messages_initialized:
            logger.debug(f"💬 Stage messages already initialized for: {stage_id.value}")
            return False

        template = STAGE_ENTRY_MESSAGES.get(stage_id)
        if stage.skipped or template is None or self._has_stage_prompt(session, stage_id):
            logger.info(f"🚫 Stage-specific message not needed for: {stage_id.value}")
            stage.messages_initialized = True
            await self._commit(session)
            return False

        message_type, content = render(template, **self._template_values(stage))
        self._append_message(
            session,
            MessageSender.SYSTEM,
            message_type,
            content,
            prefix=stage_id.value.replace("-", ""),
            metadata={"stageId": stage_id.value},
        )
        stage.messages_initialized = True
        await self._commit(session)
        logger.info(f"✅ Sent stage-specific message for: {stage_id.value}")
        return True

    @staticmethod
    def _template_values(stage: StageInstance) -> dict:
        required = [f"• {doc.label}" for doc in stage.documents if doc.required]
        optional = [f"• {doc.label}" for doc in stage.documents if not doc.required]
        return {
            "required_documents": "\n".join(required) or "• None",
            "optional_documents": "\n".join(optional) or "• None",
        }

    # === NOTIFICATIONS ===

    async def _notify(
        self,
        session: OnboardingSession,
        kind: NotificationKind,
        summary: str,
        stage_id: Optional[OnboardingStage] = None,
        team: Optional[str] = None,
    ) -> None:
        if team is None and stage_id is not None:
            teams = get_stage_definition(stage_id).approval_teams
            team = teams[0] if teams else None

        event = NotificationEvent(
            kind=kind,
            partner_id=session.partner_id,
            partner_name=session.partner_info.name,
            organization=session.partner_info.organization,
            stage_id=stage_id,
            team=team,
            summary=summary,
        )
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Notification {kind.value} failed for {session.partner_id}: {type(e).__name__}: {e}")

    # === LIFECYCLE ===

    async def initialize(self, profile: PartnerProfile, partner_id: Optional[str] = None) -> OnboardingSession:
        """
        Resume the partner's session if one exists, otherwise start a new one.

        Resuming only appends a "welcome back" message. A new session gets the
        welcome message followed by the NDA document request.
        """
        if partner_id:
            existing = await self.find_session(partner_id)
            if existing is not None:
                logger.info(f"🔒 Resuming existing onboarding session for: {existing.partner_info.name}")
                stage_title = get_stage_definition(existing.current_stage).title
                message_type, content = render(
                    RESUME, name=existing.partner_info.name, stage_title=stage_title
                )
                self._append_message(
                    existing, MessageSender.AGENT, message_type, content,
                    prefix="resume", metadata={"event": "resume"},
                )
                await self._commit(existing)
                return existing

        partner_id = partner_id or generate_partner_id()
        logger.info(f"🌱 Initializing new onboarding process for: {profile.name} ({partner_id})")

        session = OnboardingSession(
            partner_id=partner_id,
            partner_info=profile,
            current_stage=OnboardingStage.NDA,
            stages=build_stage_instances(),
            messages=[],
            overall_progress=0,
            is_completed=False,
            last_activity=self._clock(),
        )
        message_type, content = render(
            WELCOME, name=profile.name, organization=profile.organization, email=profile.email
        )
        self._append_message(
            session, MessageSender.AGENT, message_type, content,
            prefix="init", metadata={"event": "welcome"},
        )
        await self._commit(session)

        # Welcome first, then the NDA request
        await self._send_stage_entry_message(session, OnboardingStage.NDA)
        return session

    async def reset(
        self,
        partner_id: str,
        clear_persistence: bool = True,
        clear_in_memory: bool = True,
        reason: str = "manual reset",
    ) -> None:
        logger.info(f"🔄 Resetting onboarding process for {partner_id}. Reason: {reason}")

        if clear_persistence:
            removed = await self.store.delete(partner_id)
            logger.info(f"🗑️ Cleared persisted onboarding state for {partner_id} (existed: {removed})")

        if clear_in_memory:
            self._sessions.pop(partner_id, None)
            logger.info(f"🔄 Reset in-memory onboarding state for {partner_id}")

    # === DOCUMENTS ===

    async def submit_document(
        self,
        partner_id: str,
        document_id: str,
        file_name: str,
        stage_id: Optional[OnboardingStage] = None,
        content: Optional[bytes] = None,
    ) -> ComplianceDocument:
        """
        Record a partner upload. When file bytes and a DocumentSink are both
        present the bytes are stored first, so a storage failure leaves the
        checklist untouched.
        """
        session = await self._get_active_session(partner_id)
        stage = self._resolve_stage(session, stage_id)
        logger.info(f"🚀 Uploading document: {document_id} ({file_name}) for {partner_id}")

        if content is not None and self.document_sink is not None:
            documents.check_submittable(stage, document_id)
            reference = await self.document_sink.persist(
                file_name, content,
                {"partnerId": partner_id, "stageId": stage.id.value, "documentId": document_id},
            )
            logger.info(f"📁 Stored {file_name} for {partner_id} at {reference}")

        document = documents.submit_document(stage, document_id, file_name)
        approvals.evaluate_stage_completion(stage)
        await self._commit(session)

        await self._notify(
            session, NotificationKind.DOCUMENT_UPLOADED,
            f"{document.label} uploaded ({file_name})", stage_id=stage.id,
        )
        return document

    async def mark_document_received(
        self,
        partner_id: str,
        document_id: str,
        file_name: str,
        stage_id: Optional[OnboardingStage] = None,
    ) -> ComplianceDocument:
        session = await self._get_active_session(partner_id)
        stage = self._resolve_stage(session, stage_id)
        logger.info(f"📝 Mark document as received: {document_id} ({file_name}) for {partner_id}")

        document = documents.mark_received(stage, document_id, file_name)
        approvals.evaluate_stage_completion(stage)
        await self._commit(session)

        await self._notify(
            session, NotificationKind.DOCUMENT_RECEIVED,
            f"{document.label} received ({file_name})", stage_id=stage.id,
        )
        return document

    async def skip_optional_document(
        self,
        partner_id: str,
        document_id: str,
        stage_id: Optional[OnboardingStage] = None,
    ) -> ComplianceDocument:
        session = await self._get_active_session(partner_id)
        stage = self._resolve_stage(session, stage_id)
        logger.info(f"⏭️ Skip document: {document_id} for {partner_id}")

        document = documents.skip_optional_document(stage, document_id)
        approvals.evaluate_stage_completion(stage)
        await self._commit(session)
        return document

    # === APPROVALS ===

    async def record_approval(
        self,
        partner_id: str,
        stage_id: OnboardingStage,
        team: str,
        status: ApprovalStatus,
        reason: Optional[str] = None,
        approved_by: Optional[str] = None,
    ) -> StageApproval:
        session = await self._get_active_session(partner_id)
        stage = self._resolve_stage(session, stage_id)
        logger.info(f"🔄 Updating approval status: {stage.id.value} {team} {ApprovalStatus(status).value}")

        approval = approvals.record_approval(stage, team, ApprovalStatus(status), reason, approved_by)
        await self._commit(session)

        summary = f"{team} {approval.status.value} the {get_stage_definition(stage.id).title} stage"
        if approval.rejection_reason:
            summary += f": {approval.rejection_reason}"
        await self._notify(session, NotificationKind.APPROVAL_RECORDED, summary, stage_id=stage.id, team=team)
        return approval

    async def pending_approvals(self, partner_id: str) -> list[StageApproval]:
        session = await self.get_session(partner_id)
        return approvals.pending_approvals(session)

    async def pending_approvals_by_stage(self, partner_id: str) -> dict[OnboardingStage, list[StageApproval]]:
        session = await self.get_session(partner_id)
        return approvals.pending_approvals_by_stage(session)

    # === TRANSITIONS ===

    @staticmethod
    def _missing_requirements(stage: StageInstance) -> list[str]:
        missing = [
            f"{approval.team} approval {approval.status.value}"
            for approval in stage.approvals
            if approval.status not in approvals.SATISFIED_APPROVAL_STATUSES
        ]
        missing += [
            f"{doc.label} {doc.status.value}"
            for doc in stage.documents
            if doc.required and not doc.is_satisfied
        ]
        return missing

    async def request_advance(self, partner_id: str) -> OnboardingSession:
        """
        Complete the current stage and move to the next one.

        The completion message is saved before the next stage's prompt is
        considered. Advancing from the last stage completes the onboarding.
        """
        session = await self._get_active_session(partner_id)
        stage = session.current
        definition = get_stage_definition(stage.id)
        logger.info(f"🚀 Moving to next stage from: {stage.id.value}")

        if not approvals.evaluate_stage_completion(stage):
            missing = self._missing_requirements(stage)
            logger.warning(f"❌ Cannot advance {partner_id}: {definition.title} incomplete ({missing})")
            raise StageNotComplete(
                f"{definition.title} is not complete yet. Outstanding: {', '.join(missing)}"
            )

        stage.completed = True
        next_stage_id, template = resolve_transition(stage.id, TransitionEvent.ADVANCE)

        if next_stage_id is None:
            session.is_completed = True
            session.activation_date = self._clock()
            message_type, content = render(
                template,
                title=definition.title,
                name=session.partner_info.name,
                organization=session.partner_info.organization,
                activation_date=session.activation_date.strftime("%Y-%m-%d"),
            )
            self._append_message(
                session, MessageSender.AGENT, message_type, content,
                prefix="completion", metadata={"completedStage": stage.id.value, "event": "onboarding-complete"},
            )
            await self._commit(session)
            logger.info(f"🎉 Onboarding completed for {partner_id}")

            await self._notify(session, NotificationKind.STAGE_COMPLETED, f"{definition.title} completed", stage_id=stage.id)
            await self._notify(session, NotificationKind.ONBOARDING_COMPLETED, "Partner activated", stage_id=stage.id)
            return session

        next_definition = get_stage_definition(next_stage_id)
        session.current_stage = next_stage_id
        message_type, content = render(
            template,
            title=definition.title,
            next_title=next_definition.title,
            next_description=next_definition.description,
        )
        self._append_message(
            session, MessageSender.AGENT, message_type, content,
            prefix="completion", metadata={"completedStage": stage.id.value, "nextStage": next_stage_id.value},
        )
        await self._commit(session)
        logger.info(f"📊 {partner_id} moved to: {next_definition.title}")

        await self._notify(
            session, NotificationKind.STAGE_COMPLETED,
            f"{definition.title} completed, next: {next_definition.title}", stage_id=stage.id,
        )
        await self._send_stage_entry_message(session, next_stage_id)
        return session

    async def skip_stage(self, partner_id: str, stage_id: OnboardingStage, reason: str) -> OnboardingSession:
        session = await self._get_active_session(partner_id)
        stage = self._resolve_stage(session, stage_id)
        definition = get_stage_definition(stage.id)
        logger.info(f"⏭️ Skip stage: {stage.id.value} ({reason})")

        if not definition.can_skip:
            logger.warning(f"Stage {stage.id.value} cannot be skipped")
            raise CannotSkipStage(f"{definition.title} cannot be skipped")
        if stage.completed:
            raise CannotSkipStage(f"{definition.title} is already complete")

        stage.completed = True
        stage.skipped = True
        stage.skip_reason = reason

        next_stage_id, template = resolve_transition(stage.id, TransitionEvent.SKIP)
        advanced = session.current_stage == stage.id and next_stage_id is not None
        if advanced:
            session.current_stage = next_stage_id

        message_type, content = render(template, title=definition.title, reason=reason)
        self._append_message(
            session, MessageSender.SYSTEM, message_type, content,
            prefix="skip",
            metadata={"stageId": stage.id.value, "reason": reason, "skipEvent": True, "event": "skip"},
        )
        await self._commit(session)

        await self._notify(
            session, NotificationKind.STAGE_SKIPPED, f"{definition.title} skipped: {reason}", stage_id=stage.id,
        )
        if advanced:
            await self._send_stage_entry_message(session, next_stage_id)
        return session

    # === CHAT ===

    async def post_message(self, partner_id: str, content: str) -> ChatMessage:
        """Record a partner chat message and append the template reply."""
        session = await self.get_session(partner_id)
        self._append_message(session, MessageSender.PARTNER, MessageType.MESSAGE, content)

        if any(keyword in content.lower() for keyword in HELP_KEYWORDS):
            stage = session.current
            definition = get_stage_definition(stage.id)
            missing = self._missing_requirements(stage)
            pending_summary = (
                "**Still outstanding:**\n" + "\n".join(f"• {item}" for item in missing)
                if missing else "Everything for this stage is in place."
            )
            message_type, reply = render(
                CHAT_HELP_REPLY,
                stage_title=definition.title,
                stage_description=definition.description,
                pending_summary=pending_summary,
            )
        else:
            message_type, reply = render(CHAT_REPLY)

        message = self._append_message(
            session, MessageSender.AGENT, message_type, reply, metadata={"event": "chat-reply"},
        )
        await self._commit(session)
        return message

    async def record_pricing_selection(
        self,
        partner_id: str,
        selected_countries: list[str],
        selected_services: dict[str, list[str]],
        country_names: Optional[dict[str, str]] = None,
    ) -> ChatMessage:
        """Summarize the partner's pricing proposal selection in the chat."""
        session = await self._get_active_session(partner_id)
        country_names = country_names or {}
        services_count = sum(len(services) for services in selected_services.values())
        country_lines = "\n".join(f"• {country_names.get(code, code)}" for code in selected_countries)

        message_type, content = render(
            PRICING_SELECTION,
            countries_count=len(selected_countries),
            services_count=services_count,
            country_lines=country_lines or "• None",
        )
        message = self._append_message(
            session, MessageSender.AGENT, message_type, content,
            prefix="pricing",
            metadata={"selectedCountries": selected_countries, "selectedServices": selected_services},
        )
        await self._commit(session)
        logger.info(f"📋 Pricing selection saved for {partner_id}: {len(selected_countries)} countries")
        return message

    # === QUERIES ===

    async def get_current_stage(self, partner_id: str) -> StageInstance:
        session = await self.get_session(partner_id)
        return session.current

    async def is_stage_completed(self, partner_id: str, stage_id: OnboardingStage) -> bool:
        session = await self.get_session(partner_id)
        return self._resolve_stage(session, stage_id).completed
