"""WorkflowEngine: lifecycle, transitions, message log, persistence and notifications."""
import pytest

from app.engine import WorkflowEngine
from app.errors import (
    CannotSkipStage,
    SessionCompleted,
    SessionNotFound,
    StageNotComplete,
    UnknownDocument,
    UnknownStage,
)
from app.documents import DocumentSink
from app.models import (
    ApprovalStatus,
    DocumentStatus,
    MessageSender,
    MessageType,
    OnboardingStage,
)
from app.notifications import NotificationKind, NotificationPort
from app.session_store import InMemorySessionStore
from app.stages import STAGE_ORDER

PARTNER = "partner_test"


def stage_prompts(session, stage_id):
    """Stage-entry prompts for one stage found in the log."""
    return [
        m for m in session.messages
        if (m.metadata or {}).get("stageId") == stage_id.value and "event" not in m.metadata
    ]


async def walk_to(engine, complete_stage, target):
    for stage_id in STAGE_ORDER:
        if stage_id == target:
            return
        await complete_stage(PARTNER, stage_id)
        await engine.request_advance(PARTNER)


class TestInitialize:

    async def test_new_session(self, engine, store, session):
        assert session.partner_id == PARTNER
        assert session.current_stage == OnboardingStage.NDA
        assert session.overall_progress == 0
        assert session.is_completed is False
        assert len(session.stages) == 7

        welcome, nda_request = session.messages
        assert welcome.sender == MessageSender.AGENT
        assert "Jane Doe" in welcome.content and "Acme Remit" in welcome.content
        assert welcome.id.startswith("init_")
        assert nda_request.sender == MessageSender.SYSTEM
        assert nda_request.type == MessageType.DOCUMENT_REQUEST
        assert "NDA Document Download" in nda_request.content
        assert session.get_stage(OnboardingStage.NDA).messages_initialized is True

        assert await store.load(PARTNER) is not None

    async def test_generated_partner_id(self, engine, profile):
        session = await engine.initialize(profile)

        assert session.partner_id.startswith("partner_")

    async def test_resume_appends_welcome_back_only(self, engine, profile, session):
        resumed = await engine.initialize(profile, partner_id=PARTNER)

        assert resumed is session
        assert len(resumed.messages) == 3
        assert "Welcome back, Jane Doe" in resumed.messages[-1].content
        assert "Non-Disclosure Agreement" in resumed.messages[-1].content
        assert len(stage_prompts(resumed, OnboardingStage.NDA)) == 1

    async def test_resume_from_store_after_restart(self, store, notifier, clock, profile, session, complete_stage):
        await complete_stage(PARTNER, OnboardingStage.NDA)

        restarted = WorkflowEngine(store, notifier, clock=clock)
        resumed = await restarted.initialize(profile, partner_id=PARTNER)

        assert resumed is not session
        assert resumed.get_stage(OnboardingStage.NDA).completed is True
        assert resumed.overall_progress == 14
        assert len(stage_prompts(resumed, OnboardingStage.NDA)) == 1

    async def test_stale_session_starts_over(self, engine, profile, session, clock):
        clock.advance(days=8)

        fresh = await engine.initialize(profile, partner_id=PARTNER)

        assert fresh is not session
        assert len(fresh.messages) == 2

    async def test_stale_cached_session_is_not_served(self, engine, store, session, clock):
        clock.advance(days=30)

        with pytest.raises(SessionNotFound):
            await engine.get_session(PARTNER)
        assert PARTNER not in engine._sessions
        assert store.storage_key(PARTNER) not in store._records

    async def test_session_within_window_stays_cached(self, engine, session, clock):
        clock.advance(days=7)

        assert await engine.get_session(PARTNER) is session


class TestFullWorkflow:

    async def test_every_stage_to_go_live(self, engine, notifier, session, complete_stage):
        expected_progress = [14, 29, 43, 57, 71, 86]

        for stage_id, progress in zip(STAGE_ORDER, expected_progress):
            await complete_stage(PARTNER, stage_id)
            result = await engine.request_advance(PARTNER)
            assert result.overall_progress == progress
            assert result.current_stage == STAGE_ORDER[STAGE_ORDER.index(stage_id) + 1]

        await complete_stage(PARTNER, OnboardingStage.GO_LIVE)
        result = await engine.request_advance(PARTNER)

        assert result.is_completed is True
        assert result.overall_progress == 100
        assert result.current_stage == OnboardingStage.GO_LIVE
        assert result.activation_date is not None
        assert "live WorldAPI partner" in result.messages[-1].content
        assert NotificationKind.ONBOARDING_COMPLETED in notifier.kinds()

        for stage_id in STAGE_ORDER:
            assert len(stage_prompts(result, stage_id)) == 1

    async def test_completion_message_precedes_next_prompt(self, engine, session, complete_stage):
        await complete_stage(PARTNER, OnboardingStage.NDA)
        result = await engine.request_advance(PARTNER)

        completion, prompt = result.messages[-2:]
        assert completion.type == MessageType.STAGE_COMPLETION
        assert completion.sender == MessageSender.AGENT
        assert "Non-Disclosure Agreement Completed" in completion.content
        assert prompt.type == MessageType.COMMERCIAL_AGREEMENT
        assert result.get_stage(OnboardingStage.COMMERCIALS).messages_initialized is True

    async def test_kyc_prompt_lists_documents(self, engine, session, complete_stage):
        await walk_to(engine, complete_stage, OnboardingStage.KYC)

        prompt = (await engine.get_session(PARTNER)).messages[-1]
        assert prompt.type == MessageType.KYC_DOCUMENTS
        assert "• AML Questionnaire" in prompt.content
        assert "• USA PATRIOT Act Certificate" in prompt.content.split("**Optional Documents:**")[1]

    async def test_completed_session_rejects_changes(self, engine, session, complete_stage):
        await walk_to(engine, complete_stage, OnboardingStage.GO_LIVE)
        await complete_stage(PARTNER, OnboardingStage.GO_LIVE)
        await engine.request_advance(PARTNER)

        with pytest.raises(SessionCompleted):
            await engine.request_advance(PARTNER)
        with pytest.raises(SessionCompleted):
            await engine.submit_document(PARTNER, "signed-nda", "again.pdf", stage_id=OnboardingStage.NDA)


class TestAdvance:

    async def test_incomplete_stage_cannot_advance(self, engine, store, session):
        before = session.to_snapshot()

        with pytest.raises(StageNotComplete) as exc_info:
            await engine.request_advance(PARTNER)

        assert "Legal approval pending" in exc_info.value.reason
        assert "Signed Non-Disclosure Agreement pending" in exc_info.value.reason
        assert session.to_snapshot() == before
        assert (await store.load(PARTNER)).to_snapshot() == before

    async def test_rejected_approval_blocks_advance(self, engine, session):
        await engine.submit_document(PARTNER, "signed-nda", "nda.pdf")
        await engine.record_approval(
            PARTNER, OnboardingStage.NDA, "Legal", ApprovalStatus.REJECTED, reason="Wrong entity name"
        )

        assert await engine.is_stage_completed(PARTNER, OnboardingStage.NDA) is False
        with pytest.raises(StageNotComplete):
            await engine.request_advance(PARTNER)

    async def test_duplicate_prompt_found_in_log_is_not_resent(self, engine, session, complete_stage):
        await walk_to(engine, complete_stage, OnboardingStage.COMMERCIALS)
        # A prompt written before the flag existed
        engine._append_message(
            session, MessageSender.SYSTEM, MessageType.MESSAGE,
            "🔍 **Know Your Customer (KYC) Documentation**",
        )
        await complete_stage(PARTNER, OnboardingStage.COMMERCIALS)

        result = await engine.request_advance(PARTNER)

        kyc_prompts = [m for m in result.messages if "Know Your Customer (KYC) Documentation" in m.content]
        assert len(kyc_prompts) == 1
        assert result.get_stage(OnboardingStage.KYC).messages_initialized is True

    async def test_partner_messages_do_not_suppress_prompts(self, engine, session, complete_stage):
        await engine.post_message(PARTNER, "Can we talk about the Commercial Terms already?")
        await complete_stage(PARTNER, OnboardingStage.NDA)

        result = await engine.request_advance(PARTNER)

        assert result.messages[-1].type == MessageType.COMMERCIAL_AGREEMENT


class TestSkipStage:

    async def test_required_stage_cannot_be_skipped(self, engine, session):
        with pytest.raises(CannotSkipStage):
            await engine.skip_stage(PARTNER, OnboardingStage.NDA, "no time")

    async def test_skip_current_stage_moves_on(self, engine, notifier, session, complete_stage):
        await walk_to(engine, complete_stage, OnboardingStage.INTEGRATION)

        result = await engine.skip_stage(PARTNER, OnboardingStage.INTEGRATION, "Integration after go-live")

        integration = result.get_stage(OnboardingStage.INTEGRATION)
        assert integration.completed is True
        assert integration.skipped is True
        assert integration.skip_reason == "Integration after go-live"
        assert result.current_stage == OnboardingStage.UAT
        assert result.overall_progress == 71

        skip_message = next(m for m in result.messages if (m.metadata or {}).get("event") == "skip")
        assert skip_message.sender == MessageSender.SYSTEM
        assert "Integration after go-live" in skip_message.content
        assert result.messages[-1].metadata["stageId"] == "uat"
        assert NotificationKind.STAGE_SKIPPED in notifier.kinds()

    async def test_skip_later_stage_keeps_current_stage(self, engine, session):
        result = await engine.skip_stage(PARTNER, "uat", "Sandbox not needed")

        assert result.current_stage == OnboardingStage.NDA
        assert result.get_stage(OnboardingStage.UAT).completed is True
        assert result.overall_progress == 14

    async def test_skipped_stage_gets_no_prompt_when_reached(self, engine, session, complete_stage):
        await engine.skip_stage(PARTNER, OnboardingStage.UAT, "Sandbox not needed")
        await walk_to(engine, complete_stage, OnboardingStage.UAT)

        result = await engine.request_advance(PARTNER)

        assert result.current_stage == OnboardingStage.GO_LIVE
        assert stage_prompts(result, OnboardingStage.UAT) == []

    async def test_cannot_skip_completed_stage(self, engine, session, complete_stage):
        await engine.skip_stage(PARTNER, OnboardingStage.INTEGRATION, "later")

        with pytest.raises(CannotSkipStage):
            await engine.skip_stage(PARTNER, OnboardingStage.INTEGRATION, "again")


class TestDocumentsAndApprovals:

    async def test_unknown_document_changes_nothing(self, engine, store, notifier, session):
        before = session.to_snapshot()

        with pytest.raises(UnknownDocument):
            await engine.submit_document(PARTNER, "tax-return", "tax.pdf")

        assert session.to_snapshot() == before
        assert (await store.load(PARTNER)).to_snapshot() == before
        assert notifier.events == []

    async def test_unknown_stage(self, engine, session):
        with pytest.raises(UnknownStage):
            await engine.record_approval(PARTNER, "bogus", "Legal", ApprovalStatus.APPROVED)

    async def test_unknown_session(self, engine):
        with pytest.raises(SessionNotFound):
            await engine.submit_document("partner_missing", "signed-nda", "nda.pdf")

    async def test_mark_received_on_explicit_stage(self, engine, notifier, session):
        document = await engine.mark_document_received(
            PARTNER, "external-audit", "audit-2025.pdf", stage_id=OnboardingStage.KYC
        )

        assert document.status == DocumentStatus.RECEIVED
        assert session.current_stage == OnboardingStage.NDA
        event = notifier.events[-1]
        assert event.kind == NotificationKind.DOCUMENT_RECEIVED
        assert event.team == "Compliance"

    async def test_skip_optional_document(self, engine, session):
        document = await engine.skip_optional_document(PARTNER, "patriot-act", stage_id=OnboardingStage.KYC)

        assert document.status == DocumentStatus.APPROVED
        assert document.file_name == "Skipped (Optional)"

    async def test_pending_approvals(self, engine, session):
        assert len(await engine.pending_approvals(PARTNER)) == 10

        await engine.record_approval(PARTNER, OnboardingStage.NDA, "Legal", ApprovalStatus.APPROVED)

        grouped = await engine.pending_approvals_by_stage(PARTNER)
        assert OnboardingStage.NDA not in grouped
        assert sum(len(pending) for pending in grouped.values()) == 9

    async def test_approval_notification_goes_to_team(self, engine, notifier, session):
        await engine.record_approval(
            PARTNER, OnboardingStage.COMMERCIALS, "Pricing", ApprovalStatus.REJECTED, reason="Margin too low"
        )

        event = notifier.events[-1]
        assert event.kind == NotificationKind.APPROVAL_RECORDED
        assert event.team == "Pricing"
        assert "Margin too low" in event.summary

    async def test_current_stage_query(self, engine, session):
        stage = await engine.get_current_stage(PARTNER)

        assert stage.id == OnboardingStage.NDA


class FailingNotifier(NotificationPort):
    async def notify(self, event) -> bool:
        raise RuntimeError("smtp down")


class RecordingSink(DocumentSink):
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    async def persist(self, file_name, content, metadata=None):
        if self.fail:
            raise OSError("disk full")
        self.calls.append((file_name, content, metadata))
        return f"s3://onboarding/{file_name}"


class TestCollaborators:

    async def test_notifier_failure_does_not_fail_operation(self, store, clock, profile):
        engine = WorkflowEngine(store, FailingNotifier(), clock=clock)
        await engine.initialize(profile, partner_id=PARTNER)

        document = await engine.submit_document(PARTNER, "signed-nda", "nda.pdf")

        assert document.status == DocumentStatus.UPLOADED

    async def test_document_sink_receives_bytes(self, store, clock, profile):
        sink = RecordingSink()
        engine = WorkflowEngine(store, clock=clock, document_sink=sink)
        await engine.initialize(profile, partner_id=PARTNER)

        await engine.submit_document(PARTNER, "signed-nda", "nda.pdf", content=b"%PDF-1.7")

        file_name, content, metadata = sink.calls[0]
        assert (file_name, content) == ("nda.pdf", b"%PDF-1.7")
        assert metadata == {"partnerId": PARTNER, "stageId": "nda", "documentId": "signed-nda"}

    async def test_document_sink_failure_leaves_checklist_untouched(self, store, clock, profile):
        engine = WorkflowEngine(store, clock=clock, document_sink=RecordingSink(fail=True))
        session = await engine.initialize(profile, partner_id=PARTNER)

        with pytest.raises(OSError):
            await engine.submit_document(PARTNER, "signed-nda", "nda.pdf", content=b"%PDF-1.7")

        assert session.get_stage(OnboardingStage.NDA).documents[0].status == DocumentStatus.PENDING


class TestChatAndReset:

    async def test_chat_reply(self, engine, session):
        reply = await engine.post_message(PARTNER, "Hello there")

        partner_message = session.messages[-2]
        assert partner_message.sender == MessageSender.PARTNER
        assert partner_message.content == "Hello there"
        assert reply.sender == MessageSender.AGENT
        assert "guide you through the onboarding process" in reply.content

    async def test_help_reply_lists_outstanding_items(self, engine, session):
        reply = await engine.post_message(PARTNER, "What is my status?")

        assert "Non-Disclosure Agreement" in reply.content
        assert "Legal approval pending" in reply.content

    async def test_pricing_selection(self, engine, session):
        message = await engine.record_pricing_selection(
            PARTNER,
            ["AE", "IN"],
            {"AE": ["bank-transfer", "cash-pickup"], "IN": ["bank-transfer"]},
            country_names={"AE": "United Arab Emirates"},
        )

        assert message.type == MessageType.PRICING_SELECTION
        assert "2 countries with a total of 3 services" in message.content
        assert "• United Arab Emirates" in message.content
        assert "• IN" in message.content
        assert message.metadata["selectedCountries"] == ["AE", "IN"]

    async def test_reset_clears_everything(self, engine, store, session):
        await engine.reset(PARTNER, reason="partner asked to restart")

        assert await store.load(PARTNER) is None
        with pytest.raises(SessionNotFound):
            await engine.get_session(PARTNER)

    async def test_reset_in_memory_only_reloads_from_store(self, engine, session):
        await engine.reset(PARTNER, clear_persistence=False)

        reloaded = await engine.get_session(PARTNER)

        assert reloaded is not session
        assert reloaded.to_snapshot() == session.to_snapshot()


class FlakyStore(InMemorySessionStore):
    """Store whose writes fail while `down` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.down = False

    async def _write(self, key, snapshot, session):
        if self.down:
            raise ConnectionError("database unavailable")
        await super()._write(key, snapshot, session)


class TestSessionCache:

    async def test_failed_save_does_not_keep_unsaved_changes(self, clock, profile):
        store = FlakyStore(clock=clock)
        engine = WorkflowEngine(store, clock=clock)
        await engine.initialize(profile, partner_id=PARTNER)

        store.down = True
        with pytest.raises(ConnectionError):
            await engine.submit_document(PARTNER, "signed-nda", "nda.pdf")
        store.down = False

        cached = await engine.get_session(PARTNER)
        persisted = await store.load(PARTNER)
        assert cached.to_snapshot() == persisted.to_snapshot()
        assert cached.get_stage(OnboardingStage.NDA).documents[0].status == DocumentStatus.PENDING

    async def test_failed_save_during_advance_keeps_stage(self, clock, profile, notifier):
        store = FlakyStore(clock=clock)
        engine = WorkflowEngine(store, notifier, clock=clock)
        await engine.initialize(profile, partner_id=PARTNER)
        await engine.submit_document(PARTNER, "signed-nda", "nda.pdf")
        await engine.record_approval(PARTNER, OnboardingStage.NDA, "Legal", ApprovalStatus.APPROVED)

        store.down = True
        with pytest.raises(ConnectionError):
            await engine.request_advance(PARTNER)
        store.down = False

        assert (await engine.get_session(PARTNER)).current_stage == OnboardingStage.NDA

    async def test_completed_session_is_not_cached(self, engine, session, complete_stage):
        await walk_to(engine, complete_stage, OnboardingStage.GO_LIVE)
        await complete_stage(PARTNER, OnboardingStage.GO_LIVE)
        await engine.request_advance(PARTNER)

        assert PARTNER not in engine._sessions
        assert (await engine.get_session(PARTNER)).is_completed is True

    async def test_cache_is_bounded(self, store, clock, profile):
        engine = WorkflowEngine(store, clock=clock, cache_size=2)
        for partner_id in ("partner_a", "partner_b", "partner_c"):
            await engine.initialize(profile, partner_id=partner_id)

        assert list(engine._sessions) == ["partner_b", "partner_c"]
        assert (await engine.get_session("partner_a")).partner_id == "partner_a"
        assert list(engine._sessions) == ["partner_c", "partner_a"]
