"""
FastAPI application for partner onboarding.
"""
import sys
import asyncio
import traceback

# FORCE WINDOWS TO USE THE CORRECT EVENT LOOP
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from dotenv import load_dotenv

# Load .env first
loaded = load_dotenv()

# Then configure centralized logging
from app.logging_config import configure_logging, get_logger
configure_logging()
logger = get_logger("main")

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings, validate_settings
from app.db import engine as db_engine, get_db
from app.engine import WorkflowEngine
from app.errors import OnboardingError
from app.models import (
    ApprovalRequest,
    ChatMessageRequest,
    DocumentSkipRequest,
    DocumentSubmitRequest,
    ErrorResponse,
    InitRequest,
    OnboardingResponse,
    OnboardingSession,
    OnboardingStage,
    PendingApprovalEntry,
    PricingSelectionRequest,
    SkipStageRequest,
)
from app.notifications import create_notifier
from app.session_store import create_session_store

logger.info(f".env loaded: {loaded}")

# === WORKFLOW ENGINE ===

_workflow_engine = None


def get_workflow_engine() -> WorkflowEngine:
    """Process-wide engine, built from settings on first use."""
    global _workflow_engine
    if _workflow_engine is None:
        _workflow_engine = WorkflowEngine(create_session_store(settings), create_notifier(settings))
    return _workflow_engine


def build_response(session: OnboardingSession) -> OnboardingResponse:
    return OnboardingResponse(
        partner_id=session.partner_id,
        success=True,
        current_stage=session.current_stage,
        overall_progress=session.overall_progress,
        is_complete=session.is_completed,
        session=session.to_snapshot(),
    )


# === LIFESPAN & APP SETUP ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(">> Partner Onboarding API starting...")
    validate_settings()

    # Check Database Connection on Startup
    if settings.SESSION_BACKEND == "database":
        try:
            async with db_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.info("[OK] CONNECTION SUCCESSFUL!")
        except Exception as e:
            logger.error(f"[ERROR] CONNECTION FAILED: {e}")
            # Startup continues; session requests fail until the DB is reachable

    yield

    logger.info(">> Partner Onboarding API shutting down...")
    await db_engine.dispose()

app = FastAPI(
    title=settings.APP_NAME,
    description="Partner onboarding workflow: NDA to go-live",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS - allow frontend to call API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# === MIDDLEWARE ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every incoming request and its result."""
    logger.info(f"👉 MIDDLEWARE: Received {request.method} {request.url.path}")
    try:
        response = await call_next(request)
        logger.info(f"✅ MIDDLEWARE: Response code {response.status_code}")
        return response
    except Exception as e:
        logger.error(f"❌ MIDDLEWARE: Request failed with {e}")
        raise

# === EXCEPTION HANDLERS ===

@app.exception_handler(OnboardingError)
async def onboarding_exception_handler(request: Request, exc: OnboardingError):
    """Validation failures from the engine: shown to the partner as-is."""
    logger.warning(f"⚠️ {exc.code} at {request.url.path}: {exc.reason}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.code, detail=exc.reason).model_dump(),
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle 422 Validation Errors gracefully."""
    logger.warning(f"⚠️ VALIDATION ERROR at {request.url}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "message": "Invalid data sent"}
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all for 500 errors."""
    logger.error(f"🔥 GLOBAL CRASH on {request.method} {request.url.path}")
    logger.error(f"Error Type: {type(exc).__name__}")
    logger.error(f"Error Message: {str(exc)}")
    logger.error(traceback.format_exc())

    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {str(exc)}"}
    )

# === ENDPOINTS ===

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "session_backend": settings.SESSION_BACKEND,
    }


@app.get("/test-db")
async def test_endpoint(db: AsyncSession = Depends(get_db)):
    # Endpoint to test the database manually
    try:
        result = await db.execute(text("SELECT 1"))
        return {"status": "success", "result": result.scalar()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@app.post("/api/onboarding/start", response_model=OnboardingResponse)
async def start_onboarding(request: InitRequest, workflow: WorkflowEngine = Depends(get_workflow_engine)):
    """
    Start onboarding for a partner, or resume the partner's existing session.
    """
    logger.info(f"{'='*60}")
    logger.info(f">> START ONBOARDING REQUEST for {request.partner_info.name} ({request.partner_id or 'new partner'})")

    session = await workflow.initialize(request.partner_info, partner_id=request.partner_id)

    logger.info(f">> Session ready: {session.partner_id} at stage {session.current_stage.value}")
    return build_response(session)


@app.get("/api/onboarding/session/{partner_id}", response_model=OnboardingResponse)
async def get_session_endpoint(partner_id: str, workflow: WorkflowEngine = Depends(get_workflow_engine)):
    """
    Get current session state.
    """
    session = await workflow.get_session(partner_id)
    return build_response(session)


@app.delete("/api/onboarding/session/{partner_id}")
async def reset_session(
    partner_id: str,
    reason: str = "manual reset",
    clear_persistence: bool = True,
    clear_in_memory: bool = True,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    """Reset a partner's onboarding. The reason is logged for audit."""
    await workflow.reset(
        partner_id,
        clear_persistence=clear_persistence,
        clear_in_memory=clear_in_memory,
        reason=reason,
    )
    return {"success": True, "partner_id": partner_id, "reason": reason}


@app.post("/api/onboarding/{partner_id}/documents/{document_id}", response_model=OnboardingResponse)
async def submit_document(
    partner_id: str,
    document_id: str,
    request: DocumentSubmitRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    """Partner uploaded a document. The file itself is stored by the caller."""
    await workflow.submit_document(partner_id, document_id, request.file_name, stage_id=request.stage_id)
    return build_response(await workflow.get_session(partner_id))


@app.post("/api/onboarding/{partner_id}/documents/{document_id}/received", response_model=OnboardingResponse)
async def mark_document_received(
    partner_id: str,
    document_id: str,
    request: DocumentSubmitRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    """Admin path: the document arrived another way, e.g. by email."""
    await workflow.mark_document_received(partner_id, document_id, request.file_name, stage_id=request.stage_id)
    return build_response(await workflow.get_session(partner_id))


@app.post("/api/onboarding/{partner_id}/documents/{document_id}/skip", response_model=OnboardingResponse)
async def skip_optional_document(
    partner_id: str,
    document_id: str,
    request: DocumentSkipRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    await workflow.skip_optional_document(partner_id, document_id, stage_id=request.stage_id)
    return build_response(await workflow.get_session(partner_id))


@app.post("/api/onboarding/{partner_id}/approvals", response_model=OnboardingResponse)
async def record_approval(
    partner_id: str,
    request: ApprovalRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    await workflow.record_approval(
        partner_id,
        request.stage_id,
        request.team,
        request.status,
        reason=request.reason,
        approved_by=request.approved_by,
    )
    return build_response(await workflow.get_session(partner_id))


@app.get("/api/onboarding/{partner_id}/approvals/pending", response_model=list[PendingApprovalEntry])
async def list_pending_approvals(partner_id: str, workflow: WorkflowEngine = Depends(get_workflow_engine)):
    """Pending approvals across every stage, for oversight tooling."""
    grouped = await workflow.pending_approvals_by_stage(partner_id)
    return [
        PendingApprovalEntry(stage_id=stage_id, team=approval.team, status=approval.status)
        for stage_id, pending in grouped.items()
        for approval in pending
    ]


@app.post("/api/onboarding/{partner_id}/advance", response_model=OnboardingResponse)
async def request_advance(partner_id: str, workflow: WorkflowEngine = Depends(get_workflow_engine)):
    session = await workflow.request_advance(partner_id)
    return build_response(session)


@app.post("/api/onboarding/{partner_id}/stages/{stage_id}/skip", response_model=OnboardingResponse)
async def skip_stage(
    partner_id: str,
    stage_id: OnboardingStage,
    request: SkipStageRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    session = await workflow.skip_stage(partner_id, stage_id, request.reason)
    return build_response(session)


@app.post("/api/onboarding/{partner_id}/messages")
async def post_message(
    partner_id: str,
    request: ChatMessageRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    """Partner chat message. The reply comes from a fixed template."""
    reply = await workflow.post_message(partner_id, request.content)
    return {"success": True, "reply": reply.model_dump(mode="json", by_alias=True, exclude_none=True)}


@app.post("/api/onboarding/{partner_id}/pricing-selection", response_model=OnboardingResponse)
async def record_pricing_selection(
    partner_id: str,
    request: PricingSelectionRequest,
    workflow: WorkflowEngine = Depends(get_workflow_engine),
):
    await workflow.record_pricing_selection(
        partner_id,
        request.selected_countries,
        request.selected_services,
        country_names=request.country_names,
    )
    return build_response(await workflow.get_session(partner_id))
