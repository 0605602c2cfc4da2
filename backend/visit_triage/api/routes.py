"""
Visit Triage - REST API Routes

Endpoints for transcript indexing, live chat, end-of-visit analysis,
session persistence, follow-up and the alerts dashboard.

Architecture:
    All operations flow through the VisitPipeline, accessed via
    dependency injection from app.state. Routes only translate between
    API schemas and domain types.
"""

import logging

from fastapi import APIRouter, Depends, Request

from visit_triage import __version__
from visit_triage.core.exceptions import VisitTriageError
from visit_triage.core.pipeline import VisitPipeline

from .errors import generic_failure
from .schemas import (
    AlertGroupSchema,
    AnalyzeRequest,
    AnalyzeResponse,
    ChatDocumentSchema,
    ChatRequest,
    ChatResponse,
    DashboardResponse,
    ErrorResponse,
    FollowUpResponse,
    HealthResponse,
    IndexRequest,
    IndexResponse,
    SaveChatRequest,
    SaveChatResponse,
    TriageAlertSchema,
    VisitChatResponse,
    to_domain_messages,
)

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid fields"},
    500: {"model": ErrorResponse, "description": "Server-side failure"},
}

router = APIRouter(tags=["visits"], responses=ERROR_RESPONSES)

CHAT_FAILURE_MESSAGE = "Internal Server Error"
ANALYZE_FAILURE_MESSAGE = "Failed to generate analysis."


# =============================================================================
# Dependencies
# =============================================================================

def get_pipeline(request: Request) -> VisitPipeline:
    """Dependency to get the visit pipeline from app state."""
    return request.app.state.pipeline


# =============================================================================
# Health
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: VisitPipeline = Depends(get_pipeline)):
    """Report the configured backend of every collaborator."""
    components = {"api": "operational", "pipeline": "operational"}
    components.update(pipeline.health())
    return HealthResponse(status="healthy", version=__version__, components=components)


# =============================================================================
# Indexing and Chat
# =============================================================================

@router.post("/index", response_model=IndexResponse)
async def index_transcript(
    body: IndexRequest,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """Split a visit transcript into sentences and store each as a searchable chunk."""
    count = await pipeline.index_transcript(body.visit_id, body.transcript)
    return IndexResponse(chunks_stored=count)


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """
    Next assistant question for a live visit.

    Context retrieval and translation degrade silently. A generation
    failure returns a generic 5xx payload.
    """
    try:
        content = await pipeline.chat(
            body.visit_id,
            to_domain_messages(body.messages),
            body.target_language,
        )
    except Exception as exc:
        raise generic_failure(exc, CHAT_FAILURE_MESSAGE) from exc
    return ChatResponse(content=content)


# =============================================================================
# Analysis
# =============================================================================

@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    body: AnalyzeRequest,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """
    Structured extraction, narrative analysis and triage for a finished visit.

    `alert` is present only when the visit met the escalation threshold, in
    which case an alert record has been stored.
    """
    try:
        outcome = await pipeline.analyze(
            body.visit_id,
            to_domain_messages(body.messages),
            body.target_language,
        )
    except Exception as exc:
        raise generic_failure(exc, ANALYZE_FAILURE_MESSAGE) from exc

    return AnalyzeResponse(
        analysis=outcome.analysis,
        structured_data=outcome.structured_data.to_dict(),
        alert=TriageAlertSchema.model_validate(outcome.alert.to_dict()) if outcome.alert else None,
    )


# =============================================================================
# Sessions
# =============================================================================

@router.post("/save-chat", response_model=SaveChatResponse, responses={409: {"model": ErrorResponse}})
async def save_chat(
    body: SaveChatRequest,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """Create or replace the visit's session. A stale `expectedVersion` is rejected with 409."""
    session = await pipeline.save_chat(
        body.visit_id,
        to_domain_messages(body.messages),
        body.analysis,
        body.structured_data,
        body.expected_version,
    )
    return SaveChatResponse(message="Chat saved successfully", chat_id=session.id, version=session.version)


@router.get("/chat/visit/{visit_id}", response_model=VisitChatResponse)
async def get_chat_by_visit_id(
    visit_id: str,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """Latest session for a visit plus its latest alert; empty when the visit is unknown."""
    return VisitChatResponse.model_validate(await pipeline.get_chat_by_visit_id(visit_id))


@router.get("/chat/{chat_id}", response_model=ChatDocumentSchema, responses={404: {"model": ErrorResponse}})
async def get_chat_by_id(
    chat_id: str,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """Full session document by id (400 malformed id, 404 unknown id)."""
    session = await pipeline.get_chat_by_id(chat_id)
    return ChatDocumentSchema.model_validate(session.to_dict())


@router.post("/follow-up/{visit_id}", response_model=FollowUpResponse, responses={404: {"model": ErrorResponse}})
async def follow_up(
    visit_id: str,
    pipeline: VisitPipeline = Depends(get_pipeline),
):
    """Ask one follow-up question about the visit's previous analysis and store it."""
    question = await pipeline.follow_up(visit_id)
    return FollowUpResponse(success=True, follow_up_question=question)


# =============================================================================
# Alerts
# =============================================================================

@router.get("/alerts/dashboard", response_model=DashboardResponse)
async def alerts_dashboard(pipeline: VisitPipeline = Depends(get_pipeline)):
    """Alerts grouped per visit, most recently alerted visit first."""
    try:
        groups = await pipeline.alerts_dashboard()
    except VisitTriageError:
        raise
    except Exception as exc:
        logger.error("Dashboard query failed: %s", exc, exc_info=True)
        raise generic_failure(exc, "Server Error") from exc

    return DashboardResponse(
        dashboard_data=[AlertGroupSchema.model_validate(g.to_dict()) for g in groups]
    )
