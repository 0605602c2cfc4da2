"""
Visit Triage - Visit Pipeline Orchestrator

Central orchestration layer for every visit operation. Routes call only
this class; stages and collaborators are injected at construction.

Flows:
    Chat turn:      ContextRetriever -> ResponseGenerator -> Translator
    End of visit:   StructuredExtractor -> AnalysisGenerator -> TriageClassifier
                    -> (alert only when the decision says so) AlertStore
                    -> Translator
    Indexing:       TranscriptIndexer
    Resumption:     FollowUpComposer (reads and writes SessionStore)

Stages run strictly in sequence; each stage's input depends on the previous
stage's output. Every collaborator call carries the configured timeout.

Usage:
    from visit_triage.config import get_settings
    from visit_triage.core.pipeline import create_pipeline

    pipeline = create_pipeline(get_settings())
    reply = await pipeline.chat("visit-42", messages, target_language="hi-IN")
    outcome = await pipeline.analyze("visit-42", messages, target_language=None)
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from visit_triage.config import Settings
from visit_triage.core.alert_store import AlertStore, create_alert_store, group_alerts
from visit_triage.core.analysis import AnalysisGenerator, StructuredExtractor, TriageClassifier
from visit_triage.core.conversation import FollowUpComposer, ResponseGenerator, Translator
from visit_triage.core.exceptions import ExtractionParseError, ValidationError, VisitTriageError
from visit_triage.core.logging import LogContext, mask_visit_id
from visit_triage.core.retrieval import ContextRetriever, TranscriptIndexer
from visit_triage.core.session_store import SessionStore, create_session_store
from visit_triage.core.types import (
    AlertGroup,
    AnalysisOutcome,
    ExtractionFailure,
    Message,
    PipelineContext,
    Role,
    StructuredData,
    VisitSession,
    validate_visit_id,
)
from visit_triage.services.embedding import Embedder
from visit_triage.services.generation import GenerativeModel
from visit_triage.services.translation import TranslationService
from visit_triage.services.vector_store import ChunkStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_ANALYZE_MESSAGES = 2


# =============================================================================
# Pipeline Metrics (for observability)
# =============================================================================

@dataclass
class PipelineMetrics:
    """Metrics for a single pipeline operation."""
    request_id: str
    visit_id: str
    operation: str  # "chat" | "analyze" | "index" | "follow_up" | "save"
    stage_ms: Dict[str, float] = field(default_factory=dict)
    total_ms: Optional[float] = None
    success: bool = True
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "visit_id": mask_visit_id(self.visit_id),
            "operation": self.operation,
            "stage_ms": {k: round(v, 2) for k, v in self.stage_ms.items()},
            "total_ms": round(self.total_ms, 2) if self.total_ms is not None else None,
            "success": self.success,
            "error_code": self.error_code,
        }


# =============================================================================
# Visit Pipeline
# =============================================================================

class VisitPipeline:
    """
    Central orchestrator for visit chat, analysis, triage and persistence.

    Attributes:
        generator: Generative text backend shared by every generating stage
        embedder: Embedding backend for retrieval and indexing
        translation: Translation backend behind the Translator stage
        chunk_store: Embedded transcript chunks
        session_store: One session document per visit
        alert_store: Append-only triage alerts
        settings: Application configuration
    """

    def __init__(
        self,
        generator: GenerativeModel,
        embedder: Embedder,
        translation: TranslationService,
        chunk_store: ChunkStore,
        session_store: SessionStore,
        alert_store: AlertStore,
        settings: Settings,
        mongo_client: Any = None,
    ):
        self._generator = generator
        self._embedder = embedder
        self._translation = translation
        self._chunk_store = chunk_store
        self._session_store = session_store
        self._alert_store = alert_store
        self._settings = settings
        self._mongo_client = mongo_client

        timeout = settings.collaborator_timeout_seconds
        self.retriever = ContextRetriever(embedder, chunk_store, settings.retrieval_top_k, timeout)
        self.indexer = TranscriptIndexer(embedder, chunk_store, timeout)
        self.responder = ResponseGenerator(generator, timeout)
        self.translator = Translator(
            translation,
            source_locale=settings.translation_source_locale,
            default_prefix=settings.default_language_prefix,
            timeout_seconds=timeout,
        )
        self.extractor = StructuredExtractor(generator, timeout)
        self.analyst = AnalysisGenerator(generator, timeout)
        self.classifier = TriageClassifier(generator, timeout)
        self.follow_up_composer = FollowUpComposer(
            generator,
            session_store,
            history_window=settings.follow_up_history_window,
            timeout_seconds=timeout,
        )

        self._metrics_callback: Optional[Callable[[PipelineMetrics], None]] = None

        logger.info(
            "VisitPipeline initialized: generator=%s, embedder=%s, translator=%s, "
            "chunks=%s, sessions=%s, alerts=%s",
            generator.model_id,
            embedder.model_id,
            translation.backend_id,
            type(chunk_store).__name__,
            type(session_store).__name__,
            type(alert_store).__name__,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def index_transcript(self, visit_id: str, transcript: str) -> int:
        """Split, embed and store a transcript. Returns the number of chunks stored."""
        vid = validate_visit_id(visit_id)
        if not isinstance(transcript, str) or not transcript.strip():
            raise ValidationError("transcript is required", details={"field": "transcript"})

        with self._track("index", vid) as (ctx, metrics):
            self._log_input(ctx, chars=len(transcript))
            count = await self._timed(ctx, "indexing", self.indexer.index(vid, transcript))
            logger.info("[%s] Indexed %d chunks", ctx.request_id, count)
            return count

    async def chat(
        self,
        visit_id: str,
        messages: List[Message],
        target_language: Optional[str] = None,
    ) -> str:
        """
        Produce the next assistant question for a live visit.

        Retrieval and translation degrade silently; generation failures propagate.
        """
        vid = validate_visit_id(visit_id)
        if not messages:
            raise ValidationError("messages must not be empty", details={"field": "messages"})

        with self._track("chat", vid) as (ctx, metrics):
            self._log_input(ctx, message_count=len(messages), chars=sum(len(m.content) for m in messages))

            latest = next((m.content for m in reversed(messages) if m.role is Role.USER), messages[-1].content)
            context_block = await self._timed(ctx, "retrieval", self.retriever.retrieve(vid, latest))
            reply = await self._timed(
                ctx, "generation", self.responder.generate(vid, messages, context_block)
            )
            return await self._timed(ctx, "translation", self.translator.translate(reply, target_language))

    async def analyze(
        self,
        visit_id: str,
        messages: List[Message],
        target_language: Optional[str] = None,
    ) -> AnalysisOutcome:
        """
        Run extraction, analysis and triage for a finished conversation.

        An alert row is written if and only if the classifier's decision has
        `alert=True`. Extraction failures fall back to the raw-transcript
        analysis prompt; classification failures fall back to a low-severity
        decision and never write an alert.
        """
        vid = validate_visit_id(visit_id)
        if len(messages) < MIN_ANALYZE_MESSAGES:
            raise ValidationError(
                f"analysis needs at least {MIN_ANALYZE_MESSAGES} messages",
                details={"field": "messages", "count": len(messages)},
            )

        with self._track("analyze", vid) as (ctx, metrics):
            self._log_input(ctx, message_count=len(messages), chars=sum(len(m.content) for m in messages))
            snapshot = tuple(messages)

            structured: StructuredData
            try:
                structured = await self._timed(ctx, "extraction", self.extractor.extract(vid, list(snapshot)))
            except ExtractionParseError as e:
                logger.warning(
                    "[%s] Structured extraction failed, using raw transcript: %s",
                    ctx.request_id,
                    e.details.get("cause", e.code),
                )
                structured = ExtractionFailure()

            analysis = await self._timed(
                ctx, "analysis", self.analyst.generate(vid, list(snapshot), structured)
            )
            decision = await self._timed(
                ctx, "classification", self.classifier.classify(analysis, structured.to_dict())
            )

            if decision.alert:
                alert = await self._timed(
                    ctx, "persistence", self._alert_store.create(vid, decision, snapshot)
                )
                logger.warning(
                    "[%s] ALERT raised: visit=%s, severity=%s, alert_id=%s",
                    ctx.request_id,
                    self._visit_for_log(vid),
                    decision.severity.value,
                    alert.id,
                )
            else:
                logger.info(
                    "[%s] No alert: severity=%s%s",
                    ctx.request_id,
                    decision.severity.value,
                    " (fallback)" if decision.is_fallback else "",
                )

            translated = await self._timed(ctx, "translation", self.translator.translate(analysis, target_language))
            return AnalysisOutcome(
                analysis=translated,
                structured_data=structured,
                alert=decision if decision.alert else None,
            )

    async def save_chat(
        self,
        visit_id: str,
        messages: List[Message],
        analysis: Optional[str] = None,
        structured_data: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> VisitSession:
        """
        Upsert the visit's session.

        Raises:
            VersionConflictError: If `expected_version` is given and stale
        """
        vid = validate_visit_id(visit_id)
        with self._track("save", vid) as (ctx, metrics):
            self._log_input(ctx, message_count=len(messages))
            session = await self._timed(
                ctx,
                "persistence",
                self._session_store.save(vid, list(messages), analysis, structured_data, expected_version),
            )
            logger.info("[%s] Session saved: id=%s, version=%d", ctx.request_id, session.id, session.version)
            return session

    async def get_chat_by_visit_id(self, visit_id: str) -> Dict[str, Any]:
        """
        Latest session state plus the latest alert for a visit.

        An unknown visit yields an empty-shaped result, not an error.
        """
        vid = validate_visit_id(visit_id)
        session = await self._session_store.get_latest_by_visit_id(vid)
        alert = await self._alert_store.latest_for_visit(vid)
        return {
            "messages": [m.to_dict() for m in session.messages] if session else [],
            "analysis": session.analysis if session else None,
            "structuredData": session.structured_data if session else None,
            "alert": alert.to_dict() if alert else None,
        }

    async def get_chat_by_id(self, chat_id: str) -> VisitSession:
        """
        Raises:
            MalformedIdentifierError: If the id is not a valid chat id
            SessionNotFoundError: If no chat has that id
        """
        return await self._session_store.get_by_id(chat_id)

    async def follow_up(self, visit_id: str) -> str:
        """
        Ask one follow-up question about the previous visit and store it.

        Raises:
            NoPreviousVisitError: If the visit has no saved session
        """
        vid = validate_visit_id(visit_id)
        with self._track("follow_up", vid) as (ctx, metrics):
            question, session = await self._timed(ctx, "follow_up", self.follow_up_composer.compose(vid))
            logger.info(
                "[%s] Follow-up appended: messages=%d, version=%d",
                ctx.request_id,
                len(session.messages),
                session.version,
            )
            return question

    async def alerts_dashboard(self) -> List[AlertGroup]:
        """Alerts grouped per visit, most recently alerted visit first."""
        return group_alerts(await self._alert_store.list_all())

    def health(self) -> Dict[str, str]:
        """Component identifiers for the health endpoint."""
        return {
            "generator": self._generator.model_id,
            "embedder": self._embedder.model_id,
            "translator": self._translation.backend_id,
            "chunk_store": type(self._chunk_store).__name__,
            "session_store": type(self._session_store).__name__,
            "alert_store": type(self._alert_store).__name__,
        }

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def set_metrics_callback(self, callback: Callable[[PipelineMetrics], None]) -> None:
        """
        Set callback for metrics emission.

        Called after every tracked operation (success or failure).
        """
        self._metrics_callback = callback

    @contextmanager
    def _track(self, operation: str, visit_id: str) -> Iterator[Tuple[PipelineContext, PipelineMetrics]]:
        ctx = PipelineContext(visit_id=visit_id, request_id=self._generate_request_id(), operation=operation)
        metrics = PipelineMetrics(request_id=ctx.request_id, visit_id=visit_id, operation=operation)
        start = time.time()

        with LogContext(correlation_id=ctx.request_id, visit_id=visit_id):
            try:
                yield ctx, metrics
            except VisitTriageError as e:
                metrics.success = False
                metrics.error_code = e.code
                log = logger.error if e.status_code >= 500 else logger.warning
                log("[%s] %s failed: %s (%s)", ctx.request_id, operation, e.code, e.message)
                raise
            except Exception as e:
                metrics.success = False
                metrics.error_code = type(e).__name__
                logger.error("[%s] %s failed: %s", ctx.request_id, operation, e, exc_info=True)
                raise
            finally:
                metrics.stage_ms = dict(ctx.stage_timings_ms)
                metrics.total_ms = (time.time() - start) * 1000
                logger.debug("[%s] Metrics: %s", ctx.request_id, metrics.to_dict())
                self._emit_metrics(metrics)

    async def _timed(self, ctx: PipelineContext, stage: str, awaitable: Awaitable[T]) -> T:
        started = time.time()
        try:
            return await awaitable
        finally:
            ctx.stage_timings_ms[stage] = (time.time() - started) * 1000

    def _emit_metrics(self, metrics: PipelineMetrics) -> None:
        if self._metrics_callback:
            try:
                self._metrics_callback(metrics)
            except Exception as e:
                logger.warning("Metrics emission failed: %s", e)

    def _log_input(self, ctx: PipelineContext, message_count: int = 0, chars: int = 0) -> None:
        """Log operation input; never logs message content."""
        logger.info(
            "[%s] %s: visit=%s, messages=%d, chars=%d",
            ctx.request_id,
            ctx.operation,
            self._visit_for_log(ctx.visit_id),
            message_count,
            chars,
        )

    def _visit_for_log(self, visit_id: str) -> str:
        """Visit id as it may appear in logs, masked when anonymize_logs is set."""
        return mask_visit_id(visit_id) if self._settings.anonymize_logs else visit_id

    def _generate_request_id(self) -> str:
        return f"req_{uuid.uuid4().hex[:12]}"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Prepare storage (indexes) before serving requests."""
        logger.info("Pipeline startup...")
        ensure_indexes = getattr(self._session_store, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        logger.info("Pipeline startup complete")

    async def shutdown(self) -> None:
        """Close HTTP clients and the database connection."""
        logger.info("Pipeline shutdown: cleaning up...")
        for component in (self._embedder, self._translation):
            aclose = getattr(component, "aclose", None)
            if aclose is not None:
                await aclose()
        if self._mongo_client is not None:
            self._mongo_client.close()
        logger.info("Pipeline shutdown complete")


# =============================================================================
# Factory Function
# =============================================================================

def create_pipeline(settings: Settings) -> VisitPipeline:
    """
    Factory function to create a configured VisitPipeline.

    Selects collaborator implementations based on settings:
    - generation_backend: "dummy" | "gemini"
    - embedding_backend: "dummy" | "ollama"
    - translation_backend: "dummy" | "google"
    - storage_backend: "memory" | "mongo"

    A real backend that cannot be initialized falls back to its dummy or
    in-memory counterpart with an ERROR log.
    """
    from visit_triage.services.embedding import DummyEmbedder
    from visit_triage.services.generation import DummyGenerativeModel
    from visit_triage.services.translation import DummyTranslationService
    from visit_triage.services.vector_store import InMemoryChunkStore

    timeout = settings.collaborator_timeout_seconds

    # --- Generative Model ---
    generation_backend = settings.generation_backend.lower()
    generator: GenerativeModel
    if generation_backend == "gemini":
        try:
            from visit_triage.services.generation import GeminiGenerativeModel

            generator = GeminiGenerativeModel(api_key=settings.gemini_api_key, model_name=settings.gemini_model)
        except Exception as e:
            logger.error(
                "Failed to initialize GeminiGenerativeModel: %s. Falling back to DummyGenerativeModel.",
                str(e),
            )
            generator = DummyGenerativeModel()
    else:
        if generation_backend != "dummy":
            logger.error("Unknown generation_backend '%s', using DummyGenerativeModel", generation_backend)
        logger.info("Using DummyGenerativeModel (keyword heuristics)")
        generator = DummyGenerativeModel()

    # --- Embedder ---
    embedding_backend = settings.embedding_backend.lower()
    embedder: Embedder
    if embedding_backend == "ollama":
        try:
            from visit_triage.services.embedding import OllamaEmbedder

            embedder = OllamaEmbedder(settings.ollama_url, settings.embedding_model, timeout=timeout)
        except Exception as e:
            logger.error("Failed to initialize OllamaEmbedder: %s. Falling back to DummyEmbedder.", str(e))
            embedder = DummyEmbedder(settings.embedding_dimensions)
    else:
        if embedding_backend != "dummy":
            logger.error("Unknown embedding_backend '%s', using DummyEmbedder", embedding_backend)
        embedder = DummyEmbedder(settings.embedding_dimensions)

    # --- Translation ---
    translation_backend = settings.translation_backend.lower()
    translation: TranslationService
    if translation_backend == "google":
        try:
            from visit_triage.services.translation import GoogleTranslationService

            translation = GoogleTranslationService(settings.google_translate_api_key, timeout=timeout)
        except Exception as e:
            logger.error(
                "Failed to initialize GoogleTranslationService: %s. Falling back to DummyTranslationService.",
                str(e),
            )
            translation = DummyTranslationService()
    else:
        if translation_backend != "dummy":
            logger.error("Unknown translation_backend '%s', using DummyTranslationService", translation_backend)
        translation = DummyTranslationService()

    # --- Storage ---
    mongo_client = None
    database = None
    chunk_store: ChunkStore
    if settings.storage_backend.lower() == "mongo":
        try:
            from motor.motor_asyncio import AsyncIOMotorClient

            mongo_client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)
            database = mongo_client[settings.mongo_db]
        except Exception as e:
            logger.error("Failed to initialize MongoDB client: %s. Falling back to in-memory stores.", str(e))
            mongo_client = None
            database = None

    if database is not None:
        from visit_triage.services.vector_store import MongoChunkStore

        chunk_store = MongoChunkStore(database, settings.chunk_collection, settings.vector_index_name)
    else:
        chunk_store = InMemoryChunkStore()

    session_store = create_session_store(settings, database)
    alert_store = create_alert_store(settings, database)

    logger.info(
        "Pipeline configured: generator=%s, embedder=%s, translator=%s, storage=%s",
        type(generator).__name__,
        type(embedder).__name__,
        type(translation).__name__,
        "mongo" if database is not None else "memory",
    )

    return VisitPipeline(
        generator=generator,
        embedder=embedder,
        translation=translation,
        chunk_store=chunk_store,
        session_store=session_store,
        alert_store=alert_store,
        settings=settings,
        mongo_client=mongo_client,
    )
