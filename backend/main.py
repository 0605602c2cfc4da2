"""
Visit Triage - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visit_triage import __version__
from visit_triage.api import install_error_handlers, routes
from visit_triage.config import Settings, get_settings
from visit_triage.core.logging import setup_structured_logging
from visit_triage.core.pipeline import create_pipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Create the visit pipeline with the configured collaborators
        - Prepare storage (indexes)

    Shutdown:
        - Close HTTP clients and the database connection
    """
    settings: Settings = app.state.settings

    # === Startup ===
    logger.info("Visit Triage starting in %s mode", settings.app_env)

    pipeline = create_pipeline(settings)
    app.state.pipeline = pipeline
    await pipeline.startup()

    logger.info("Pipeline initialized and ready")
    logger.info(
        "   Backends: generation=%s, embedding=%s, translation=%s, storage=%s",
        settings.generation_backend,
        settings.embedding_backend,
        settings.translation_backend,
        settings.storage_backend,
    )
    logger.info("   Privacy: anonymize_logs=%s", settings.anonymize_logs)

    yield

    # === Shutdown ===
    logger.info("Visit Triage shutting down")
    await pipeline.shutdown()
    logger.info("Shutdown complete")


def create_app(settings: Settings = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()
    setup_structured_logging(settings.app_log_level, json_format=settings.log_json_format)

    app = FastAPI(
        title="Visit Triage",
        description="Visit chat, clinical analysis and triage alerts for community health visits",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    install_error_handlers(app)

    # --- Routes ---
    app.include_router(routes.router)

    @app.get("/")
    async def root():
        """Service info."""
        return {
            "service": "Visit Triage",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
