"""
Visit Triage - Core Package

Contains the central orchestration logic and domain types:
- pipeline: Visit pipeline orchestrator
- types: Internal domain types and type aliases
- retrieval / conversation / analysis: Pipeline stages
- session_store / alert_store: Persistence
- prompts / parsing: Prompt builders and loose JSON parsing
"""

from .types import (
    VisitId,
    Message,
    Role,
    Severity,
    ClinicalRecord,
    ExtractionFailure,
    TriageDecision,
    Alert,
    AlertGroup,
    VisitSession,
    AnalysisOutcome,
)
from .pipeline import VisitPipeline, create_pipeline
from .session_store import (
    SessionStore,
    InMemorySessionStore,
    create_session_store,
)
from .alert_store import (
    AlertStore,
    InMemoryAlertStore,
    create_alert_store,
)

__all__ = [
    # Pipeline
    "VisitPipeline",
    "create_pipeline",
    # Types
    "VisitId",
    "Message",
    "Role",
    "Severity",
    "ClinicalRecord",
    "ExtractionFailure",
    "TriageDecision",
    "Alert",
    "AlertGroup",
    "VisitSession",
    "AnalysisOutcome",
    # Persistence
    "SessionStore",
    "InMemorySessionStore",
    "create_session_store",
    "AlertStore",
    "InMemoryAlertStore",
    "create_alert_store",
]
