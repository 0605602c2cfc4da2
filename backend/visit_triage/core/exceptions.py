"""
Visit Triage - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class VisitTriageError(Exception):
    """Base exception for all Visit Triage errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Pipeline Errors
# =============================================================================

class PipelineError(VisitTriageError):
    """Error during visit pipeline processing."""
    code = "PIPELINE_ERROR"
    status_code = 500


class CollaboratorUnavailableError(PipelineError):
    """An external provider (model, embedder, translator, store) failed."""
    code = "COLLABORATOR_UNAVAILABLE"
    status_code = 502


class CollaboratorTimeoutError(CollaboratorUnavailableError):
    """An external provider did not answer within the configured timeout."""
    code = "COLLABORATOR_TIMEOUT"
    status_code = 504


class GenerationError(PipelineError):
    """Generative model call failed or returned nothing usable."""
    code = "GENERATION_ERROR"


class ExtractionParseError(PipelineError):
    """Structured extraction output could not be parsed into the clinical schema."""
    code = "EXTRACTION_PARSE_ERROR"


# =============================================================================
# Persistence Errors
# =============================================================================

class PersistenceError(VisitTriageError):
    """Error reading from or writing to a store."""
    code = "PERSISTENCE_ERROR"
    status_code = 500


class SessionNotFoundError(PersistenceError):
    """Session not found."""
    code = "SESSION_NOT_FOUND"
    status_code = 404


class NoPreviousVisitError(SessionNotFoundError):
    """Follow-up requested for a visit that has no saved session."""
    code = "NO_PREVIOUS_VISIT"


class VersionConflictError(PersistenceError):
    """Session was modified by another writer since it was read."""
    code = "VERSION_CONFLICT"
    status_code = 409


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(VisitTriageError):
    """Input validation error."""
    code = "VALIDATION_ERROR"
    status_code = 400


class MalformedIdentifierError(ValidationError):
    """Identifier does not have the expected shape."""
    code = "MALFORMED_IDENTIFIER"
