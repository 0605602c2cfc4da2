"""
Visit Triage - Core Domain Types

Internal type definitions for the visit pipeline. These are domain objects
used within the core and service layers, independent of API serialization.

Design Notes:
- These types are the "lingua franca" between pipeline stages and stores.
- API layer converts these to/from Pydantic schemas for external communication.
- Field names follow Python conventions; `to_dict()` emits the camelCase
  document shape that stores and clients exchange.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NewType, Optional, Union

from visit_triage.core.exceptions import MalformedIdentifierError


# =============================================================================
# Type Aliases
# =============================================================================

VisitId = NewType("VisitId", str)
"""Identifier of one recorded patient encounter. Opaque string."""

Embedding = NewType("Embedding", List[float])
"""Fixed-length numeric vector representation of a text."""

_VISIT_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def validate_visit_id(raw: Any) -> VisitId:
    """
    Check a caller-supplied visit id.

    Raises:
        MalformedIdentifierError: If the id is not 1-128 characters of
            letters, digits, ".", "_", ":" or "-".
    """
    if not isinstance(raw, str) or not _VISIT_ID_RE.match(raw):
        raise MalformedIdentifierError(
            "Malformed visit id",
            details={"field": "visitId"},
        )
    return VisitId(raw)


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Role(str, Enum):
    """Author of a message in a visit conversation."""
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role, accepting the generator-native "model" as assistant."""
        if value == "model":
            return cls.ASSISTANT
        return cls(value)


class Severity(str, Enum):
    """Triage severity tier."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def requires_alert(self) -> bool:
        """HIGH and MEDIUM always raise an alert; LOW never does."""
        return self is not Severity.LOW


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class PromptKind(str, Enum):
    """Which pipeline stage a generation request belongs to."""
    CHAT = "chat"
    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    TRIAGE = "triage"
    FOLLOW_UP = "follow_up"


# =============================================================================
# Conversation
# =============================================================================

@dataclass(frozen=True)
class Message:
    """One turn of a visit conversation."""
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=Role.parse(str(data["role"])), content=str(data["content"]))


def render_transcript(messages: List[Message]) -> str:
    """Render history as alternating "Health Worker" / "AI Assistant" lines."""
    return "\n".join(
        f"{'Health Worker' if m.role is Role.USER else 'AI Assistant'}: {m.content}"
        for m in messages
    )


# =============================================================================
# Structured Clinical Record
# =============================================================================

@dataclass(frozen=True)
class SymptomEntry:
    """A single symptom mentioned during the visit."""
    symptom: str
    severity: str = ""
    value: str = ""


@dataclass(frozen=True)
class ClinicalRecord:
    """
    Fixed clinical schema extracted from a visit conversation.

    Attributes:
        main_complaint: The primary symptom or complaint
        all_symptoms: Ordered symptoms with severity and value
        duration_mentioned: Free-text duration (e.g. "2 days")
        medications_mentioned: Medications named in the conversation
        potential_conditions_mentioned: Possible diagnoses discussed
    """
    main_complaint: str
    all_symptoms: List[SymptomEntry] = field(default_factory=list)
    duration_mentioned: str = ""
    medications_mentioned: List[str] = field(default_factory=list)
    potential_conditions_mentioned: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "main_complaint": self.main_complaint,
            "all_symptoms": [
                {"symptom": s.symptom, "severity": s.severity, "value": s.value}
                for s in self.all_symptoms
            ],
            "duration_mentioned": self.duration_mentioned,
            "medications_mentioned": list(self.medications_mentioned),
            "potential_conditions_mentioned": list(self.potential_conditions_mentioned),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ClinicalRecord":
        """
        Build a record from parsed model output.

        Raises:
            ValueError: If the payload does not have the clinical schema's shape.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        if "error" in data:
            raise ValueError("payload is an extraction error sentinel")

        complaint = data.get("main_complaint")
        if not isinstance(complaint, str):
            raise ValueError("main_complaint must be a string")

        symptoms_raw = data.get("all_symptoms") or []
        if not isinstance(symptoms_raw, list):
            raise ValueError("all_symptoms must be a list")
        symptoms = []
        for item in symptoms_raw:
            if not isinstance(item, dict) or not isinstance(item.get("symptom"), str):
                raise ValueError("each symptom must be an object with a 'symptom' string")
            symptoms.append(
                SymptomEntry(
                    symptom=item["symptom"],
                    severity=_as_text(item.get("severity")),
                    value=_as_text(item.get("value")),
                )
            )

        return cls(
            main_complaint=complaint,
            all_symptoms=symptoms,
            duration_mentioned=_as_text(data.get("duration_mentioned")),
            medications_mentioned=_as_text_list(data, "medications_mentioned"),
            potential_conditions_mentioned=_as_text_list(data, "potential_conditions_mentioned"),
        )


@dataclass(frozen=True)
class ExtractionFailure:
    """Sentinel substituted for a ClinicalRecord when extraction fails."""
    error: str = "Extraction failed"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error}


StructuredData = Union[ClinicalRecord, ExtractionFailure]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_text_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return [_as_text(v) for v in value]


# =============================================================================
# Triage Decision
# =============================================================================

@dataclass(frozen=True)
class TriageDecision:
    """
    Output of the triage classifier.

    The alert flag is a function of severity: construction fails if
    `alert` disagrees with `severity.requires_alert`.
    """
    alert: bool
    severity: Severity
    label: str
    reason: str
    recommended_action: str
    raw_inference: Optional[Dict[str, Any]] = None
    is_fallback: bool = False

    def __post_init__(self):
        """Validate constraints."""
        if self.alert != self.severity.requires_alert:
            raise ValueError(
                f"alert={self.alert} is inconsistent with severity={self.severity.value}"
            )

    @classmethod
    def fallback(cls) -> "TriageDecision":
        """Factory for the fixed result used when classification fails."""
        return cls(
            alert=False,
            severity=Severity.LOW,
            label="Error",
            reason="Could not classify analysis.",
            recommended_action="Manual review required.",
            is_fallback=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert,
            "severity": self.severity.value,
            "label": self.label,
            "reason": self.reason,
            "recommendedAction": self.recommended_action,
        }


# =============================================================================
# Persisted Records
# =============================================================================

@dataclass(frozen=True)
class Alert:
    """
    Immutable record asserting that a visit's analysis met the escalation threshold.

    `triggering_messages` is a frozen copy of the conversation at detection
    time; `raw_inference` is the classifier output exactly as parsed.
    """
    id: str
    visit_id: VisitId
    label: str
    severity: Severity
    reason: str
    recommended_action: str
    triggering_messages: tuple[Message, ...]
    created_at: datetime
    raw_inference: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "visitId": self.visit_id,
            "label": self.label,
            "severity": self.severity.value,
            "reason": self.reason,
            "recommendedAction": self.recommended_action,
            "triggeringMessages": [m.to_dict() for m in self.triggering_messages],
            "createdAt": self.created_at.isoformat(),
            "rawInference": self.raw_inference,
        }


@dataclass
class VisitSession:
    """
    The single document per visit: message history plus latest derivatives.

    Messages are append-only within a session; saves replace messages,
    analysis and structured data wholesale and bump `version`.
    """
    id: str
    visit_id: VisitId
    messages: List[Message] = field(default_factory=list)
    analysis: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "visitId": self.visit_id,
            "messages": [m.to_dict() for m in self.messages],
            "analysis": self.analysis,
            "structuredData": self.structured_data,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "version": self.version,
        }


@dataclass(frozen=True)
class ContextChunk:
    """One write-once indexed unit of transcript text."""
    visit_id: VisitId
    text: str
    embedding: Embedding


@dataclass(frozen=True)
class RetrievedChunk:
    """A chunk returned by similarity search."""
    text: str
    similarity: Optional[float] = None


# =============================================================================
# Pipeline Outputs
# =============================================================================

@dataclass
class AnalysisOutcome:
    """Result of the end-of-visit analyze flow."""
    analysis: str
    structured_data: StructuredData
    alert: Optional[TriageDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis": self.analysis,
            "structuredData": self.structured_data.to_dict(),
            "alert": self.alert.to_dict() if self.alert else None,
        }


@dataclass
class AlertGroup:
    """Per-visit alert summary for the dashboard."""
    visit_id: VisitId
    total_alerts: int
    highest_severity: Severity
    latest_alert_date: datetime
    alerts: List[Alert] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.visit_id,
            "totalAlerts": self.total_alerts,
            "highestSeverity": self.highest_severity.value,
            "latestAlertDate": self.latest_alert_date.isoformat(),
            "alerts": [
                {
                    "_id": a.id,
                    "label": a.label,
                    "severity": a.severity.value,
                    "createdAt": a.created_at.isoformat(),
                    "reason": a.reason,
                    "recommendedAction": a.recommended_action,
                    "triggeringMessages": [m.to_dict() for m in a.triggering_messages],
                }
                for a in self.alerts
            ],
        }


# =============================================================================
# Pipeline Context (for passing state through pipeline stages)
# =============================================================================

@dataclass
class PipelineContext:
    """
    Context object passed through pipeline stages.

    Carries visit information and timing as data flows through the pipeline.
    """
    visit_id: VisitId
    request_id: str  # Unique ID for this processing request
    operation: str  # "chat" | "analyze" | "index" | "follow_up"
    start_time: datetime = field(default_factory=utc_now)
    stage_timings_ms: Dict[str, float] = field(default_factory=dict)
