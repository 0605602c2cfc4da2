"""
Visit Triage - API Schemas

Pydantic models for request/response validation.
These define the contract between frontend and backend. Field names are
snake_case in Python and camelCase on the wire.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visit_triage.core.types import Message as DomainMessage
from visit_triage.core.types import Role


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ===========================================
# Messages
# ===========================================

class MessageSchema(_CamelModel):
    """One conversation turn. Role "model" is accepted as "assistant"."""

    role: str = Field(..., description="user | assistant (model is accepted)")
    content: str

    @field_validator("role")
    @classmethod
    def normalise_role(cls, value: str) -> str:
        try:
            return Role.parse(value).value
        except ValueError:
            raise ValueError("role must be 'user', 'assistant' or 'model'")

    def to_domain(self) -> DomainMessage:
        return DomainMessage(role=Role(self.role), content=self.content)


def to_domain_messages(messages: List[MessageSchema]) -> List[DomainMessage]:
    return [m.to_domain() for m in messages]


# ===========================================
# Requests
# ===========================================

class IndexRequest(_CamelModel):
    """Transcript to split and index for a visit."""
    visit_id: str = Field(..., alias="visitId", min_length=1)
    transcript: str = Field(..., min_length=1)


class ChatRequest(_CamelModel):
    """Live chat turn."""
    visit_id: str = Field(..., alias="visitId", min_length=1)
    messages: List[MessageSchema] = Field(..., min_length=1)
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")


class AnalyzeRequest(_CamelModel):
    """End-of-visit analysis."""
    visit_id: str = Field(..., alias="visitId", min_length=1)
    messages: List[MessageSchema]
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")


class SaveChatRequest(_CamelModel):
    """Upsert of the visit session."""
    visit_id: str = Field(..., alias="visitId", min_length=1)
    messages: List[MessageSchema]
    analysis: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = Field(default=None, alias="structuredData")
    expected_version: Optional[int] = Field(
        default=None,
        alias="expectedVersion",
        ge=0,
        description="Version last read by the client; 0 means the session must not exist yet",
    )


# ===========================================
# Responses
# ===========================================

class IndexResponse(_CamelModel):
    chunks_stored: int = Field(..., alias="chunksStored")


class ChatResponse(_CamelModel):
    content: str


class TriageAlertSchema(_CamelModel):
    """Classifier decision returned when an alert was raised."""
    alert: bool
    severity: str
    label: str
    reason: str
    recommended_action: str = Field(..., alias="recommendedAction")


class AnalyzeResponse(_CamelModel):
    analysis: str
    structured_data: Dict[str, Any] = Field(..., alias="structuredData")
    alert: Optional[TriageAlertSchema] = None


class SaveChatResponse(_CamelModel):
    message: str
    chat_id: str = Field(..., alias="chatId")
    version: int


class AlertRecordSchema(_CamelModel):
    """A persisted alert."""
    id: str = Field(..., alias="_id")
    visit_id: str = Field(..., alias="visitId")
    label: str
    severity: str
    reason: str
    recommended_action: str = Field(..., alias="recommendedAction")
    triggering_messages: List[MessageSchema] = Field(default_factory=list, alias="triggeringMessages")
    created_at: str = Field(..., alias="createdAt")
    raw_inference: Dict[str, Any] = Field(default_factory=dict, alias="rawInference")


class VisitChatResponse(_CamelModel):
    """Latest session state for a visit; empty-shaped when there is none."""
    messages: List[MessageSchema] = Field(default_factory=list)
    analysis: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = Field(default=None, alias="structuredData")
    alert: Optional[AlertRecordSchema] = None


class ChatDocumentSchema(_CamelModel):
    """Full stored session document."""
    id: str = Field(..., alias="_id")
    visit_id: str = Field(..., alias="visitId")
    messages: List[MessageSchema]
    analysis: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = Field(default=None, alias="structuredData")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    version: int


class FollowUpResponse(_CamelModel):
    success: bool
    follow_up_question: str = Field(..., alias="followUpQuestion")


class DashboardAlertSchema(_CamelModel):
    id: str = Field(..., alias="_id")
    label: str
    severity: str
    created_at: str = Field(..., alias="createdAt")
    reason: str
    recommended_action: str = Field(..., alias="recommendedAction")
    triggering_messages: List[MessageSchema] = Field(default_factory=list, alias="triggeringMessages")


class AlertGroupSchema(_CamelModel):
    """Alerts of one visit, newest first."""
    visit_id: str = Field(..., alias="_id")
    total_alerts: int = Field(..., alias="totalAlerts")
    highest_severity: str = Field(..., alias="highestSeverity")
    latest_alert_date: str = Field(..., alias="latestAlertDate")
    alerts: List[DashboardAlertSchema]


class DashboardResponse(_CamelModel):
    dashboard_data: List[AlertGroupSchema] = Field(..., alias="dashboardData")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service status: healthy | degraded | unhealthy")
    version: str
    components: Dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error envelope for every failed request."""
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
