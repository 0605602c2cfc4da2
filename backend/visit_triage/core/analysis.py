"""
Visit Triage - End-of-Visit Analysis Stages

Structured extraction, narrative analysis and triage classification.

Failure handling differs per stage:
    - StructuredExtractor raises ExtractionParseError; the pipeline recovers
      by substituting ExtractionFailure and using the raw-transcript prompt
    - AnalysisGenerator propagates generator failures
    - TriageClassifier never raises; any failure yields TriageDecision.fallback()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from visit_triage.core.exceptions import ExtractionParseError
from visit_triage.core.faults import Stage, policy_for
from visit_triage.core.logging import get_logger
from visit_triage.core.conversation import generate_text
from visit_triage.core.parsing import parse_json_object
from visit_triage.core.prompts import (
    ExtractionPromptParams,
    RawAnalysisPromptParams,
    StructuredAnalysisPromptParams,
    TriagePromptParams,
    build_extraction_prompt,
    build_raw_analysis_prompt,
    build_structured_analysis_prompt,
    build_triage_prompt,
)
from visit_triage.core.types import (
    ClinicalRecord,
    Message,
    PromptKind,
    Severity,
    StructuredData,
    TriageDecision,
    VisitId,
    render_transcript,
)
from visit_triage.services.generation import GenerationRequest, GenerativeModel

logger = logging.getLogger(__name__)
event_logger = get_logger(__name__)


class StructuredExtractor:
    """Convert a conversation into the fixed clinical schema."""

    stage = Stage.EXTRACTION
    policy = policy_for(Stage.EXTRACTION)

    def __init__(self, generator: GenerativeModel, timeout_seconds: float = 30.0):
        self._generator = generator
        self._timeout = timeout_seconds

    async def extract(self, visit_id: VisitId, messages: List[Message]) -> ClinicalRecord:
        """
        Raises:
            ExtractionParseError: If the generator fails or its output does
                not have the clinical schema's shape
        """
        transcript = render_transcript(messages)
        request = GenerationRequest.single(
            PromptKind.EXTRACTION,
            build_extraction_prompt(ExtractionPromptParams(conversation_text=transcript)),
            subject=transcript,
        )

        try:
            raw = await generate_text(self._generator, request, self._timeout)
        except Exception as exc:
            raise ExtractionParseError(
                "Failed to extract structured data from AI.",
                details={"cause": type(exc).__name__},
            ) from exc

        try:
            return ClinicalRecord.from_dict(parse_json_object(raw))
        except ValueError as exc:
            raise ExtractionParseError(
                "Failed to extract structured data from AI.",
                details={"cause": str(exc)},
            ) from exc


class AnalysisGenerator:
    """Write the narrative clinical summary for a visit."""

    stage = Stage.ANALYSIS
    policy = policy_for(Stage.ANALYSIS)

    def __init__(self, generator: GenerativeModel, timeout_seconds: float = 30.0):
        self._generator = generator
        self._timeout = timeout_seconds

    @staticmethod
    def build_prompt(visit_id: VisitId, messages: List[Message], structured: StructuredData) -> str:
        if isinstance(structured, ClinicalRecord):
            return build_structured_analysis_prompt(
                StructuredAnalysisPromptParams(visit_id=visit_id, record=structured.to_dict())
            )
        return build_raw_analysis_prompt(
            RawAnalysisPromptParams(visit_id=visit_id, conversation_text=render_transcript(messages))
        )

    async def generate(self, visit_id: VisitId, messages: List[Message], structured: StructuredData) -> str:
        logger.debug(
            "Analysis prompt variant: %s",
            "structured" if isinstance(structured, ClinicalRecord) else "raw",
        )
        request = GenerationRequest.single(
            PromptKind.ANALYSIS,
            self.build_prompt(visit_id, messages, structured),
            subject=render_transcript(messages),
        )
        return await generate_text(self._generator, request, self._timeout)


class TriageClassifier:
    """
    Map an analysis onto a severity tier and alert flag.

    Severity is authoritative: a model answer whose `alert` disagrees with
    its severity is corrected to `severity in {high, medium}`. Unparseable
    output, a non-boolean `alert`, an unknown severity or a generator failure
    all produce TriageDecision.fallback().
    """

    stage = Stage.CLASSIFICATION
    policy = policy_for(Stage.CLASSIFICATION)

    def __init__(self, generator: GenerativeModel, timeout_seconds: float = 30.0):
        self._generator = generator
        self._timeout = timeout_seconds

    async def classify(
        self,
        analysis_text: str,
        structured_data: Optional[Dict[str, Any]] = None,
    ) -> TriageDecision:
        request = GenerationRequest.single(
            PromptKind.TRIAGE,
            build_triage_prompt(TriagePromptParams(analysis_text=analysis_text, structured_data=structured_data)),
            json_mode=True,
            subject=analysis_text,
        )
        try:
            raw = await generate_text(self._generator, request, self._timeout)
            return self.decision_from_output(parse_json_object(raw))
        except Exception as exc:
            event_logger.warning(
                "Triage classification failed, using fallback",
                data={"cause": type(exc).__name__},
                event_type="triage_fallback",
            )
            return TriageDecision.fallback()

    @staticmethod
    def decision_from_output(parsed: Dict[str, Any]) -> TriageDecision:
        """
        Raises:
            ValueError: If `alert` is not a boolean or `severity` is unknown
        """
        alert = parsed.get("alert")
        if not isinstance(alert, bool):
            raise ValueError("alert must be a boolean")

        severity = Severity(str(parsed.get("severity", "")).strip().lower())
        if alert != severity.requires_alert:
            event_logger.warning(
                "Classifier alert flag contradicted severity, corrected",
                data={"severity": severity.value, "model_alert": alert},
                event_type="triage_corrected",
            )
            alert = severity.requires_alert

        return TriageDecision(
            alert=alert,
            severity=severity,
            label=_text(parsed.get("label")),
            reason=_text(parsed.get("reason")),
            recommended_action=_text(parsed.get("recommendedAction")),
            raw_inference=dict(parsed),
        )


def _text(value: Any) -> str:
    return "" if value is None else str(value)

