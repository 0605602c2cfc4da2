"""
Visit Triage - Generative Model Service

Produces text from an ordered list of prompt turns.

Architecture:
    - Protocol defines the interface every backend satisfies
    - DummyGenerativeModel: Keyword heuristics for development/testing
    - GeminiGenerativeModel: Google Gemini via the google-genai async client

Every pipeline stage that needs generated text (chat, extraction, analysis,
triage, follow-up) goes through this one interface. The request's `kind`
tells heuristic backends which kind of answer is expected; real models
ignore it and follow the prompt.
"""

from __future__ import annotations

import json
import logging
import re
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable

from visit_triage.core.exceptions import GenerationError
from visit_triage.core.types import PromptKind, Role

logger = logging.getLogger(__name__)


# =============================================================================
# Request Types
# =============================================================================

@dataclass(frozen=True)
class Turn:
    """One prompt turn in generator-neutral form."""
    role: Role
    text: str


@dataclass(frozen=True)
class GenerationRequest:
    """
    A single generation call.

    Attributes:
        kind: Which pipeline stage issued the request
        turns: Ordered prompt turns (system instruction is the first user turn)
        json_mode: Ask the backend for a strict JSON response when it supports one
        subject: The text the prompt is about (transcript, analysis); used for
            log sizing and by heuristic backends
    """
    kind: PromptKind
    turns: List[Turn] = field(default_factory=list)
    json_mode: bool = False
    subject: str = ""

    @classmethod
    def single(
        cls,
        kind: PromptKind,
        prompt: str,
        json_mode: bool = False,
        subject: str = "",
    ) -> "GenerationRequest":
        return cls(kind=kind, turns=[Turn(Role.USER, prompt)], json_mode=json_mode, subject=subject)


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class GenerativeModel(Protocol):
    """Protocol for generative text backends."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> str:
        """
        Generate text for the request.

        Raises:
            GenerationError: If the backend fails or returns no text
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Return backend/model identifier."""
        ...


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummyGenerativeModel:
    """
    Keyword-driven generative backend for development and testing.

    Produces plausible, deterministic output for every PromptKind so the
    whole pipeline runs without network access. The triage answers follow
    the same rubric keywords the real triage prompt lists.

    WARNING: This backend has NO clinical validity. It exists purely
    to exercise the pipeline.
    """

    # Phrase -> canonical symptom name
    SYMPTOM_PHRASES = {
        "chest pain": "chest pain",
        "can't breathe": "difficulty breathing",
        "cannot breathe": "difficulty breathing",
        "difficulty breathing": "difficulty breathing",
        "short of breath": "difficulty breathing",
        "breathless": "difficulty breathing",
        "unconscious": "unconsciousness",
        "fainted": "unconsciousness",
        "high fever": "high fever",
        "fever": "fever",
        "cough": "cough",
        "headache": "headache",
        "vomit": "vomiting",
        "diarrh": "diarrhea",
        "stomach pain": "stomach pain",
        "rash": "rash",
        "dizz": "dizziness",
    }

    EMERGENCY_SYMPTOMS = {"chest pain", "difficulty breathing", "unconsciousness"}
    DOCTOR_SYMPTOMS = {"high fever", "vomiting", "diarrhea"}

    HIGH_RISK_KEYWORDS = {
        "emergency", "urgent referral", "chest indrawing",
        "unconscious", "difficulty breathing",
    }

    MEDIUM_RISK_KEYWORDS = {
        "high fever", "infection", "dehydration", "refer to doctor",
    }

    CHAT_QUESTIONS = {
        "difficulty breathing": "Are you finding it hard to breathe even when you are resting?",
        "chest pain": "Does the chest pain spread to your arm, neck or back?",
        "fever": "How many days have you had the fever, and have you checked your temperature?",
        "high fever": "How many days have you had the fever, and have you checked your temperature?",
        "cough": "Are you coughing up anything, and what colour is it?",
        "headache": "Where in your head is the pain, and how long does it last?",
        "vomiting": "How many times have you vomited today, and can you keep water down?",
        "diarrhea": "How many times have you had loose stools today, and are you drinking enough water?",
    }
    DEFAULT_CHAT_QUESTION = "Can you tell me more about how you are feeling today?"

    def __init__(self):
        self._call_count = 0

    @property
    def model_id(self) -> str:
        return "dummy-generator-v0.0.1"

    async def generate(self, request: GenerationRequest) -> str:
        self._call_count += 1
        handler = {
            PromptKind.CHAT: self._chat,
            PromptKind.EXTRACTION: self._extract,
            PromptKind.ANALYSIS: self._analyze,
            PromptKind.TRIAGE: self._triage,
            PromptKind.FOLLOW_UP: self._follow_up,
        }[request.kind]
        output = handler(request)
        logger.debug(
            "DummyGenerativeModel: kind=%s, subject_chars=%d, call #%d",
            request.kind.value,
            len(request.subject),
            self._call_count,
        )
        return output

    # -------------------------------------------------------------------------
    # Per-kind heuristics
    # -------------------------------------------------------------------------

    def _chat(self, request: GenerationRequest) -> str:
        latest_user = next(
            (t.text for t in reversed(request.turns[2:]) if t.role is Role.USER),
            request.subject,
        )
        for symptom in self._find_symptoms(latest_user):
            if symptom in self.CHAT_QUESTIONS:
                return self.CHAT_QUESTIONS[symptom]
        return self.DEFAULT_CHAT_QUESTION

    def _extract(self, request: GenerationRequest) -> str:
        symptoms = self._find_symptoms(request.subject)
        duration = re.search(r"\b(\d+|a|one|two|three|few)\s+(day|days|week|weeks|month|months)\b",
                             request.subject.lower())
        record = {
            "main_complaint": symptoms[0] if symptoms else "general check-up",
            "all_symptoms": [
                {"symptom": s, "severity": "severe" if s in self.EMERGENCY_SYMPTOMS else "", "value": "yes"}
                for s in symptoms
            ],
            "duration_mentioned": duration.group(0) if duration else "",
            "medications_mentioned": [],
            "potential_conditions_mentioned": [],
        }
        # Mimic the fenced output real models often return
        return "```json\n" + json.dumps(record, indent=2) + "\n```"

    def _analyze(self, request: GenerationRequest) -> str:
        symptoms = self._find_symptoms(request.subject)
        concerns = ", ".join(s.title() for s in symptoms) if symptoms else "No specific complaint"

        if any(s in self.EMERGENCY_SYMPTOMS for s in symptoms):
            next_steps = "Emergency: arrange urgent referral and transport to the nearest hospital."
        elif any(s in self.DOCTOR_SYMPTOMS for s in symptoms):
            next_steps = "Refer to doctor within 24 hours; watch for signs of dehydration."
        elif symptoms:
            next_steps = "Home care with rest and fluids; review again if symptoms persist."
        else:
            next_steps = "Routine check-up; no action needed."

        return (
            f"1.  **Main Symptoms/Concerns:** {concerns}\n"
            f"2.  **Key Information Gathered:** {len(symptoms)} symptom(s) reported.\n"
            f"3.  **Potential Next Steps:** {next_steps}"
        )

    def _triage(self, request: GenerationRequest) -> str:
        text_lower = request.subject.lower()
        high = self._find_matches(text_lower, self.HIGH_RISK_KEYWORDS)
        medium = self._find_matches(text_lower, self.MEDIUM_RISK_KEYWORDS)

        if high:
            verdict = {
                "alert": True,
                "severity": "high",
                "label": high[0].title(),
                "reason": f"Analysis mentions {', '.join(high)}.",
                "recommendedAction": "Arrange emergency transport and urgent referral.",
            }
        elif medium:
            verdict = {
                "alert": True,
                "severity": "medium",
                "label": medium[0].title(),
                "reason": f"Analysis mentions {', '.join(medium)}.",
                "recommendedAction": "Refer to a doctor within 24 hours.",
            }
        else:
            verdict = {
                "alert": False,
                "severity": "low",
                "label": "Routine care",
                "reason": "No escalation criteria found in the analysis.",
                "recommendedAction": "Continue routine care.",
            }
        return json.dumps(verdict)

    def _follow_up(self, request: GenerationRequest) -> str:
        symptoms = self._find_symptoms(request.subject)
        if symptoms:
            return f"How is your {symptoms[0]} feeling today compared to our last visit?"
        return "How have you been feeling since we last spoke?"

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _find_symptoms(self, text: str) -> List[str]:
        """Canonical symptoms in order of first appearance, without duplicates."""
        text_lower = text.lower()
        hits = []
        for phrase, symptom in self.SYMPTOM_PHRASES.items():
            pos = text_lower.find(phrase)
            if pos >= 0:
                hits.append((pos, symptom))
        ordered: List[str] = []
        for _, symptom in sorted(hits):
            # "high fever" also matches "fever"; keep the more specific one
            if symptom == "fever" and "high fever" in ordered:
                continue
            if symptom not in ordered:
                ordered.append(symptom)
        return ordered

    @staticmethod
    def _find_matches(text: str, keywords: set) -> List[str]:
        return sorted(kw for kw in keywords if kw in text)


# =============================================================================
# Gemini Implementation (Production)
# =============================================================================

class GeminiGenerativeModel:
    """
    Google Gemini backend using the google-genai async client.

    Turns map onto Gemini roles: user -> "user", assistant -> "model".
    JSON-mode requests set response_mime_type="application/json".
    """

    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash"):
        if not api_key:
            raise ValueError("GeminiGenerativeModel requires an API key")

        from google import genai

        self._client = genai.Client(api_key=api_key)
        self._model_name = model_name
        logger.info("GeminiGenerativeModel initialized: model=%s", model_name)

    @property
    def model_id(self) -> str:
        return f"gemini:{self._model_name}"

    async def generate(self, request: GenerationRequest) -> str:
        from google.genai import types

        contents = [
            types.Content(
                role="user" if turn.role is Role.USER else "model",
                parts=[types.Part(text=turn.text)],
            )
            for turn in request.turns
        ]
        config: Optional[types.GenerateContentConfig] = None
        if request.json_mode:
            config = types.GenerateContentConfig(response_mime_type="application/json")

        try:
            response = await self._client.aio.models.generate_content(
                model=self._model_name,
                contents=contents,
                config=config,
            )
        except Exception as exc:
            raise GenerationError(
                f"Gemini request failed: {type(exc).__name__}",
                details={"kind": request.kind.value},
            ) from exc

        text = response.text
        if not text:
            raise GenerationError(
                "Gemini returned an empty response",
                details={"kind": request.kind.value},
            )
        return text
