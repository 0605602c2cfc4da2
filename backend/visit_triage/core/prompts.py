"""
Visit Triage - Prompt Builders

Every prompt sent to the generative model is produced here by a pure
function of a frozen parameter struct. Nothing in this module calls a
collaborator, so each builder can be tested by asserting on its literal text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

NO_CONTEXT_PLACEHOLDER = "No specific context retrieved for this query."

CHAT_ACKNOWLEDGEMENT = (
    "Understood. I will ask one simple, patient-friendly question at a time."
)


# =============================================================================
# Parameter Structs
# =============================================================================

@dataclass(frozen=True)
class ChatPromptParams:
    visit_id: str
    context_block: str = ""


@dataclass(frozen=True)
class ExtractionPromptParams:
    conversation_text: str


@dataclass(frozen=True)
class RawAnalysisPromptParams:
    visit_id: str
    conversation_text: str


@dataclass(frozen=True)
class StructuredAnalysisPromptParams:
    visit_id: str
    record: Dict[str, Any]


@dataclass(frozen=True)
class TriagePromptParams:
    analysis_text: str
    structured_data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FollowUpPromptParams:
    analysis: Optional[str]
    structured_data: Optional[Dict[str, Any]]
    recent_messages: List[Dict[str, str]] = field(default_factory=list)


# =============================================================================
# Builders
# =============================================================================

def build_chat_system_prompt(params: ChatPromptParams) -> str:
    """System instruction for the live chat turn."""
    context = params.context_block or NO_CONTEXT_PLACEHOLDER
    return (
        "You are an AI healthcare assistant aiding a community health worker during a "
        f"patient visit (Visit ID: {params.visit_id}).\n"
        "Your goal is to help the health worker ask a relevant, simple question based on "
        "the conversation so far and the provided context.\n\n"
        "The conversation may have started with you asking \"Hello! How is your health "
        "condition today?\". If the user responds to this, follow up with a specific "
        "medical question based on their answer.\n\n"
        "Use the context below ONLY IF it seems relevant to the latest user message. The "
        "context contains snippets from THIS patient visit's transcript.\n"
        "If context is provided, prioritize it. If no context is relevant or available, "
        "use your general medical knowledge.\n"
        "Always phrase questions in simple, non-technical language suitable for a patient.\n"
        "Do NOT reveal that you used context.\n\n"
        "Respond ONLY with a single question.\n"
        "----------\n"
        "START CONTEXT\n"
        f"{context}\n"
        "END CONTEXT\n"
        "----------"
    )


def build_extraction_prompt(params: ExtractionPromptParams) -> str:
    """Prompt asking for the fixed clinical JSON schema."""
    return (
        "You are a medical data extraction bot. Read the conversation and extract "
        "information into a valid JSON object.\n"
        "Respond ONLY with the JSON object, nothing else. Do not use markdown backticks.\n\n"
        "CONVERSATION:\n"
        '"""\n'
        f"{params.conversation_text}\n"
        '"""\n\n'
        "JSON STRUCTURE TO FILL:\n"
        "{\n"
        '  "main_complaint": "The primary symptom or complaint",\n'
        '  "all_symptoms": [\n'
        '    { "symptom": "name of symptom", "severity": "e.g., \'severe\', \'sharp\', \'dull\'", '
        '"value": "e.g., \'yes\', \'no\', \'feverish\'" }\n'
        "  ],\n"
        '  "duration_mentioned": "e.g., \'2 days\', \'a week\'",\n'
        '  "medications_mentioned": ["list of medications"],\n'
        '  "potential_conditions_mentioned": ["list of potential diagnoses discussed"]\n'
        "}\n"
    )


def build_raw_analysis_prompt(params: RawAnalysisPromptParams) -> str:
    """Analysis prompt used when structured extraction failed."""
    return (
        "You are an AI healthcare assistant. Analyze the following *raw* patient visit "
        f"conversation (Visit ID: {params.visit_id}).\n"
        "Provide a concise summary covering:\n"
        "1.  **Main Symptoms/Concerns:** List the key health issues discussed.\n"
        "2.  **Key Information Gathered:** Note any important details.\n"
        "3.  **Potential Next Steps:** Suggest 1-2 simple actions.\n\n"
        "Conversation History:\n"
        "--------------------\n"
        f"{params.conversation_text}\n"
        "--------------------\n"
        "Analysis:"
    )


def build_structured_analysis_prompt(params: StructuredAnalysisPromptParams) -> str:
    """Analysis prompt rendered from a successfully extracted record."""
    return (
        "You are an AI healthcare assistant. Analyze the following *structured summary* of "
        f"a patient visit (Visit ID: {params.visit_id}).\n"
        "Provide a concise, professional analysis in Markdown format, covering:\n"
        "1.  **Main Symptoms/Concerns:** Based on the extracted data.\n"
        "2.  **Key Information Gathered:** Note important details from the JSON.\n"
        "3.  **Potential Next Steps:** Suggest 1-2 actions for the health worker.\n\n"
        "STRUCTURED DATA:\n"
        "```json\n"
        f"{json.dumps(params.record, indent=2)}\n"
        "```\n\n"
        "Analysis:"
    )


def build_triage_prompt(params: TriagePromptParams) -> str:
    """Rubric-driven severity classification prompt."""
    findings = json.dumps(params.structured_data) if params.structured_data else "None"
    return (
        "You are a Senior Medical Officer.\n"
        "Your Task: Review the Clinical Summary provided below and determine if a Medical "
        "Referral is strictly necessary.\n\n"
        "INPUT DATA:\n"
        "1. Clinical Summary:\n"
        f'"""{params.analysis_text}"""\n\n'
        "2. Structured Findings:\n"
        f"{findings}\n\n"
        "TRIAGE DECISION LOGIC:\n"
        "- HIGH SEVERITY (alert: true):\n"
        "  The summary indicates an immediate threat to life, limb, or vital organs. "
        "Requires emergency transport or immediate admission.\n"
        '  (Keywords to look for: "Emergency", "Urgent Referral", "Chest Indrawing", '
        '"Unconscious", "Difficulty Breathing")\n\n'
        "- MEDIUM SEVERITY (alert: true):\n"
        "  The summary indicates a condition that requires a Doctor's diagnosis, "
        "prescription, or intervention within 24 hours. It cannot be managed by a "
        "community worker alone.\n"
        '  (Keywords to look for: "High Fever", "Infection", "Dehydration", "Refer to doctor")\n\n'
        "- LOW SEVERITY (alert: false):\n"
        "  The summary describes routine care, preventative counseling, normal checkups, "
        "or minor ailments that are self-limiting or managed with home remedies.\n\n"
        "OUTPUT INSTRUCTIONS:\n"
        "- Determine the severity based only on the specific details in the summary.\n"
        "- Return the JSON object below.\n"
        '- Crucial: Set "alert": true ONLY for HIGH or MEDIUM. Set "alert": false for LOW.\n\n'
        "JSON SCHEMA:\n"
        "{\n"
        '  "alert": boolean,\n'
        '  "severity": "high" | "medium" | "low",\n'
        '  "label": "string (short clinical label)",\n'
        '  "reason": "string (based on the analysis provided)",\n'
        '  "recommendedAction": "string"\n'
        "}\n"
    )


def build_follow_up_prompt(params: FollowUpPromptParams) -> str:
    """Prompt for one targeted continuation question about the prior visit."""
    analysis = params.analysis or "No previous analysis."
    structured = json.dumps(params.structured_data) if params.structured_data else "None"
    recent = json.dumps(params.recent_messages) if params.recent_messages else "None"
    return (
        "You are a compassionate medical assistant following up with a patient.\n\n"
        "CONTEXT:\n"
        f"- Patient's Last Visit Analysis: {analysis}\n"
        f"- Structured Data: {structured}\n"
        f"- Recent Chat History: {recent}\n\n"
        "TASK:\n"
        'Review the "Last Visit Analysis" as if you are a doctor checking a patient\'s chart '
        "before entering the room.\n"
        "Your goal is to ask a single, natural follow-up question to check on their "
        "specific condition.\n\n"
        "GUIDELINES:\n"
        "1. Identify the main symptom or diagnosis from the analysis (e.g., headache, "
        "fever, injury, stomach pain).\n"
        "2. Ask specifically about that issue to see if it has improved (e.g., \"How is "
        "your headache feeling today?\" or \"Has the fever gone down since we last spoke?\").\n"
        "3. Be warm, professional, and empathetic, like a doctor checking in on a "
        "patient's recovery.\n"
        '4. Do NOT use generic greetings like "Hello" or "Welcome back". Start directly '
        "with the question.\n\n"
        "OUTPUT:\n"
        "Only the question text."
    )
