"""
Visit Triage - Conversation Stages

Live chat reply generation, locale rendering, and the follow-up question
asked when a visit is resumed.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from visit_triage.core.exceptions import GenerationError, NoPreviousVisitError, VisitTriageError
from visit_triage.core.faults import Stage, policy_for, with_timeout
from visit_triage.core.prompts import (
    CHAT_ACKNOWLEDGEMENT,
    ChatPromptParams,
    FollowUpPromptParams,
    build_chat_system_prompt,
    build_follow_up_prompt,
)
from visit_triage.core.session_store import SessionStore
from visit_triage.core.types import Message, PromptKind, Role, VisitId, VisitSession
from visit_triage.services.generation import GenerationRequest, GenerativeModel, Turn
from visit_triage.services.translation import TranslationService

logger = logging.getLogger(__name__)


async def generate_text(
    generator: GenerativeModel,
    request: GenerationRequest,
    timeout_seconds: float,
) -> str:
    """Call the generator, mapping unexpected failures onto GenerationError."""
    try:
        return await with_timeout(generator.generate(request), timeout_seconds, "generator")
    except VisitTriageError:
        raise
    except Exception as exc:
        raise GenerationError(
            f"Generation failed: {type(exc).__name__}",
            details={"kind": request.kind.value},
        ) from exc


class ResponseGenerator:
    """Produce the next assistant utterance for a live chat turn."""

    stage = Stage.RESPONSE_GENERATION
    policy = policy_for(Stage.RESPONSE_GENERATION)

    def __init__(self, generator: GenerativeModel, timeout_seconds: float = 30.0):
        self._generator = generator
        self._timeout = timeout_seconds

    def build_request(self, visit_id: VisitId, messages: List[Message], context_block: str) -> GenerationRequest:
        system_prompt = build_chat_system_prompt(ChatPromptParams(visit_id=visit_id, context_block=context_block))
        turns = [
            Turn(Role.USER, system_prompt),
            Turn(Role.ASSISTANT, CHAT_ACKNOWLEDGEMENT),
        ]
        turns.extend(
            Turn(Role.USER if m.role is Role.USER else Role.ASSISTANT, m.content)
            for m in messages
        )
        latest = messages[-1].content if messages else ""
        return GenerationRequest(kind=PromptKind.CHAT, turns=turns, subject=latest)

    async def generate(self, visit_id: VisitId, messages: List[Message], context_block: str) -> str:
        """
        Raises:
            GenerationError: If the generator fails
            CollaboratorTimeoutError: If the generator does not answer in time
        """
        request = self.build_request(visit_id, messages, context_block)
        return await generate_text(self._generator, request, self._timeout)


class Translator:
    """
    Render pipeline output in the caller's locale.

    Locales that are absent or share the default language prefix pass through
    unchanged without calling the backend. Backend failures return the
    original text; this stage never raises.
    """

    stage = Stage.TRANSLATION
    policy = policy_for(Stage.TRANSLATION)

    def __init__(
        self,
        service: TranslationService,
        source_locale: str = "en-US",
        default_prefix: str = "en",
        timeout_seconds: float = 30.0,
    ):
        self._service = service
        self._source = source_locale
        self._default_prefix = default_prefix.lower()
        self._timeout = timeout_seconds

    def is_passthrough(self, target_locale: Optional[str]) -> bool:
        return not target_locale or target_locale.lower().startswith(self._default_prefix)

    async def translate(self, text: str, target_locale: Optional[str]) -> str:
        if self.is_passthrough(target_locale) or not text:
            return text
        try:
            return await with_timeout(
                self._service.translate(text, self._source, target_locale),
                self._timeout,
                "translator",
            )
        except Exception as exc:
            logger.warning(
                "Translation to %s failed, returning original text: %s",
                target_locale,
                type(exc).__name__,
            )
            return text


class FollowUpComposer:
    """
    Ask one targeted question about the previous visit's main issue.

    The question is appended to the stored session as an assistant message
    and saved against the version that was loaded, so a concurrent save in
    between surfaces as VersionConflictError instead of being overwritten.
    """

    stage = Stage.FOLLOW_UP
    policy = policy_for(Stage.FOLLOW_UP)

    def __init__(
        self,
        generator: GenerativeModel,
        session_store: SessionStore,
        history_window: int = 3,
        timeout_seconds: float = 30.0,
    ):
        self._generator = generator
        self._session_store = session_store
        self._history_window = history_window
        self._timeout = timeout_seconds

    async def compose(self, visit_id: VisitId) -> Tuple[str, VisitSession]:
        """
        Raises:
            NoPreviousVisitError: If the visit has no saved session
            GenerationError: If the generator fails or answers with nothing
            VersionConflictError: If the session changed while composing
        """
        session = await self._session_store.get_latest_by_visit_id(visit_id)
        if session is None:
            raise NoPreviousVisitError(
                "No previous visit found for this patient.",
                details={"visitId": visit_id},
            )

        recent = session.messages[-self._history_window:] if self._history_window > 0 else []
        prompt = build_follow_up_prompt(
            FollowUpPromptParams(
                analysis=session.analysis,
                structured_data=session.structured_data,
                recent_messages=[m.to_dict() for m in recent],
            )
        )
        request = GenerationRequest.single(
            PromptKind.FOLLOW_UP,
            prompt,
            subject=session.analysis or "",
        )
        question = (await generate_text(self._generator, request, self._timeout)).strip()
        if not question:
            raise GenerationError("Follow-up generation returned no text", details={"kind": "follow_up"})

        messages = list(session.messages) + [Message(Role.ASSISTANT, question)]
        saved = await self._session_store.save(
            visit_id,
            messages,
            session.analysis,
            session.structured_data,
            expected_version=session.version,
        )
        return question, saved
