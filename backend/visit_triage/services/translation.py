"""
Visit Triage - Translation Service

Renders assistant text in the caller's locale.

Architecture:
    - Protocol defines the interface
    - DummyTranslationService: Tags text with the target locale (offline)
    - GoogleTranslationService: Cloud Translation v2 REST API over httpx

Locales whose language prefix matches the source language are returned
unchanged by the Translator stage before any backend is called.
"""

from __future__ import annotations

import html
import logging
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

import httpx

from visit_triage.core.exceptions import CollaboratorUnavailableError

logger = logging.getLogger(__name__)

GOOGLE_TRANSLATE_URL = "https://translation.googleapis.com/language/translate/v2"

# v2 takes ISO-639 codes; only Chinese keeps its region
REGIONAL_V2_CODES = {"zh-CN", "zh-TW"}


def v2_language_code(locale: str) -> str:
    """Reduce a BCP-47 locale such as "en-US" to the code Translate v2 accepts."""
    if locale in REGIONAL_V2_CODES:
        return locale
    return locale.split("-")[0]


@runtime_checkable
class TranslationService(Protocol):
    """Protocol for translation backends."""

    @abstractmethod
    async def translate(self, text: str, source: str, target: str) -> str:
        """
        Translate text between locales.

        Raises:
            CollaboratorUnavailableError: If the backend fails
        """
        ...

    @property
    @abstractmethod
    def backend_id(self) -> str:
        ...


class DummyTranslationService:
    """Prefixes text with the target locale, e.g. "[hi-IN] How are you?"."""

    @property
    def backend_id(self) -> str:
        return "dummy-translator"

    async def translate(self, text: str, source: str, target: str) -> str:
        return f"[{target}] {text}"


class GoogleTranslationService:
    """Google Cloud Translation (v2, API key auth)."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("GoogleTranslationService requires an API key")
        self._api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def backend_id(self) -> str:
        return "google-translate-v2"

    async def translate(self, text: str, source: str, target: str) -> str:
        try:
            response = await self._client.post(
                GOOGLE_TRANSLATE_URL,
                params={"key": self._api_key},
                json={
                    "q": text,
                    "source": v2_language_code(source),
                    "target": v2_language_code(target),
                    "format": "text",
                },
            )
            response.raise_for_status()
            translations = response.json()["data"]["translations"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise CollaboratorUnavailableError(
                f"Translation request failed: {type(exc).__name__}",
                details={"target": target},
            ) from exc

        if not translations:
            raise CollaboratorUnavailableError("Translation returned no result", details={"target": target})
        return html.unescape(translations[0]["translatedText"])

    async def aclose(self) -> None:
        await self._client.aclose()
