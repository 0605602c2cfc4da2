"""
Visit Triage - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import os
import sys
from typing import Callable, Dict, Generator, List, Optional, Union

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from visit_triage.config import Settings
from visit_triage.core.alert_store import InMemoryAlertStore
from visit_triage.core.exceptions import CollaboratorUnavailableError
from visit_triage.core.pipeline import VisitPipeline
from visit_triage.core.session_store import InMemorySessionStore
from visit_triage.core.types import Message, PromptKind, Role
from visit_triage.services.embedding import DummyEmbedder
from visit_triage.services.generation import DummyGenerativeModel, GenerationRequest
from visit_triage.services.translation import DummyTranslationService
from visit_triage.services.vector_store import InMemoryChunkStore


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Every collaborator is the offline dummy; stores are in memory.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        generation_backend="dummy",
        embedding_backend="dummy",
        translation_backend="dummy",
        storage_backend="memory",
        embedding_dimensions=128,
        collaborator_timeout_seconds=1.0,
        anonymize_logs=True,
    )


# =============================================================================
# Test Doubles
# =============================================================================

Scripted = Union[str, Exception, Callable[[GenerationRequest], str]]


class ScriptedGenerator:
    """
    Generator double with per-kind canned answers.

    Kinds without a script are answered by DummyGenerativeModel. Every
    request is recorded in `requests`.
    """

    def __init__(self, responses: Optional[Dict[PromptKind, Scripted]] = None):
        self.responses: Dict[PromptKind, Scripted] = dict(responses or {})
        self.requests: List[GenerationRequest] = []
        self._fallback = DummyGenerativeModel()

    @property
    def model_id(self) -> str:
        return "scripted-generator"

    def requests_of(self, kind: PromptKind) -> List[GenerationRequest]:
        return [r for r in self.requests if r.kind is kind]

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        scripted = self.responses.get(request.kind)
        if scripted is None:
            return await self._fallback.generate(request)
        if isinstance(scripted, Exception):
            raise scripted
        if callable(scripted):
            return scripted(request)
        return scripted


class SlowGenerator(ScriptedGenerator):
    """Generator that never answers within a short timeout."""

    def __init__(self, delay_seconds: float = 5.0):
        super().__init__()
        self._delay = delay_seconds

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        await asyncio.sleep(self._delay)
        return "too late"


class FailingEmbedder:
    """Embedder that fails for every text, or only for texts containing `fail_on`."""

    def __init__(self, fail_on: Optional[str] = None):
        self._fail_on = fail_on
        self._inner = DummyEmbedder(64)

    @property
    def model_id(self) -> str:
        return "failing-embedder"

    async def embed(self, text: str):
        if self._fail_on is None or self._fail_on in text:
            raise CollaboratorUnavailableError("embedder down")
        return await self._inner.embed(text)


class FailingTranslator:
    @property
    def backend_id(self) -> str:
        return "failing-translator"

    async def translate(self, text: str, source: str, target: str) -> str:
        raise CollaboratorUnavailableError("translator down")


class RecordingTranslator(DummyTranslationService):
    def __init__(self):
        self.calls = []

    async def translate(self, text: str, source: str, target: str) -> str:
        self.calls.append((text, source, target))
        return await super().translate(text, source, target)


class FailingChunkStore:
    async def insert(self, chunk) -> None:
        raise CollaboratorUnavailableError("vector store down")

    async def search(self, visit_id, embedding, limit):
        raise CollaboratorUnavailableError("vector store down")


class FailingAlertStore(InMemoryAlertStore):
    async def create(self, visit_id, decision, triggering_messages):
        from visit_triage.core.exceptions import PersistenceError

        raise PersistenceError("alert collection unavailable")


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def generator() -> ScriptedGenerator:
    """Scripted generator with no scripts (dummy answers for every kind)."""
    return ScriptedGenerator()


@pytest.fixture
def embedder() -> DummyEmbedder:
    return DummyEmbedder(128)


@pytest.fixture
def translator_service() -> RecordingTranslator:
    return RecordingTranslator()


@pytest.fixture
def chunk_store() -> InMemoryChunkStore:
    return InMemoryChunkStore()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


# =============================================================================
# Pipeline Fixtures
# =============================================================================

@pytest.fixture
def make_pipeline(
    test_settings: Settings,
    generator: ScriptedGenerator,
    embedder: DummyEmbedder,
    translator_service: RecordingTranslator,
    chunk_store: InMemoryChunkStore,
    session_store: InMemorySessionStore,
    alert_store: InMemoryAlertStore,
):
    """Build a pipeline from the default fixtures, overriding any component by keyword."""

    def _make(**overrides) -> VisitPipeline:
        components = dict(
            generator=generator,
            embedder=embedder,
            translation=translator_service,
            chunk_store=chunk_store,
            session_store=session_store,
            alert_store=alert_store,
            settings=test_settings,
        )
        components.update(overrides)
        return VisitPipeline(**components)

    return _make


@pytest.fixture
def pipeline(make_pipeline) -> VisitPipeline:
    """
    Create a test pipeline with dummy collaborators.

    Fully functional offline; the generator answers with keyword heuristics.
    """
    return make_pipeline()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def emergency_messages() -> List[Message]:
    """Conversation whose analysis must raise a high-severity alert."""
    return [
        Message(Role.USER, "I have chest pain and can't breathe"),
        Message(Role.ASSISTANT, "Does the chest pain spread to your arm, neck or back?"),
    ]


@pytest.fixture
def routine_messages() -> List[Message]:
    """Conversation about a minor, self-limiting complaint."""
    return [
        Message(Role.USER, "I have a mild headache since this morning."),
        Message(Role.ASSISTANT, "Where in your head is the pain, and how long does it last?"),
        Message(Role.USER, "Just at the front, it comes and goes."),
    ]


@pytest.fixture
def doctor_messages() -> List[Message]:
    """Conversation that needs a doctor within 24 hours."""
    return [
        Message(Role.USER, "My child has a high fever for 2 days."),
        Message(Role.ASSISTANT, "How many days have you had the fever, and have you checked your temperature?"),
        Message(Role.USER, "She keeps vomiting after every meal."),
    ]


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings):
    """Create a FastAPI app instance with test settings."""
    # Import here so sys.path is set up first
    from main import create_app

    return create_app(test_settings)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app (runs the lifespan)."""
    with TestClient(app) as c:
        yield c
