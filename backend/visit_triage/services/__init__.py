"""
Visit Triage - Services Package

Contains collaborator interfaces and implementations for:
- Text generation
- Embeddings
- Translation
- Embedded chunk storage (vector search)

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    The pipeline is configured with concrete implementations at startup,
    enabling dependency injection and easy swapping with test doubles.
"""

from .generation import (
    GenerationRequest,
    Turn,
    GenerativeModel,
    DummyGenerativeModel,
    GeminiGenerativeModel,
)
from .embedding import (
    Embedder,
    DummyEmbedder,
    OllamaEmbedder,
)
from .translation import (
    TranslationService,
    DummyTranslationService,
    GoogleTranslationService,
)
from .vector_store import (
    ChunkStore,
    InMemoryChunkStore,
    MongoChunkStore,
)

__all__ = [
    # Generation
    "GenerationRequest",
    "Turn",
    "GenerativeModel",
    "DummyGenerativeModel",
    "GeminiGenerativeModel",
    # Embedding
    "Embedder",
    "DummyEmbedder",
    "OllamaEmbedder",
    # Translation
    "TranslationService",
    "DummyTranslationService",
    "GoogleTranslationService",
    # Chunk storage
    "ChunkStore",
    "InMemoryChunkStore",
    "MongoChunkStore",
]
