"""
Visit Triage - Context Retrieval and Transcript Indexing

Both stages are best-effort: a failing embedder or chunk store degrades the
result (empty context, a skipped chunk) and never aborts the caller.
"""

from __future__ import annotations

import logging
import re
from typing import List, Sequence

from visit_triage.core.faults import Stage, policy_for, with_timeout
from visit_triage.core.types import ContextChunk, RetrievedChunk, VisitId
from visit_triage.services.embedding import Embedder
from visit_triage.services.vector_store import ChunkStore

logger = logging.getLogger(__name__)

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")


def split_transcript(transcript: str) -> List[str]:
    """
    Split a transcript into trimmed, non-empty sentence-like units.

    A run of text is cut after each run of ".", "!" or "?". Text made only
    of terminators is kept as a single unit.
    """
    pieces = _SENTENCE_RE.findall(transcript) or [transcript]
    return [p.strip() for p in pieces if p.strip()]


def format_context_block(chunks: Sequence[RetrievedChunk]) -> str:
    """Label chunks "Context Document N" with their similarity score."""
    blocks = []
    for i, chunk in enumerate(chunks, start=1):
        score = f"{chunk.similarity:.4f}" if chunk.similarity is not None else "N/A"
        blocks.append(f"Context Document {i}:\n{chunk.text} (Similarity: {score})")
    return "\n\n".join(blocks)


class ContextRetriever:
    """
    Fetch the visit's indexed snippets most similar to the latest utterance.

    Returns "" when nothing matches or when the embedder or store fails.
    """

    stage = Stage.RETRIEVAL
    policy = policy_for(Stage.RETRIEVAL)

    def __init__(
        self,
        embedder: Embedder,
        chunk_store: ChunkStore,
        top_k: int = 5,
        timeout_seconds: float = 30.0,
    ):
        self._embedder = embedder
        self._chunk_store = chunk_store
        self._top_k = top_k
        self._timeout = timeout_seconds

    async def retrieve(self, visit_id: VisitId, utterance: str) -> str:
        if not utterance or not utterance.strip():
            return ""

        try:
            embedding = await with_timeout(self._embedder.embed(utterance), self._timeout, "embedder")
        except Exception as exc:
            logger.warning("Retrieval skipped, embedding failed: %s", type(exc).__name__)
            return ""

        if not embedding:
            return ""

        try:
            chunks = await with_timeout(
                self._chunk_store.search(visit_id, embedding, self._top_k),
                self._timeout,
                "chunk store",
            )
        except Exception as exc:
            logger.warning("Retrieval skipped, chunk search failed: %s", type(exc).__name__)
            return ""

        logger.debug("Retrieved %d context chunks", len(chunks))
        return format_context_block(chunks)


class TranscriptIndexer:
    """
    Embed and store a transcript one sentence at a time, in document order.

    A chunk whose embedding or insert fails is logged and skipped; the
    returned count covers stored chunks only.
    """

    stage = Stage.INDEXING
    policy = policy_for(Stage.INDEXING)

    def __init__(self, embedder: Embedder, chunk_store: ChunkStore, timeout_seconds: float = 30.0):
        self._embedder = embedder
        self._chunk_store = chunk_store
        self._timeout = timeout_seconds

    async def index(self, visit_id: VisitId, transcript: str) -> int:
        stored = 0
        pieces = split_transcript(transcript)
        for position, text in enumerate(pieces):
            try:
                embedding = await with_timeout(self._embedder.embed(text), self._timeout, "embedder")
                await with_timeout(
                    self._chunk_store.insert(ContextChunk(visit_id=visit_id, text=text, embedding=embedding)),
                    self._timeout,
                    "chunk store",
                )
            except Exception as exc:
                logger.warning(
                    "Skipping chunk %d/%d (%d chars): %s",
                    position + 1,
                    len(pieces),
                    len(text),
                    type(exc).__name__,
                )
                continue
            stored += 1

        logger.info("Indexed %d/%d chunks", stored, len(pieces))
        return stored
