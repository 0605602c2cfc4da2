"""
Visit Triage - Retrieval and Indexing Tests

Tests for transcript splitting, indexing and context retrieval.
These tests verify:
- Chunk count equals the number of non-empty sentence units
- A failing chunk is skipped without aborting indexing
- Retrieval is scoped to one visit and formats similarity scores
- Embedder or store failures yield empty context instead of raising

Run with: pytest tests/test_retrieval.py -v
"""

import pytest

from conftest import FailingChunkStore, FailingEmbedder
from visit_triage.core.faults import FaultPolicy
from visit_triage.core.retrieval import (
    ContextRetriever,
    TranscriptIndexer,
    format_context_block,
    split_transcript,
)
from visit_triage.core.types import RetrievedChunk, VisitId
from visit_triage.services.embedding import DummyEmbedder
from visit_triage.services.vector_store import InMemoryChunkStore


class TestSplitTranscript:

    def test_two_sentences(self):
        assert split_transcript("Patient has fever. She also has a cough.") == [
            "Patient has fever.",
            "She also has a cough.",
        ]

    def test_trailing_text_without_terminator(self):
        assert split_transcript("Wait... what?! Yes") == ["Wait...", "what?!", "Yes"]

    def test_no_terminator(self):
        assert split_transcript("no punctuation at all") == ["no punctuation at all"]

    def test_whitespace_only(self):
        assert split_transcript("   \n  ") == []

    def test_terminators_only(self):
        assert split_transcript("...") == ["..."]


class TestTranscriptIndexer:

    def test_is_best_effort(self):
        assert TranscriptIndexer.policy is FaultPolicy.BEST_EFFORT

    @pytest.mark.asyncio
    async def test_chunk_count_matches_sentences(self, embedder: DummyEmbedder, chunk_store: InMemoryChunkStore):
        indexer = TranscriptIndexer(embedder, chunk_store)

        count = await indexer.index(VisitId("v1"), "Patient has fever. She also has a cough.")

        assert count == 2
        assert len(chunk_store) == 2

    @pytest.mark.asyncio
    async def test_failing_chunk_is_skipped(self, chunk_store: InMemoryChunkStore):
        indexer = TranscriptIndexer(FailingEmbedder(fail_on="cough"), chunk_store)

        count = await indexer.index(VisitId("v1"), "Patient has fever. She also has a cough. Third one!")

        assert count == 2
        assert len(chunk_store) == 2

    @pytest.mark.asyncio
    async def test_store_failure_counts_nothing(self, embedder: DummyEmbedder):
        indexer = TranscriptIndexer(embedder, FailingChunkStore())

        count = await indexer.index(VisitId("v1"), "One. Two. Three.")

        assert count == 0


class TestFormatContextBlock:

    def test_labels_and_scores(self):
        block = format_context_block(
            [RetrievedChunk("Patient has fever.", 0.91234), RetrievedChunk("No score.", None)]
        )
        assert block == (
            "Context Document 1:\nPatient has fever. (Similarity: 0.9123)\n\n"
            "Context Document 2:\nNo score. (Similarity: N/A)"
        )

    def test_empty(self):
        assert format_context_block([]) == ""


class TestContextRetriever:

    def test_is_best_effort(self):
        assert ContextRetriever.policy is FaultPolicy.BEST_EFFORT

    @pytest.mark.asyncio
    async def test_returns_most_similar_chunk_first(
        self, embedder: DummyEmbedder, chunk_store: InMemoryChunkStore
    ):
        await TranscriptIndexer(embedder, chunk_store).index(
            VisitId("v1"), "Patient has fever. She also has a cough."
        )
        retriever = ContextRetriever(embedder, chunk_store, top_k=5)

        block = await retriever.retrieve(VisitId("v1"), "Patient has fever.")

        assert block.startswith("Context Document 1:\nPatient has fever. (Similarity: 1.0000)")
        assert "Context Document 2:\nShe also has a cough." in block

    @pytest.mark.asyncio
    async def test_scoped_to_visit(self, embedder: DummyEmbedder, chunk_store: InMemoryChunkStore):
        indexer = TranscriptIndexer(embedder, chunk_store)
        await indexer.index(VisitId("v1"), "Patient has fever.")
        await indexer.index(VisitId("v2"), "Other patient has fever too.")
        retriever = ContextRetriever(embedder, chunk_store)

        block = await retriever.retrieve(VisitId("v1"), "fever")

        assert "Other patient" not in block
        assert block.count("Context Document") == 1

    @pytest.mark.asyncio
    async def test_respects_top_k(self, embedder: DummyEmbedder, chunk_store: InMemoryChunkStore):
        await TranscriptIndexer(embedder, chunk_store).index(VisitId("v1"), "a. b. c. d. e. f. g.")
        retriever = ContextRetriever(embedder, chunk_store, top_k=5)

        block = await retriever.retrieve(VisitId("v1"), "a")

        assert block.count("Context Document") == 5

    @pytest.mark.asyncio
    async def test_unknown_visit_gives_empty_context(self, embedder: DummyEmbedder, chunk_store: InMemoryChunkStore):
        retriever = ContextRetriever(embedder, chunk_store)
        assert await retriever.retrieve(VisitId("nobody"), "fever") == ""

    @pytest.mark.asyncio
    async def test_embedder_failure_gives_empty_context(self, chunk_store: InMemoryChunkStore):
        retriever = ContextRetriever(FailingEmbedder(), chunk_store)
        assert await retriever.retrieve(VisitId("v1"), "fever") == ""

    @pytest.mark.asyncio
    async def test_store_failure_gives_empty_context(self, embedder: DummyEmbedder):
        retriever = ContextRetriever(embedder, FailingChunkStore())
        assert await retriever.retrieve(VisitId("v1"), "fever") == ""
