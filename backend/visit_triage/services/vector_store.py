"""
Visit Triage - Context Chunk Store

Write-once store of embedded transcript chunks with per-visit similarity search.

Architecture:
    - Protocol defines the interface
    - InMemoryChunkStore: numpy cosine similarity (development/testing)
    - MongoChunkStore: Atlas $vectorSearch via motor

Search is always scoped to one visit; chunks of other visits are never returned.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import List, Protocol, runtime_checkable

import numpy as np

from visit_triage.core.exceptions import CollaboratorUnavailableError
from visit_triage.core.types import ContextChunk, Embedding, RetrievedChunk, VisitId

logger = logging.getLogger(__name__)


@runtime_checkable
class ChunkStore(Protocol):
    """Protocol for embedded chunk storage."""

    @abstractmethod
    async def insert(self, chunk: ContextChunk) -> None:
        """Store one chunk. Chunks are never updated."""
        ...

    @abstractmethod
    async def search(self, visit_id: VisitId, embedding: Embedding, limit: int) -> List[RetrievedChunk]:
        """Return up to `limit` chunks of `visit_id`, most similar first."""
        ...


class InMemoryChunkStore:
    """In-process chunk store. Lost on restart."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._chunks: List[ContextChunk] = []

    async def insert(self, chunk: ContextChunk) -> None:
        async with self._lock:
            self._chunks.append(chunk)

    async def search(self, visit_id: VisitId, embedding: Embedding, limit: int) -> List[RetrievedChunk]:
        async with self._lock:
            candidates = [c for c in self._chunks if c.visit_id == visit_id]
        if not candidates or limit <= 0:
            return []

        query = np.asarray(embedding, dtype=np.float64)
        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        # Zero vectors score 0 rather than NaN
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(candidates)), where=norms > 0)

        order = np.argsort(-scores, kind="stable")[:limit]
        return [RetrievedChunk(text=candidates[i].text, similarity=float(scores[i])) for i in order]

    def __len__(self) -> int:
        return len(self._chunks)


class MongoChunkStore:
    """
    Chunk store backed by a MongoDB Atlas collection.

    Requires a vector search index named `index_name` on the `embedding`
    field with `visitId` declared as a filter field.
    """

    def __init__(self, database, collection_name: str, index_name: str):
        self._collection = database[collection_name]
        self._index_name = index_name

    async def insert(self, chunk: ContextChunk) -> None:
        try:
            await self._collection.insert_one(
                {"visitId": chunk.visit_id, "text": chunk.text, "embedding": list(chunk.embedding)}
            )
        except Exception as exc:
            raise CollaboratorUnavailableError(
                f"Chunk insert failed: {type(exc).__name__}"
            ) from exc

    async def search(self, visit_id: VisitId, embedding: Embedding, limit: int) -> List[RetrievedChunk]:
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self._index_name,
                    "path": "embedding",
                    "queryVector": list(embedding),
                    "numCandidates": max(limit * 20, 100),
                    "limit": limit,
                    "filter": {"visitId": visit_id},
                }
            },
            {"$project": {"_id": 0, "text": 1, "similarity": {"$meta": "vectorSearchScore"}}},
        ]
        try:
            docs = await self._collection.aggregate(pipeline).to_list(length=limit)
        except Exception as exc:
            raise CollaboratorUnavailableError(
                f"Vector search failed: {type(exc).__name__}"
            ) from exc
        return [RetrievedChunk(text=d.get("text", ""), similarity=d.get("similarity")) for d in docs]
