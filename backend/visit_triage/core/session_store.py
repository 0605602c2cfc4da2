"""
Visit Triage - Session Store

Holds the single session document per visit: message history, latest
analysis and latest structured record.

Consistency:
    - Saves replace messages/analysis/structured data wholesale (upsert by visit id)
    - Every save bumps `version`; a caller that passes `expected_version`
      gets VersionConflictError instead of overwriting a newer write
    - Omitting `expected_version` keeps last-write-wins behaviour
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from visit_triage.config import Settings
from visit_triage.core.exceptions import (
    MalformedIdentifierError,
    PersistenceError,
    SessionNotFoundError,
    VersionConflictError,
)
from visit_triage.core.types import Message, VisitId, VisitSession, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class SessionStore(Protocol):
    """Protocol for visit session storage."""

    @abstractmethod
    async def save(
        self,
        visit_id: VisitId,
        messages: List[Message],
        analysis: Optional[str],
        structured_data: Optional[Dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> VisitSession:
        """
        Upsert the session for `visit_id` and return the stored state.

        Args:
            expected_version: Version the caller last read; 0 means "must not
                exist yet". None disables the check.

        Raises:
            VersionConflictError: If `expected_version` does not match
            PersistenceError: If the backend fails
        """
        ...

    @abstractmethod
    async def get_latest_by_visit_id(self, visit_id: VisitId) -> Optional[VisitSession]:
        """Most recently updated session for the visit, or None."""
        ...

    @abstractmethod
    async def get_by_id(self, session_id: str) -> VisitSession:
        """
        Load a session by primary key.

        Raises:
            MalformedIdentifierError: If `session_id` is not a valid id
            SessionNotFoundError: If no session has that id
        """
        ...


def check_session_id(session_id: str) -> None:
    """Session ids are ObjectId hex strings in every backend."""
    if not isinstance(session_id, str) or not ObjectId.is_valid(session_id):
        raise MalformedIdentifierError("Malformed chat id", details={"field": "chatId"})


def _conflict(visit_id: VisitId, expected: int, actual: Optional[int]) -> VersionConflictError:
    return VersionConflictError(
        "Session was modified by another writer",
        details={"expected_version": expected, "current_version": actual},
    )


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemorySessionStore:
    """
    In-process session store. Lost on restart.

    Returned sessions are copies; mutating one does not change stored state.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._by_visit: Dict[str, VisitSession] = {}
        self._by_id: Dict[str, VisitSession] = {}
        logger.info("InMemorySessionStore initialized")

    async def save(
        self,
        visit_id: VisitId,
        messages: List[Message],
        analysis: Optional[str],
        structured_data: Optional[Dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> VisitSession:
        async with self._lock:
            existing = self._by_visit.get(visit_id)

            if expected_version is not None:
                current = existing.version if existing else 0
                if current != expected_version:
                    raise _conflict(visit_id, expected_version, current if existing else None)

            now = utc_now()
            if existing is None:
                session = VisitSession(
                    id=str(ObjectId()),
                    visit_id=visit_id,
                    created_at=now,
                    updated_at=now,
                    version=1,
                )
                self._by_visit[visit_id] = session
                self._by_id[session.id] = session
            else:
                session = existing
                session.version += 1
                session.updated_at = now

            session.messages = list(messages)
            session.analysis = analysis
            session.structured_data = copy.deepcopy(structured_data)
            return copy.deepcopy(session)

    async def get_latest_by_visit_id(self, visit_id: VisitId) -> Optional[VisitSession]:
        async with self._lock:
            session = self._by_visit.get(visit_id)
            return copy.deepcopy(session) if session else None

    async def get_by_id(self, session_id: str) -> VisitSession:
        check_session_id(session_id)
        async with self._lock:
            session = self._by_id.get(session_id)
            if session is None:
                raise SessionNotFoundError("Chat not found", details={"chatId": session_id})
            return copy.deepcopy(session)


# =============================================================================
# MongoDB Implementation
# =============================================================================

class MongoSessionStore:
    """
    Session store backed by a MongoDB collection via motor.

    Relies on a unique index on `visitId` (created by `ensure_indexes`) so
    that concurrent first saves cannot create two documents for one visit.
    """

    def __init__(self, database, collection_name: str):
        self._collection = database[collection_name]

    async def ensure_indexes(self) -> None:
        try:
            await self._collection.create_index("visitId", unique=True)
        except PyMongoError as exc:
            raise PersistenceError(f"Index creation failed: {type(exc).__name__}") from exc

    async def save(
        self,
        visit_id: VisitId,
        messages: List[Message],
        analysis: Optional[str],
        structured_data: Optional[Dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> VisitSession:
        now = utc_now()
        fields = {
            "messages": [m.to_dict() for m in messages],
            "analysis": analysis,
            "structuredData": structured_data,
            "updatedAt": now,
        }

        try:
            if expected_version == 0:
                doc = {"visitId": visit_id, "createdAt": now, "version": 1, **fields}
                try:
                    result = await self._collection.insert_one(doc)
                except DuplicateKeyError as exc:
                    current = await self._collection.find_one({"visitId": visit_id}, {"version": 1})
                    raise _conflict(visit_id, 0, current.get("version") if current else None) from exc
                doc["_id"] = result.inserted_id
                return _session_from_doc(doc)

            query: Dict[str, Any] = {"visitId": visit_id}
            if expected_version is not None:
                query["version"] = expected_version

            doc = await self._collection.find_one_and_update(
                query,
                {
                    "$set": fields,
                    "$inc": {"version": 1},
                    "$setOnInsert": {"createdAt": now},
                },
                upsert=expected_version is None,
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                current = await self._collection.find_one({"visitId": visit_id}, {"version": 1})
                raise _conflict(visit_id, expected_version, current.get("version") if current else None)
            return _session_from_doc(doc)

        except PyMongoError as exc:
            raise PersistenceError(
                f"Session save failed: {type(exc).__name__}",
                details={"collection": self._collection.name},
            ) from exc

    async def get_latest_by_visit_id(self, visit_id: VisitId) -> Optional[VisitSession]:
        try:
            doc = await self._collection.find_one({"visitId": visit_id}, sort=[("updatedAt", -1)])
        except PyMongoError as exc:
            raise PersistenceError(f"Session lookup failed: {type(exc).__name__}") from exc
        return _session_from_doc(doc) if doc else None

    async def get_by_id(self, session_id: str) -> VisitSession:
        check_session_id(session_id)
        try:
            doc = await self._collection.find_one({"_id": ObjectId(session_id)})
        except PyMongoError as exc:
            raise PersistenceError(f"Session lookup failed: {type(exc).__name__}") from exc
        if doc is None:
            raise SessionNotFoundError("Chat not found", details={"chatId": session_id})
        return _session_from_doc(doc)


def _session_from_doc(doc: Dict[str, Any]) -> VisitSession:
    return VisitSession(
        id=str(doc["_id"]),
        visit_id=VisitId(doc["visitId"]),
        messages=[Message.from_dict(m) for m in doc.get("messages") or []],
        analysis=doc.get("analysis"),
        structured_data=doc.get("structuredData"),
        created_at=doc.get("createdAt") or doc.get("updatedAt") or utc_now(),
        updated_at=doc.get("updatedAt") or utc_now(),
        version=int(doc.get("version", 1)),
    )


# =============================================================================
# Factory Function
# =============================================================================

def create_session_store(settings: Settings, database=None) -> SessionStore:
    """
    Create a session store based on settings.

    Args:
        settings: Application settings
        database: motor database handle, required when storage_backend="mongo"
    """
    if settings.storage_backend.lower() == "mongo" and database is not None:
        logger.info("Creating MongoSessionStore: collection=%s", settings.session_collection)
        return MongoSessionStore(database, settings.session_collection)

    logger.info("Creating InMemorySessionStore")
    return InMemorySessionStore()
