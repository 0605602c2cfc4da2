"""
Visit Triage - Alert Store

Append-only storage of triage alerts. There is no update or delete path:
an alert, once written, is the audit record of what the classifier said
about the conversation at that moment.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from bson import ObjectId
from pymongo.errors import PyMongoError

from visit_triage.config import Settings
from visit_triage.core.exceptions import PersistenceError
from visit_triage.core.types import (
    Alert,
    AlertGroup,
    Message,
    Severity,
    TriageDecision,
    VisitId,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class AlertStore(Protocol):
    """Protocol for alert storage."""

    @abstractmethod
    async def create(
        self,
        visit_id: VisitId,
        decision: TriageDecision,
        triggering_messages: Sequence[Message],
    ) -> Alert:
        """
        Persist a new alert for an alerting decision.

        Raises:
            ValueError: If `decision.alert` is False
            PersistenceError: If the backend fails
        """
        ...

    @abstractmethod
    async def latest_for_visit(self, visit_id: VisitId) -> Optional[Alert]:
        """Most recent alert for the visit, or None."""
        ...

    @abstractmethod
    async def list_all(self) -> List[Alert]:
        """Every alert, most recent first."""
        ...


def build_alert(
    visit_id: VisitId,
    decision: TriageDecision,
    triggering_messages: Sequence[Message],
) -> Alert:
    if not decision.alert:
        raise ValueError("Refusing to persist an alert for a non-alerting decision")
    return Alert(
        id=str(ObjectId()),
        visit_id=visit_id,
        label=decision.label,
        severity=decision.severity,
        reason=decision.reason,
        recommended_action=decision.recommended_action,
        triggering_messages=tuple(triggering_messages),
        created_at=utc_now(),
        raw_inference=dict(decision.raw_inference or decision.to_dict()),
    )


def group_alerts(alerts: Sequence[Alert]) -> List[AlertGroup]:
    """
    Group alerts by visit for the dashboard.

    Each group carries its count, highest severity by rank (high > medium > low),
    latest creation time, and its alerts newest first. Groups are ordered by
    latest alert, newest first.
    """
    by_visit: Dict[str, List[Alert]] = {}
    for alert in alerts:
        by_visit.setdefault(alert.visit_id, []).append(alert)

    groups = []
    for visit_id, visit_alerts in by_visit.items():
        visit_alerts.sort(key=lambda a: a.created_at, reverse=True)
        groups.append(
            AlertGroup(
                visit_id=VisitId(visit_id),
                total_alerts=len(visit_alerts),
                highest_severity=max((a.severity for a in visit_alerts), key=lambda s: s.rank),
                latest_alert_date=visit_alerts[0].created_at,
                alerts=visit_alerts,
            )
        )

    groups.sort(key=lambda g: g.latest_alert_date, reverse=True)
    return groups


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryAlertStore:
    """In-process alert store. Lost on restart."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._alerts: List[Alert] = []
        logger.info("InMemoryAlertStore initialized")

    async def create(
        self,
        visit_id: VisitId,
        decision: TriageDecision,
        triggering_messages: Sequence[Message],
    ) -> Alert:
        alert = build_alert(visit_id, decision, triggering_messages)
        async with self._lock:
            self._alerts.append(alert)
        return alert

    async def latest_for_visit(self, visit_id: VisitId) -> Optional[Alert]:
        async with self._lock:
            matching = [a for a in self._alerts if a.visit_id == visit_id]
        if not matching:
            return None
        return max(reversed(matching), key=lambda a: a.created_at)

    async def list_all(self) -> List[Alert]:
        async with self._lock:
            alerts = list(self._alerts)
        # Stable sort keeps insertion order for identical timestamps; reverse it
        return sorted(reversed(alerts), key=lambda a: a.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._alerts)


# =============================================================================
# MongoDB Implementation
# =============================================================================

class MongoAlertStore:
    """Alert store backed by a MongoDB collection via motor."""

    def __init__(self, database, collection_name: str):
        self._collection = database[collection_name]

    async def create(
        self,
        visit_id: VisitId,
        decision: TriageDecision,
        triggering_messages: Sequence[Message],
    ) -> Alert:
        alert = build_alert(visit_id, decision, triggering_messages)
        doc = {
            "_id": ObjectId(alert.id),
            "visitId": alert.visit_id,
            "label": alert.label,
            "severity": alert.severity.value,
            "reason": alert.reason,
            "recommendedAction": alert.recommended_action,
            "triggeringMessages": [m.to_dict() for m in alert.triggering_messages],
            "createdAt": alert.created_at,
            "rawInference": alert.raw_inference,
        }
        try:
            await self._collection.insert_one(doc)
        except PyMongoError as exc:
            raise PersistenceError(
                f"Alert insert failed: {type(exc).__name__}",
                details={"collection": self._collection.name},
            ) from exc
        return alert

    async def latest_for_visit(self, visit_id: VisitId) -> Optional[Alert]:
        try:
            doc = await self._collection.find_one({"visitId": visit_id}, sort=[("createdAt", -1)])
        except PyMongoError as exc:
            raise PersistenceError(f"Alert lookup failed: {type(exc).__name__}") from exc
        return _alert_from_doc(doc) if doc else None

    async def list_all(self) -> List[Alert]:
        try:
            docs = await self._collection.find({}).sort("createdAt", -1).to_list(length=None)
        except PyMongoError as exc:
            raise PersistenceError(f"Alert listing failed: {type(exc).__name__}") from exc
        return [_alert_from_doc(d) for d in docs]


def _alert_from_doc(doc: Dict[str, Any]) -> Alert:
    return Alert(
        id=str(doc["_id"]),
        visit_id=VisitId(doc["visitId"]),
        label=doc.get("label", ""),
        severity=Severity(doc.get("severity", "low")),
        reason=doc.get("reason", ""),
        recommended_action=doc.get("recommendedAction", ""),
        triggering_messages=tuple(Message.from_dict(m) for m in doc.get("triggeringMessages") or []),
        created_at=doc["createdAt"],
        raw_inference=doc.get("rawInference") or {},
    )


# =============================================================================
# Factory Function
# =============================================================================

def create_alert_store(settings: Settings, database=None) -> AlertStore:
    """
    Create an alert store based on settings.

    Args:
        settings: Application settings
        database: motor database handle, required when storage_backend="mongo"
    """
    if settings.storage_backend.lower() == "mongo" and database is not None:
        logger.info("Creating MongoAlertStore: collection=%s", settings.alert_collection)
        return MongoAlertStore(database, settings.alert_collection)

    logger.info("Creating InMemoryAlertStore")
    return InMemoryAlertStore()
