"""
Visit Triage - Stage Fault Policies

Each pipeline stage is either BEST_EFFORT (a collaborator failure degrades
the stage's output and the request continues) or FAIL_FAST (the failure
propagates to the caller). The policy is declared here, per stage, rather
than being implied by where try/except blocks happen to sit.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Dict, TypeVar

from visit_triage.core.exceptions import CollaboratorTimeoutError

T = TypeVar("T")


class FaultPolicy(str, Enum):
    """How a stage reacts to a collaborator failure."""
    BEST_EFFORT = "best_effort"
    FAIL_FAST = "fail_fast"


class Stage(str, Enum):
    """Named pipeline stages."""
    RETRIEVAL = "retrieval"
    INDEXING = "indexing"
    RESPONSE_GENERATION = "response_generation"
    TRANSLATION = "translation"
    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    CLASSIFICATION = "classification"
    FOLLOW_UP = "follow_up"
    PERSISTENCE = "persistence"


STAGE_POLICIES: Dict[Stage, FaultPolicy] = {
    Stage.RETRIEVAL: FaultPolicy.BEST_EFFORT,
    Stage.INDEXING: FaultPolicy.BEST_EFFORT,  # per chunk
    Stage.TRANSLATION: FaultPolicy.BEST_EFFORT,
    Stage.CLASSIFICATION: FaultPolicy.BEST_EFFORT,
    Stage.RESPONSE_GENERATION: FaultPolicy.FAIL_FAST,
    Stage.EXTRACTION: FaultPolicy.FAIL_FAST,
    Stage.ANALYSIS: FaultPolicy.FAIL_FAST,
    Stage.FOLLOW_UP: FaultPolicy.FAIL_FAST,
    Stage.PERSISTENCE: FaultPolicy.FAIL_FAST,
}


def policy_for(stage: Stage) -> FaultPolicy:
    return STAGE_POLICIES[stage]


async def with_timeout(awaitable: Awaitable[T], timeout_seconds: float, what: str) -> T:
    """
    Await a collaborator call with a bounded timeout.

    On expiry the inner call is cancelled and CollaboratorTimeoutError is raised.
    A non-positive timeout disables the bound.

    Args:
        awaitable: The collaborator coroutine
        timeout_seconds: Upper bound in seconds
        what: Collaborator name for the error message
    """
    if timeout_seconds is None or timeout_seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise CollaboratorTimeoutError(
            f"{what} did not respond within {timeout_seconds:.1f}s",
            details={"collaborator": what, "timeout_seconds": timeout_seconds},
        ) from exc
