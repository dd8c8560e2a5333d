"""
FastAPI router module for assignment runs.

Implements POST /assignments/run (run the engine for one scenario, optionally
persisting the result) and GET /assignments/{scenario_id} (the persisted
assignment set of a scenario).

Runs for the same scenario are serialized with a per-scenario asyncio lock;
the CPU-bound engine runs in a worker thread so the event loop stays free.
A client disconnect sets the run's cancel event, which makes the solver
return its best-known result early.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from book_engine.core.dependencies import SettingsDep
from book_engine.models.schemas import (
    Account,
    AccountAssignment,
    AssignmentConfiguration,
    AssignmentRunResult,
    Opportunity,
    Representative,
)
from book_engine.services.diagnostics import StructuralViolationError
from book_engine.services.engine import run_assignment
from book_engine.services.persistence import fetch_assignments, persist_run


# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter()

_scenario_locks: Dict[str, asyncio.Lock] = {}
# Holders plus waiters per scenario; the lock entry goes away when it drops to zero
_scenario_users: Dict[str, int] = {}


@asynccontextmanager
async def scenario_lock(scenario_id: str) -> AsyncIterator[None]:
    """Serialize runs of one scenario, dropping the lock once nobody needs it."""
    lock = _scenario_locks.setdefault(scenario_id, asyncio.Lock())
    _scenario_users[scenario_id] = _scenario_users.get(scenario_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _scenario_users[scenario_id] -= 1
        if not _scenario_users[scenario_id]:
            del _scenario_users[scenario_id]
            del _scenario_locks[scenario_id]


# =============================================================================
# Request / Response Models
# =============================================================================


class RunRequest(BaseModel):
    """Everything needed to run one scenario."""
    scenarioId: str = Field(..., min_length=1, description="Scenario identifier")
    accounts: List[Account] = Field(default_factory=list)
    reps: List[Representative] = Field(default_factory=list)
    opportunities: List[Opportunity] = Field(default_factory=list)
    configuration: AssignmentConfiguration = Field(default_factory=AssignmentConfiguration)
    persist: bool = Field(
        default=False,
        description="Replace the scenario's stored assignment set with this run's result"
    )


class RunResponse(BaseModel):
    """Run result plus what was written to storage."""
    result: AssignmentRunResult
    persisted: bool = False
    persistedCount: int = Field(default=0, ge=0)


class AssignmentListResponse(BaseModel):
    """Persisted assignment set of a scenario."""
    scenarioId: str
    assignments: List[AccountAssignment] = Field(default_factory=list)


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/run", response_model=RunResponse)
async def run_scenario(request: RunRequest, settings: SettingsDep) -> RunResponse:
    """
    Run the assignment engine for a scenario.

    A failed run (infeasible, no eligible reps) is still a 200 response with
    result.success=False; only internal errors map to 500.

    Raises:
        HTTPException(500) on a structural violation or unexpected error
    """
    cancel_event = threading.Event()

    try:
        async with scenario_lock(request.scenarioId):
            try:
                result = await asyncio.to_thread(
                    run_assignment,
                    request.accounts,
                    request.reps,
                    request.opportunities,
                    request.configuration,
                    request.scenarioId,
                    None,
                    cancel_event,
                    settings,
                )
            except asyncio.CancelledError:
                cancel_event.set()
                logger.warning(f"Run for scenario {request.scenarioId} cancelled by client")
                raise

            persisted_count = 0
            if request.persist:
                persisted_count = await persist_run(result)

        return RunResponse(
            result=result,
            persisted=request.persist,
            persistedCount=persisted_count,
        )

    except StructuralViolationError as e:
        logger.error(f"Structural violation in scenario {request.scenarioId}: {e.violations}")
        raise HTTPException(
            status_code=500,
            detail={"message": str(e), "violations": e.violations},
        )
    except Exception as e:
        logger.exception(f"Error running assignment for scenario {request.scenarioId}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to run assignment: {str(e)}",
        )


@router.get("/{scenario_id}", response_model=AssignmentListResponse)
async def get_assignments(scenario_id: str) -> AssignmentListResponse:
    """
    Get the persisted assignment set of a scenario.

    Raises:
        HTTPException(404) if the scenario has no stored assignments
    """
    try:
        assignments = await fetch_assignments(scenario_id)
        if not assignments:
            raise HTTPException(
                status_code=404,
                detail=f"No assignments stored for scenario {scenario_id}",
            )
        logger.info(f"Retrieved {len(assignments)} assignments for scenario {scenario_id}")
        return AssignmentListResponse(scenarioId=scenario_id, assignments=assignments)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error retrieving assignments for scenario {scenario_id}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to retrieve assignments: {str(e)}",
        )


__all__ = [
    "router",
    "scenario_lock",
    "RunRequest",
    "RunResponse",
    "AssignmentListResponse",
]
