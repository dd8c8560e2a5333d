"""
Assignment Persistence Service

Writes finished runs to PostgreSQL through the shared asyncpg pool.

A scenario's assignment set is replaced wholesale: the previous rows are
deleted and the new set inserted inside one transaction, so readers see
either the old set or the new one, never a mix. Failed runs leave the
existing set untouched and only record their telemetry row.

Tables:
- account_assignment: one row per (scenario, account)
- assignment_run_telemetry: one row per run, successful or not
"""

import json
import logging
from typing import List

from book_engine.core.database import get_db_pool
from book_engine.models.schemas import (
    AccountAssignment,
    AssignmentRunResult,
    ScoreBreakdown,
)


logger = logging.getLogger(__name__)


# =============================================================================
# SQL
# =============================================================================

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS account_assignment (
        scenario_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        rep_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        rationale TEXT NOT NULL,
        score_breakdown JSONB NOT NULL,
        previous_owner_id TEXT,
        parent_id TEXT,
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        lock_type TEXT,
        is_strategic BOOLEAN NOT NULL DEFAULT FALSE,
        is_over_capacity BOOLEAN NOT NULL DEFAULT FALSE,
        assigned_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (scenario_id, account_id)
    );

    CREATE TABLE IF NOT EXISTS assignment_run_telemetry (
        id BIGSERIAL PRIMARY KEY,
        scenario_id TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        engine_type TEXT NOT NULL,
        solver_status TEXT NOT NULL,
        solve_time_ms DOUBLE PRECISION NOT NULL,
        warning_count INTEGER NOT NULL,
        error_message TEXT,
        telemetry JSONB NOT NULL,
        metrics JSONB NOT NULL,
        generated_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
"""

DELETE_ASSIGNMENTS_SQL = "DELETE FROM account_assignment WHERE scenario_id = $1"

INSERT_ASSIGNMENT_SQL = """
    INSERT INTO account_assignment (
        scenario_id, account_id, rep_id, stage, rationale, score_breakdown,
        previous_owner_id, parent_id, is_locked, lock_type,
        is_strategic, is_over_capacity, assigned_at
    )
    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13)
"""

INSERT_TELEMETRY_SQL = """
    INSERT INTO assignment_run_telemetry (
        scenario_id, success, engine_type, solver_status, solve_time_ms,
        warning_count, error_message, telemetry, metrics, generated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10)
"""

SELECT_ASSIGNMENTS_SQL = """
    SELECT
        account_id, rep_id, stage, rationale, score_breakdown,
        previous_owner_id, parent_id, is_locked, lock_type,
        is_strategic, is_over_capacity, assigned_at
    FROM account_assignment
    WHERE scenario_id = $1
    ORDER BY account_id
"""


# =============================================================================
# Writes
# =============================================================================


async def ensure_schema() -> None:
    """Create the assignment tables when they do not exist yet."""
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)


def assignment_row(scenario_id: str, assignment: AccountAssignment) -> tuple:
    """Positional parameters of INSERT_ASSIGNMENT_SQL for one assignment."""
    return (
        scenario_id,
        assignment.accountId,
        assignment.repId,
        assignment.stage.value,
        assignment.rationale,
        assignment.scoreBreakdown.model_dump_json(),
        assignment.previousOwnerId,
        assignment.parentId,
        assignment.isLocked,
        assignment.lockType.value if assignment.lockType else None,
        assignment.isStrategic,
        assignment.isOverCapacity,
        assignment.assignedAt,
    )


async def persist_run(result: AssignmentRunResult) -> int:
    """
    Persist a run: replace the scenario's assignment set and log telemetry.

    Args:
        result: Finished run; must carry a scenarioId

    Returns:
        Number of assignment rows written (0 for failed runs)

    Raises:
        ValueError: If the result has no scenarioId
        asyncpg.PostgresError: If database operations fail
    """
    if not result.scenarioId:
        raise ValueError("Cannot persist a run without a scenarioId")

    scenario_id = result.scenarioId
    rows = [assignment_row(scenario_id, a) for a in result.assignments] if result.success else []

    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if result.success:
                await conn.execute(DELETE_ASSIGNMENTS_SQL, scenario_id)
                if rows:
                    await conn.executemany(INSERT_ASSIGNMENT_SQL, rows)
            await conn.execute(
                INSERT_TELEMETRY_SQL,
                scenario_id,
                result.success,
                result.engineType.value,
                result.telemetry.solverStatus.value,
                result.telemetry.solveTimeMs,
                result.telemetry.warningCount,
                result.errorMessage,
                result.telemetry.model_dump_json(),
                result.metrics.model_dump_json(exclude={"repLoads"}),
                result.generatedAt,
            )

    logger.info(
        f"Persisted scenario {scenario_id}: {len(rows)} assignments "
        f"({'replaced' if result.success else 'failed run, set kept'})"
    )
    return len(rows)


# =============================================================================
# Reads
# =============================================================================


async def fetch_assignments(scenario_id: str) -> List[AccountAssignment]:
    """
    Load the persisted assignment set of a scenario, ordered by account id.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(SELECT_ASSIGNMENTS_SQL, scenario_id)

    assignments: List[AccountAssignment] = []
    for row in rows:
        breakdown = row['score_breakdown']
        if isinstance(breakdown, str):
            breakdown = json.loads(breakdown)
        assignments.append(AccountAssignment(
            accountId=row['account_id'],
            repId=row['rep_id'],
            stage=row['stage'],
            rationale=row['rationale'],
            scoreBreakdown=ScoreBreakdown.model_validate(breakdown),
            previousOwnerId=row['previous_owner_id'],
            parentId=row['parent_id'],
            isLocked=row['is_locked'],
            lockType=row['lock_type'],
            isStrategic=row['is_strategic'],
            isOverCapacity=row['is_over_capacity'],
            assignedAt=row['assigned_at'],
        ))
    return assignments


__all__ = [
    "SCHEMA_SQL",
    "ensure_schema",
    "assignment_row",
    "persist_run",
    "fetch_assignments",
]
