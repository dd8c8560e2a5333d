"""
Tests for assignment persistence.

The asyncpg pool is mocked (see mock_database in conftest); the tests check
which statements run, in which order, and with which parameters.
"""

from datetime import datetime, timezone

import pytest

from book_engine.models.enums import LockType, RegionClass, StageLabel
from book_engine.models.schemas import ScoreBreakdown
from book_engine.services.engine import run_assignment
from book_engine.services.persistence import (
    DELETE_ASSIGNMENTS_SQL,
    INSERT_ASSIGNMENT_SQL,
    INSERT_TELEMETRY_SQL,
    SCHEMA_SQL,
    assignment_row,
    ensure_schema,
    fetch_assignments,
    persist_run,
)


@pytest.fixture
def successful_run(base_accounts, base_reps, make_config, test_settings, failing_solver):
    return run_assignment(
        base_accounts, base_reps, config=make_config(), scenario_id="scn-1",
        solver=failing_solver, settings=test_settings,
    )


@pytest.fixture
def failed_run(base_accounts, base_reps, make_config, test_settings):
    reps = [r for r in base_reps if not r.isStrategic]
    return run_assignment(
        base_accounts, reps, config=make_config(), scenario_id="scn-1", settings=test_settings
    )


def _connection(pool):
    return pool.acquire.return_value.__aenter__.return_value


class TestAssignmentRow:

    def test_row_matches_insert_columns(self, successful_run):
        child = next(a for a in successful_run.assignments if a.accountId == "C1")
        row = assignment_row("scn-1", child)

        assert len(row) == 13
        assert row[:4] == ("scn-1", "C1", "R1", "CHILD")
        assert row[7] == "A1"
        assert row[9] is None
        assert ScoreBreakdown.model_validate_json(row[5]) == child.scoreBreakdown


class TestPersistRun:

    @pytest.mark.asyncio
    async def test_successful_run_replaces_set(self, mock_database, successful_run):
        conn = _connection(mock_database)

        written = await persist_run(successful_run)

        assert written == 6
        conn.transaction.assert_called_once()
        statements = [call.args[0] for call in conn.execute.call_args_list]
        assert statements == [DELETE_ASSIGNMENTS_SQL, INSERT_TELEMETRY_SQL]
        assert conn.execute.call_args_list[0].args[1] == "scn-1"

        sql, rows = conn.executemany.call_args.args
        assert sql == INSERT_ASSIGNMENT_SQL
        assert [row[1] for row in rows] == ["A1", "A2", "A3", "A4", "C1", "S1"]

        telemetry_args = conn.execute.call_args_list[1].args
        assert telemetry_args[1:5] == ("scn-1", True, "waterfall", "error")

    @pytest.mark.asyncio
    async def test_failed_run_keeps_existing_set(self, mock_database, failed_run):
        conn = _connection(mock_database)

        written = await persist_run(failed_run)

        assert written == 0
        conn.executemany.assert_not_called()
        statements = [call.args[0] for call in conn.execute.call_args_list]
        assert statements == [INSERT_TELEMETRY_SQL]
        args = conn.execute.call_args.args
        assert args[2] is False
        assert "strategic" in args[7]

    @pytest.mark.asyncio
    async def test_scenario_id_is_required(self, mock_database, successful_run):
        result = successful_run.model_copy(update={"scenarioId": None})

        with pytest.raises(ValueError, match="scenarioId"):
            await persist_run(result)

        mock_database.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_ensure_schema(self, mock_database):
        await ensure_schema()

        _connection(mock_database).execute.assert_called_once_with(SCHEMA_SQL)


class TestFetchAssignments:

    @staticmethod
    def _row(breakdown):
        return {
            "account_id": "A3",
            "rep_id": "R1",
            "stage": "P0",
            "rationale": "P0: Stability lock (manual_lock) - Manual lock",
            "score_breakdown": breakdown,
            "previous_owner_id": "R1",
            "parent_id": None,
            "is_locked": True,
            "lock_type": "manual_lock",
            "is_strategic": False,
            "is_over_capacity": False,
            "assigned_at": datetime(2026, 1, 15, tzinfo=timezone.utc),
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("as_text", [True, False])
    async def test_rows_are_parsed(self, mock_database, as_text):
        breakdown = ScoreBreakdown(
            continuity=0.8, geography=0.2, teamAlignment=0.5, weightedTotal=0.5,
            regionClass=RegionClass.GLOBAL,
        )
        stored = breakdown.model_dump_json() if as_text else breakdown.model_dump(mode="json")
        conn = _connection(mock_database)
        conn.fetch.return_value = [self._row(stored)]

        assignments = await fetch_assignments("scn-1")

        assert len(assignments) == 1
        assignment = assignments[0]
        assert assignment.stage == StageLabel.P0_HOLDOVER
        assert assignment.lockType == LockType.MANUAL_LOCK
        assert assignment.scoreBreakdown == breakdown
        assert conn.fetch.call_args.args[1] == "scn-1"

    @pytest.mark.asyncio
    async def test_empty_scenario(self, mock_database):
        assert await fetch_assignments("missing") == []
