"""
Tests for the assignment API endpoints.

The engine runs for real in a few tests (with a scripted solver where CBC is
not needed); persistence is always patched at the router module.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from book_engine.api.assignments import _scenario_locks, scenario_lock
from book_engine.core.dependencies import get_settings_dependency
from book_engine.main import app, lifespan
from book_engine.models.enums import StageLabel
from book_engine.models.schemas import AccountAssignment, ScoreBreakdown
from book_engine.services.diagnostics import StructuralViolationError
from book_engine.services.engine import run_assignment


@pytest.fixture
def client(test_settings):
    app.dependency_overrides[get_settings_dependency] = lambda: test_settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def run_payload(base_accounts, base_reps):
    return {
        "scenarioId": "scn-1",
        "accounts": [a.model_dump(mode="json") for a in base_accounts],
        "reps": [r.model_dump(mode="json") for r in base_reps],
        "configuration": {"asOfDate": "2026-01-15", "solverTimeoutSeconds": 20},
    }


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self, client):
        body = client.get("/").json()

        assert body["name"] == "Book Assignment Engine API"
        assert body["docs"] == "/docs"


class TestRunEndpoint:

    def test_run_with_scripted_engine(self, client, run_payload, test_settings, failing_solver):
        def scripted_run(*args):
            accounts, reps, opportunities, config, scenario_id, _, cancel_event, settings = args
            return run_assignment(
                accounts, reps, opportunities, config, scenario_id, failing_solver, cancel_event, settings
            )

        with patch("book_engine.api.assignments.run_assignment", side_effect=scripted_run), \
                patch("book_engine.api.assignments.persist_run", new=AsyncMock()) as mock_persist:
            response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 200
        body = response.json()
        assert body["persisted"] is False
        assert body["persistedCount"] == 0
        assert body["result"]["success"] is True
        assert body["result"]["scenarioId"] == "scn-1"
        assert len(body["result"]["assignments"]) == 6
        mock_persist.assert_not_called()
        assert _scenario_locks == {}

    def test_failed_run_is_not_an_http_error(self, client, run_payload):
        run_payload["reps"] = [r for r in run_payload["reps"] if not r["isStrategic"]]

        response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["success"] is False
        assert result["assignments"] == []
        assert "strategic" in result["errorMessage"]

    def test_persist_flag_writes_result(
        self, client, run_payload, base_accounts, base_reps, failing_solver, test_settings
    ):
        run_payload["persist"] = True
        result = run_assignment(
            base_accounts, base_reps, scenario_id="scn-1", solver=failing_solver, settings=test_settings
        )

        with patch("book_engine.api.assignments.run_assignment", return_value=result), \
                patch("book_engine.api.assignments.persist_run", new=AsyncMock(return_value=0)) as mock_persist:
            response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 200
        assert response.json()["persisted"] is True
        mock_persist.assert_awaited_once_with(result)

    def test_structural_violation_maps_to_500(self, client, run_payload):
        error = StructuralViolationError(["account A1 has no assignment"])

        with patch("book_engine.api.assignments.run_assignment", side_effect=error):
            response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 500
        assert response.json()["detail"]["violations"] == ["account A1 has no assignment"]

    def test_unexpected_error_maps_to_500(self, client, run_payload):
        with patch("book_engine.api.assignments.run_assignment", side_effect=RuntimeError("boom")):
            response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 500
        assert "boom" in response.json()["detail"]

    @pytest.mark.parametrize("payload", [
        {"accounts": []},
        {"scenarioId": ""},
        {"scenarioId": "scn-1", "configuration": {"engine": "annealing"}},
        {"scenarioId": "scn-1", "accounts": [{"accountId": "A1", "arr": -5}]},
    ])
    def test_invalid_payload(self, client, payload):
        assert client.post("/assignments/run", json=payload).status_code == 422

    @pytest.mark.solver
    def test_run_through_cbc(self, client, run_payload):
        response = client.post("/assignments/run", json=run_payload)

        assert response.status_code == 200
        assignments = {a["accountId"]: a for a in response.json()["result"]["assignments"]}
        assert assignments["S1"]["repId"] == "R3"
        assert assignments["C1"]["repId"] == assignments["A1"]["repId"]


class TestGetAssignments:

    def test_returns_stored_set(self, client):
        stored = [
            AccountAssignment(
                accountId="A1",
                repId="R1",
                stage=StageLabel.P1_CONTINUITY_GEO,
                rationale="P1: Continuity + Geography - stays with current owner in region (score 0.80)",
                scoreBreakdown=ScoreBreakdown(continuity=0.6, geography=1.0, teamAlignment=0.8, weightedTotal=0.8),
                assignedAt="2026-01-15T00:00:00Z",
            )
        ]

        with patch("book_engine.api.assignments.fetch_assignments", new=AsyncMock(return_value=stored)):
            response = client.get("/assignments/scn-1")

        assert response.status_code == 200
        body = response.json()
        assert body["scenarioId"] == "scn-1"
        assert body["assignments"][0]["stage"] == "P1"

    def test_unknown_scenario_is_404(self, client):
        with patch("book_engine.api.assignments.fetch_assignments", new=AsyncMock(return_value=[])):
            response = client.get("/assignments/missing")

        assert response.status_code == 404

    def test_database_error_is_500(self, client):
        failing = AsyncMock(side_effect=RuntimeError("pool not initialized"))

        with patch("book_engine.api.assignments.fetch_assignments", new=failing):
            response = client.get("/assignments/scn-1")

        assert response.status_code == 500
        assert "pool not initialized" in response.json()["detail"]


class TestScenarioLock:
    """Per-scenario locks exist only while a run holds or awaits them."""

    @pytest.mark.asyncio
    async def test_entry_dropped_after_release(self):
        async with scenario_lock("scn-a"):
            assert "scn-a" in _scenario_locks

        assert "scn-a" not in _scenario_locks

    @pytest.mark.asyncio
    async def test_entry_kept_while_a_run_waits(self):
        order = []
        first_entered = asyncio.Event()
        release_first = asyncio.Event()

        async def first():
            async with scenario_lock("scn-b"):
                order.append("first")
                first_entered.set()
                await release_first.wait()

        async def second():
            async with scenario_lock("scn-b"):
                order.append("second")

        task_one = asyncio.create_task(first())
        await first_entered.wait()
        task_two = asyncio.create_task(second())
        await asyncio.sleep(0)

        assert "scn-b" in _scenario_locks
        release_first.set()
        await asyncio.gather(task_one, task_two)

        assert order == ["first", "second"]
        assert _scenario_locks == {}

    @pytest.mark.asyncio
    async def test_entry_dropped_when_run_fails(self):
        with pytest.raises(RuntimeError):
            async with scenario_lock("scn-c"):
                raise RuntimeError("engine crashed")

        assert "scn-c" not in _scenario_locks


class TestLifespan:

    @pytest.mark.asyncio
    async def test_startup_creates_tables(self):
        with patch("book_engine.main.init_db", new=AsyncMock()) as mock_init, \
                patch("book_engine.main.ensure_schema", new=AsyncMock()) as mock_schema, \
                patch("book_engine.main.close_db", new=AsyncMock()) as mock_close:
            async with lifespan(app):
                mock_init.assert_awaited_once()
                mock_schema.assert_awaited_once()
                mock_close.assert_not_awaited()

        mock_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_startup_survives_missing_database(self):
        failing = AsyncMock(side_effect=ValueError("DATABASE_URL is not configured"))

        with patch("book_engine.main.init_db", new=failing), \
                patch("book_engine.main.ensure_schema", new=AsyncMock()) as mock_schema, \
                patch("book_engine.main.close_db", new=AsyncMock()):
            async with lifespan(app):
                pass

        mock_schema.assert_not_awaited()
