"""
Pytest Configuration and Shared Fixtures for Book Assignment Engine Tests.

This module provides fixtures and configuration for all tests, supporting:
- Async test execution with pytest-asyncio (strict mode, explicit marks)
- Mock database pool fixtures for testing persistence without a real database
- A scripted solver backend for exercising solver-failure paths without CBC
- A small reference scenario (three reps, five accounts, one child) whose
  waterfall outcome is fully predictable
- A context factory that prepares an EngineContext the same way a run does

Scenario Layout (ARR):
    R1 North East / MM        A1 Boston 100k (+ child C1 20k) owner R1
    R2 West / MM              A2 San Francisco 100k owner R2
    R3 North East / ENT       A3 Los Angeles 50k owner R1
       (strategic)            A4 New York 50k unowned
                              S1 strategic 500k owner R3

Normal pool: 320k across R1 and R2 -> target 160k, max band 176k.
"""

import io
import threading
from datetime import date
from typing import Callable, Dict, Generator, Iterable, List, Optional
from unittest.mock import AsyncMock, Mock, patch

import pandas as pd
import pytest

from book_engine.core.config import Settings
from book_engine.models.enums import SolverStatus
from book_engine.models.schemas import (
    Account,
    AssignmentConfiguration,
    Opportunity,
    Representative,
)
from book_engine.services.configuration import validate_configuration
from book_engine.services.context import EngineContext
from book_engine.services.normalization import NormalizedScenario, normalize_scenario
from book_engine.services.reference_tables import ReferenceIndex, build_reference_index
from book_engine.services.solver import LinearProgram, PulpCbcSolver, SolverResult
from book_engine.services.stability_locks import evaluate_stability_locks
from book_engine.services.thresholds import calculate_thresholds


AS_OF = date(2026, 1, 15)


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Register custom markers.

    - slow: long-running tests (deselect with -m "not slow")
    - integration: tests requiring a live PostgreSQL database
    - solver: tests that call the bundled CBC solver through PuLP
    """
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )
    config.addinivalue_line(
        'markers',
        'integration: marks tests requiring a live PostgreSQL database'
    )
    config.addinivalue_line(
        'markers',
        'solver: marks tests that run the CBC solver'
    )


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Create a mock asyncpg connection pool.

    pool.acquire() and conn.transaction() both return async context
    managers; the connection exposes execute, executemany, fetch, fetchrow,
    and fetchval.

    Usage:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.fetch.return_value = [...]
    """
    pool = AsyncMock()

    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=None)
    conn.executemany = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    transaction_context = AsyncMock()
    transaction_context.__aenter__ = AsyncMock(return_value=None)
    transaction_context.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = Mock(return_value=transaction_context)

    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    pool.close = AsyncMock(return_value=None)

    return pool


@pytest.fixture
def mock_database(mock_db_pool: AsyncMock) -> Generator[AsyncMock, None, None]:
    """
    Patch the persistence service to use the mock pool.

    The patch targets the name imported into the persistence module, not the
    source in core.database.
    """
    with patch(
        'book_engine.services.persistence.get_db_pool',
        new=AsyncMock(return_value=mock_db_pool),
    ):
        yield mock_db_pool


# ============================================================
# SETTINGS / CONFIGURATION FIXTURES
# ============================================================

@pytest.fixture
def test_settings() -> Settings:
    """Service settings without a database and with a short solver limit."""
    return Settings(
        database_url=None,
        default_engine='waterfall',
        default_solver_timeout_seconds=20.0,
        solver_threads=1,
        solver_message=False,
    )


@pytest.fixture
def make_config() -> Callable[..., AssignmentConfiguration]:
    """Factory for run configurations pinned to a fixed as-of date."""
    def _make(**overrides) -> AssignmentConfiguration:
        values = {"asOfDate": AS_OF, "solverTimeoutSeconds": 20.0}
        values.update(overrides)
        return AssignmentConfiguration(**values)
    return _make


@pytest.fixture
def reference_index() -> ReferenceIndex:
    """Index over the reference tables shipped with the package."""
    return build_reference_index()


# ============================================================
# SOLVER FIXTURES
# ============================================================

class ScriptedSolver:
    """
    SolverBackend returning a fixed result for every program.

    Records every program it receives so tests can inspect what was built.
    """

    def __init__(self, status: SolverStatus, values: Optional[Dict[str, float]] = None):
        self.status = status
        self.values = values or {}
        self.programs: List[LinearProgram] = []

    def solve(
        self,
        program: LinearProgram,
        timeout_seconds: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> SolverResult:
        self.programs.append(program)
        return SolverResult(status=self.status, values=dict(self.values), message="scripted")


@pytest.fixture
def failing_solver() -> ScriptedSolver:
    """Solver that always ends in error without a solution."""
    return ScriptedSolver(SolverStatus.ERROR)


@pytest.fixture
def scripted_solver() -> Callable[..., ScriptedSolver]:
    """Factory for solvers that return a chosen status and variable values."""
    return ScriptedSolver


# ============================================================
# SCENARIO FIXTURES
# ============================================================

@pytest.fixture
def base_reps() -> List[Representative]:
    return [
        Representative(repId="R1", name="Riley North", region="North East", teamTier="MM"),
        Representative(repId="R2", name="Casey West", region="West", teamTier="MM"),
        Representative(
            repId="R3", name="Morgan Key", region="North East", teamTier="ENT", isStrategic=True
        ),
    ]


@pytest.fixture
def base_accounts() -> List[Account]:
    return [
        Account(accountId="A1", name="Acme", ownerId="R1", arr=100_000, territory="Boston", employees=800),
        Account(accountId="A2", name="Bolt", ownerId="R2", arr=100_000, territory="San Francisco",
                employees=800),
        Account(accountId="A3", name="Crest", ownerId="R1", arr=50_000, territory="Los Angeles"),
        Account(accountId="A4", name="Dune", arr=50_000, territory="New York", employees=800),
        Account(accountId="C1", name="Acme Labs", parentId="A1", arr=20_000, territory="Boston"),
        Account(accountId="S1", name="Summit", ownerId="R3", arr=500_000, territory="Boston",
                employees=5000, isStrategic=True),
    ]


@pytest.fixture
def normalize(reference_index: ReferenceIndex) -> Callable[..., NormalizedScenario]:
    """Normalize raw records against the shipped reference tables."""
    def _normalize(
        accounts: Iterable[Account],
        reps: Iterable[Representative],
        opportunities: Iterable[Opportunity] = (),
    ) -> NormalizedScenario:
        return normalize_scenario(accounts, reps, opportunities, reference_index)
    return _normalize


@pytest.fixture
def make_context(reference_index: ReferenceIndex) -> Callable[..., EngineContext]:
    """
    Prepare an EngineContext the way run_assignment() does.

    Defaults to the CBC backend; pass solver= to script solver outcomes.
    """
    def _make(
        accounts: Iterable[Account],
        reps: Iterable[Representative],
        config: Optional[AssignmentConfiguration] = None,
        opportunities: Iterable[Opportunity] = (),
        solver=None,
    ) -> EngineContext:
        config, _ = validate_configuration(
            config or AssignmentConfiguration(asOfDate=AS_OF, solverTimeoutSeconds=20.0)
        )
        scenario = normalize_scenario(accounts, reps, opportunities, reference_index)
        units = sorted(
            (a for a in scenario.accounts.values() if a.is_assignment_unit),
            key=lambda a: a.account_id,
        )
        children = sorted(
            (a for a in scenario.accounts.values() if not a.is_assignment_unit),
            key=lambda a: a.account_id,
        )
        locks = evaluate_stability_locks(units, scenario.reps, config, config.asOfDate or AS_OF)
        normal_rep_count = sum(
            1 for rep in scenario.reps.values() if rep.is_assignable and not rep.is_strategic
        )
        thresholds = calculate_thresholds(
            (u for u in units if not u.is_strategic), normal_rep_count, config, config.scope
        )
        return EngineContext(
            config=config,
            index=reference_index,
            units=units,
            children=children,
            reps=scenario.reps,
            locks=locks,
            thresholds=thresholds,
            solver=solver or PulpCbcSolver(threads=1),
        )
    return _make


# ============================================================
# FILE FIXTURES
# ============================================================

def create_csv_buffer(df: pd.DataFrame) -> io.StringIO:
    """Serialize a DataFrame to an in-memory CSV file."""
    buffer = io.StringIO()
    df.to_csv(buffer, index=False)
    buffer.seek(0)
    return buffer


@pytest.fixture
def accounts_frame() -> pd.DataFrame:
    """Account export with human-style headers, as a CRM would produce it."""
    return pd.DataFrame({
        "Account ID": ["A1", "A2", "A3", "C1"],
        "Account Name": ["Acme", "Bolt", "Crest", "Acme Labs"],
        "Parent ID": [None, None, None, "A1"],
        "Owner ID": ["R1", "R2", "R1", None],
        "ARR": ["100000", "100000", "50000", "20000"],
        "Territory": ["Boston", "San Francisco", "Los Angeles", "Boston"],
        "Employees": ["800", "800", "", "120"],
        "Is Strategic": ["no", "no", "no", "no"],
        "Renewal Date": ["2026-06-30", "", "", ""],
    })


@pytest.fixture
def reps_frame() -> pd.DataFrame:
    return pd.DataFrame({
        "rep_id": ["R1", "R2"],
        "name": ["Riley North", "Casey West"],
        "region": ["North East", "West"],
        "team_tier": ["MM", "MM"],
        "is_active": ["true", "true"],
    })


@pytest.fixture
def csv_buffer() -> Callable[[pd.DataFrame], io.StringIO]:
    return create_csv_buffer
