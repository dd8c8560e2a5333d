"""
Tests for the solver boundary.

Status mapping and short-circuit paths are tested without CBC; the tests
marked solver run tiny programs through the bundled CBC binary.
"""

import threading
from unittest.mock import patch

import pulp
import pytest

from book_engine.models.enums import SolverStatus
from book_engine.services.solver import (
    ConstraintSense,
    LinearProgram,
    PulpCbcSolver,
    SolverResult,
    map_pulp_status,
)


class TestStatusMapping:
    """PuLP (status, sol_status) pairs map to engine statuses."""

    @pytest.mark.parametrize("status,sol_status,elapsed_ms,expected", [
        (pulp.LpStatusOptimal, pulp.LpSolutionOptimal, 100, SolverStatus.OPTIMAL),
        (pulp.LpStatusOptimal, pulp.LpSolutionIntegerFeasible, 100, SolverStatus.FEASIBLE),
        (pulp.LpStatusOptimal, pulp.LpSolutionIntegerFeasible, 9_900, SolverStatus.TIMEOUT),
        (pulp.LpStatusInfeasible, pulp.LpSolutionInfeasible, 100, SolverStatus.INFEASIBLE),
        (pulp.LpStatusUnbounded, pulp.LpSolutionUnbounded, 100, SolverStatus.ERROR),
        (pulp.LpStatusNotSolved, pulp.LpSolutionNoSolutionFound, 10_000, SolverStatus.TIMEOUT),
        (pulp.LpStatusNotSolved, pulp.LpSolutionNoSolutionFound, 100, SolverStatus.ERROR),
        (pulp.LpStatusUndefined, pulp.LpSolutionNoSolutionFound, 100, SolverStatus.ERROR),
    ])
    def test_map_pulp_status(self, status, sol_status, elapsed_ms, expected):
        assert map_pulp_status(status, sol_status, elapsed_ms, timeout_seconds=10) == expected


class TestSolverResult:

    @pytest.mark.parametrize("status,values,expected", [
        (SolverStatus.OPTIMAL, {}, True),
        (SolverStatus.FEASIBLE, {"x": 1.0}, True),
        (SolverStatus.TIMEOUT, {"x": 1.0}, True),
        (SolverStatus.TIMEOUT, {}, False),
        (SolverStatus.INFEASIBLE, {}, False),
        (SolverStatus.ERROR, {"x": 1.0}, False),
    ])
    def test_has_solution(self, status, values, expected):
        assert SolverResult(status=status, values=values).has_solution is expected


class TestLinearProgram:

    def test_duplicate_variable_rejected(self):
        program = LinearProgram(name="dup")
        program.add_variable("x")

        with pytest.raises(ValueError, match="Duplicate variable x"):
            program.add_variable("x")

    def test_objective_terms_accumulate_and_skip_zero(self):
        program = LinearProgram(name="obj")
        program.add_variable("x")
        program.add_variable("y")
        program.add_objective_term("x", 1.5)
        program.add_objective_term("x", 0.5)
        program.add_objective_term("y", 0.0)

        assert program.objective == {"x": 2.0}
        assert program.num_variables == 2
        assert program.num_constraints == 0


class TestShortCircuits:
    """Paths that never reach CBC."""

    def test_cancelled_before_solve(self):
        event = threading.Event()
        event.set()
        program = LinearProgram(name="cancelled")
        program.add_variable("x", binary=True)

        result = PulpCbcSolver().solve(program, timeout_seconds=5, cancel_event=event)

        assert result.status == SolverStatus.TIMEOUT
        assert result.message == "cancelled"
        assert not result.has_solution

    def test_empty_program_is_optimal(self):
        result = PulpCbcSolver().solve(LinearProgram(name="empty"), timeout_seconds=5)

        assert result.status == SolverStatus.OPTIMAL
        assert result.objectiveValue == 0.0

    @pytest.mark.parametrize("sense,rhs,expected", [
        (ConstraintSense.GE, 1.0, SolverStatus.INFEASIBLE),
        (ConstraintSense.EQ, 2.0, SolverStatus.INFEASIBLE),
        (ConstraintSense.LE, -1.0, SolverStatus.INFEASIBLE),
    ])
    def test_violated_constant_constraint(self, sense, rhs, expected):
        program = LinearProgram(name="constant")
        program.add_variable("x", binary=True)
        program.add_constraint("nothing", {}, sense, rhs)

        result = PulpCbcSolver().solve(program, timeout_seconds=5)

        assert result.status == expected
        assert "nothing" in result.message


class TestCbcFailures:
    """CBC failures surface as ERROR results instead of exceptions."""

    @pytest.mark.parametrize("error", [
        OSError("cbc: permission denied"),
        pulp.PulpSolverError("Pulp: Error while executing"),
        RuntimeError("unexpected"),
    ])
    def test_solve_error_is_reported(self, error):
        program = LinearProgram(name="broken")
        program.add_variable("a", binary=True)
        program.add_objective_term("a", 1.0)

        with patch("book_engine.services.solver.pulp.LpProblem.solve", side_effect=error):
            result = PulpCbcSolver().solve(program, timeout_seconds=5)

        assert result.status == SolverStatus.ERROR
        assert result.message == str(error)
        assert not result.has_solution


@pytest.mark.solver
class TestCbc:
    """Tiny programs solved by CBC."""

    def test_binary_knapsack(self):
        program = LinearProgram(name="knapsack")
        program.add_variable("a", binary=True)
        program.add_variable("b", binary=True)
        program.add_objective_term("a", 3.0)
        program.add_objective_term("b", 2.0)
        program.add_constraint("pick_one", {"a": 1.0, "b": 1.0}, ConstraintSense.LE, 1.0)

        result = PulpCbcSolver().solve(program, timeout_seconds=10)

        assert result.status == SolverStatus.OPTIMAL
        assert result.values == {"a": 1.0, "b": 0.0}
        assert result.objectiveValue == pytest.approx(3.0)

    def test_continuous_bounds(self):
        program = LinearProgram(name="bounded", maximize=False)
        program.add_variable("x", low=1.25, up=10.0)
        program.add_objective_term("x", 1.0)

        result = PulpCbcSolver().solve(program, timeout_seconds=10)

        assert result.status == SolverStatus.OPTIMAL
        assert result.values["x"] == pytest.approx(1.25)

    def test_infeasible_program(self):
        program = LinearProgram(name="infeasible")
        program.add_variable("a", binary=True)
        program.add_variable("b", binary=True)
        program.add_objective_term("a", 1.0)
        program.add_constraint("too_many", {"a": 1.0, "b": 1.0}, ConstraintSense.GE, 3.0)

        result = PulpCbcSolver().solve(program, timeout_seconds=10)

        assert result.status == SolverStatus.INFEASIBLE
        assert result.values == {}
