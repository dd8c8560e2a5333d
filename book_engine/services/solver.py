"""
Solver Boundary

Engine-neutral description of a linear/mixed-integer program and the
pluggable backend that solves it. Both engines build LinearProgram objects
(through lp_builder) and never touch the solver library directly, so a
different backend only has to implement SolverBackend.solve().

Status Mapping (PuLP/CBC):
- optimal: proven optimal solution
- feasible: integer incumbent found before the time limit
- timeout: time limit reached or cancelled; values hold the incumbent when
  one exists, otherwise they are empty
- infeasible: hard constraints cannot all be satisfied
- error: unbounded model or solver failure

The solve is the only blocking operation of a run. It always runs under an
explicit time limit and can be cancelled through a threading.Event checked
before and after the CBC call.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol

import pulp

from book_engine.models.enums import SolverStatus


logger = logging.getLogger(__name__)


# =============================================================================
# Program Description
# =============================================================================


class ConstraintSense(str, Enum):
    LE = "<="
    GE = ">="
    EQ = "=="


@dataclass
class Variable:
    """Decision variable with bounds; binary variables ignore the bounds."""
    name: str
    low: Optional[float] = 0.0
    up: Optional[float] = None
    binary: bool = False


@dataclass
class LinearConstraint:
    """sum(coefficients[v] * v) <sense> rhs"""
    name: str
    coefficients: Dict[str, float]
    sense: ConstraintSense
    rhs: float


@dataclass
class LinearProgram:
    """
    Sparse linear program.

    Variables are keyed by name; objective and constraint coefficients refer
    to those names. Maximization by default.
    """
    name: str
    maximize: bool = True
    variables: Dict[str, Variable] = field(default_factory=dict)
    objective: Dict[str, float] = field(default_factory=dict)
    constraints: List[LinearConstraint] = field(default_factory=list)

    def add_variable(
        self,
        name: str,
        low: Optional[float] = 0.0,
        up: Optional[float] = None,
        binary: bool = False,
    ) -> str:
        if name in self.variables:
            raise ValueError(f"Duplicate variable {name} in program {self.name}")
        self.variables[name] = Variable(name=name, low=low, up=up, binary=binary)
        return name

    def add_objective_term(self, name: str, coefficient: float) -> None:
        if coefficient:
            self.objective[name] = self.objective.get(name, 0.0) + coefficient

    def add_constraint(
        self,
        name: str,
        coefficients: Dict[str, float],
        sense: ConstraintSense,
        rhs: float,
    ) -> None:
        self.constraints.append(
            LinearConstraint(name=name, coefficients=dict(coefficients), sense=sense, rhs=rhs)
        )

    @property
    def num_variables(self) -> int:
        return len(self.variables)

    @property
    def num_constraints(self) -> int:
        return len(self.constraints)


@dataclass
class SolverResult:
    """Outcome of one solve: status, variable values, objective value, timing."""
    status: SolverStatus
    values: Dict[str, float] = field(default_factory=dict)
    objectiveValue: Optional[float] = None
    solveTimeMs: float = 0.0
    message: Optional[str] = None

    @property
    def has_solution(self) -> bool:
        """True when values hold a usable (optimal, feasible, or incumbent) solution."""
        if self.status in (SolverStatus.OPTIMAL, SolverStatus.FEASIBLE):
            return True
        return self.status == SolverStatus.TIMEOUT and bool(self.values)


class SolverBackend(Protocol):
    """Anything that can solve a LinearProgram under a time limit."""

    def solve(
        self,
        program: LinearProgram,
        timeout_seconds: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> SolverResult:
        ...


# =============================================================================
# PuLP / CBC Backend
# =============================================================================


class PulpCbcSolver:
    """
    SolverBackend using PuLP with its bundled CBC binary.

    Args:
        threads: CBC thread count (1 keeps solves deterministic)
        msg: Echo CBC's log to stdout
    """

    def __init__(self, threads: int = 1, msg: bool = False):
        self.threads = threads
        self.msg = msg

    def _build(self, program: LinearProgram):
        sense = pulp.LpMaximize if program.maximize else pulp.LpMinimize
        problem = pulp.LpProblem(_safe_name(program.name), sense)

        # Positional names keep arbitrary account/rep ids out of the LP file
        lp_vars: Dict[str, pulp.LpVariable] = {}
        for idx, (name, var) in enumerate(program.variables.items()):
            if var.binary:
                lp_vars[name] = pulp.LpVariable(f"x{idx}", cat=pulp.LpBinary)
            else:
                lp_vars[name] = pulp.LpVariable(
                    f"x{idx}", lowBound=var.low, upBound=var.up, cat=pulp.LpContinuous
                )

        problem += pulp.LpAffineExpression(
            [(lp_vars[name], coef) for name, coef in program.objective.items()]
        )

        for idx, constraint in enumerate(program.constraints):
            if not constraint.coefficients:
                continue
            expr = pulp.LpAffineExpression(
                [(lp_vars[name], coef) for name, coef in constraint.coefficients.items()]
            )
            if constraint.sense == ConstraintSense.LE:
                problem += (expr <= constraint.rhs, f"c{idx}")
            elif constraint.sense == ConstraintSense.GE:
                problem += (expr >= constraint.rhs, f"c{idx}")
            else:
                problem += (expr == constraint.rhs, f"c{idx}")

        return problem, lp_vars

    def solve(
        self,
        program: LinearProgram,
        timeout_seconds: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> SolverResult:
        """
        Solve a program with CBC.

        Args:
            program: Program to solve
            timeout_seconds: CBC time limit
            cancel_event: When set, the solve is skipped (or its result is
                reported as timed out)

        Returns:
            SolverResult with mapped status and variable values
        """
        if cancel_event is not None and cancel_event.is_set():
            return SolverResult(status=SolverStatus.TIMEOUT, message="cancelled")

        for constraint in program.constraints:
            if not constraint.coefficients and not _constant_holds(constraint):
                return SolverResult(
                    status=SolverStatus.INFEASIBLE,
                    message=f"constraint {constraint.name} cannot be satisfied",
                )

        if not program.variables:
            return SolverResult(status=SolverStatus.OPTIMAL, objectiveValue=0.0)

        problem, lp_vars = self._build(program)
        logger.info(
            f"Solving {program.name}: {program.num_variables} variables, "
            f"{program.num_constraints} constraints, limit {timeout_seconds:.1f}s"
        )

        start = time.perf_counter()
        try:
            problem.solve(
                pulp.PULP_CBC_CMD(msg=self.msg, timeLimit=timeout_seconds, threads=self.threads)
            )
        except Exception as exc:
            # OSError when the CBC binary cannot be started, PulpSolverError when it fails
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.exception(f"CBC failed on {program.name}: {exc}")
            return SolverResult(status=SolverStatus.ERROR, solveTimeMs=elapsed_ms, message=str(exc))
        elapsed_ms = (time.perf_counter() - start) * 1000

        status = map_pulp_status(problem.status, problem.sol_status, elapsed_ms, timeout_seconds)
        values: Dict[str, float] = {}
        objective_value: Optional[float] = None
        if status in (SolverStatus.OPTIMAL, SolverStatus.FEASIBLE, SolverStatus.TIMEOUT):
            raw = {name: lp_var.varValue for name, lp_var in lp_vars.items()}
            # All None means CBC stopped without an incumbent; variables that
            # appear nowhere in the model are reported as None and read as 0
            if any(value is not None for value in raw.values()):
                for name, value in raw.items():
                    value = value or 0.0
                    values[name] = float(round(value)) if program.variables[name].binary else float(value)
                objective_value = pulp.value(problem.objective)

        message = None
        if cancel_event is not None and cancel_event.is_set():
            status = SolverStatus.TIMEOUT
            message = "cancelled"

        logger.info(
            f"Solved {program.name}: status={status.value} "
            f"({pulp.LpStatus.get(problem.status, problem.status)}) in {elapsed_ms:.0f}ms"
        )
        return SolverResult(
            status=status,
            values=values,
            objectiveValue=objective_value,
            solveTimeMs=elapsed_ms,
            message=message,
        )


def map_pulp_status(
    status: int,
    sol_status: int,
    elapsed_ms: float,
    timeout_seconds: float,
) -> SolverStatus:
    """
    Map PuLP's problem status and solution status to a SolverStatus.

    A run that used (nearly) its entire time limit is a timeout even when CBC
    hands back an integer incumbent.
    """
    hit_limit = elapsed_ms >= timeout_seconds * 1000 * 0.98

    if sol_status == pulp.LpSolutionOptimal and status == pulp.LpStatusOptimal:
        return SolverStatus.OPTIMAL
    if sol_status == pulp.LpSolutionIntegerFeasible:
        return SolverStatus.TIMEOUT if hit_limit else SolverStatus.FEASIBLE
    if sol_status == pulp.LpSolutionInfeasible or status == pulp.LpStatusInfeasible:
        return SolverStatus.INFEASIBLE
    if sol_status == pulp.LpSolutionUnbounded or status == pulp.LpStatusUnbounded:
        return SolverStatus.ERROR
    if sol_status == pulp.LpSolutionNoSolutionFound and hit_limit:
        return SolverStatus.TIMEOUT
    return SolverStatus.ERROR


def _constant_holds(constraint: LinearConstraint) -> bool:
    if constraint.sense == ConstraintSense.LE:
        return 0.0 <= constraint.rhs
    if constraint.sense == ConstraintSense.GE:
        return 0.0 >= constraint.rhs
    return abs(constraint.rhs) < 1e-9


def _safe_name(name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in name) or "program"


def default_solver(threads: int = 1, msg: bool = False) -> SolverBackend:
    return PulpCbcSolver(threads=threads, msg=msg)


__all__ = [
    "ConstraintSense",
    "Variable",
    "LinearConstraint",
    "LinearProgram",
    "SolverResult",
    "SolverBackend",
    "PulpCbcSolver",
    "map_pulp_status",
    "default_solver",
]
