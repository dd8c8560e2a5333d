"""
Assignment Program Builder

Builds the assignment LinearProgram shared by the waterfall stages and the
relaxed engine. The builder knows nothing about stages or locks; callers
decide which (unit, rep) pairs are eligible and hand over coefficients.

Program Structure:
- One binary variable x[u, r] per eligible (unit, rep) pair
- Assignment rows: sum_r x[u, r] == 1 (relaxed) or <= 1 (waterfall stages,
  where an unplaced unit cascades to the next stage)
- Child links: x[child, r] - x[parent, r] == 0 for every rep of the parent
- Capacity rows: sum_u w[u] * x[u, r] <= limit[r]
- Balance rows (three-tier slack decomposition, per rep and dimension):

      sum_u (v[u] / T) * x[u, r] + load[r] / T
          - ao + au - bo + bu - mo + mu = 1

  ao, au in [0, variance]                    (alpha: inside the band)
  bo in [0, (absMax - max) / T]              (beta: buffer zone above)
  bu in [0, (min - absMin) / T]              (beta: buffer zone below)
  mo, mu >= 0                                (big-M: beyond absolute bounds)

  Each slack costs penalty * intensity * {alpha, beta, big-M} in the
  objective, so deviation grows smoothly more expensive the further a rep
  drifts from target.

- Tie-breaker: 0.001 * (1 - rank / numUnits), rank by ARR descending, added
  to every x[u, r] so identical inputs always resolve to the same solution.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from book_engine.models.enums import BalanceDimension
from book_engine.services.normalization import NormalizedAccount
from book_engine.services.solver import ConstraintSense, LinearProgram


logger = logging.getLogger(__name__)

# Slack cost ratio alpha : beta : big-M
ALPHA_PENALTY = 0.01
BETA_PENALTY = 0.1
BIG_M_PENALTY = 100.0

TIE_BREAKER_WEIGHT = 0.001

Pair = Tuple[str, str]


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class CapacityRow:
    """sum_u weights[u] * x[u, rep] <= limit"""
    rep_id: str
    name: str
    weights: Mapping[str, float]
    limit: float


@dataclass(frozen=True)
class BalanceTerm:
    """
    Balance penalty for one dimension across a set of reps.

    Attributes:
        dimension: Dimension being balanced
        target: Per-rep target (terms with target <= 0 are skipped)
        minimum / maximum: Preferred band
        absolute_minimum / absolute_maximum: Outer band; beyond it big-M applies
        penalty: Dimension penalty (0-1) times the intensity multiplier
        unit_values: unit id -> contribution to a rep's load
        base_load: rep id -> load already committed before this program
        rep_ids: Reps the term applies to
    """
    dimension: BalanceDimension
    target: float
    minimum: float
    maximum: float
    absolute_minimum: float
    absolute_maximum: float
    penalty: float
    unit_values: Mapping[str, float]
    base_load: Mapping[str, float]
    rep_ids: Tuple[str, ...]


@dataclass
class AssignmentProgram:
    """A built program plus the mapping from (unit, rep) to variable name."""
    program: LinearProgram
    pair_variables: Dict[Pair, str] = field(default_factory=dict)
    balance_slacks: Dict[Tuple[str, str], Dict[str, str]] = field(default_factory=dict)

    def selected_pairs(self, values: Mapping[str, float]) -> Dict[str, str]:
        """unit id -> rep id for every pair set to 1 in a solution."""
        selected: Dict[str, str] = {}
        for (unit_id, rep_id), var in sorted(self.pair_variables.items()):
            if values.get(var, 0.0) > 0.5 and unit_id not in selected:
                selected[unit_id] = rep_id
        return selected


# =============================================================================
# Helpers
# =============================================================================


def pair_variable_name(unit_id: str, rep_id: str) -> str:
    return f"x[{unit_id}][{rep_id}]"


def tie_breaker_ranks(units: Iterable[NormalizedAccount]) -> Dict[str, float]:
    """
    Tie-breaker bonus per unit: 0.001 * (1 - rank / numUnits).

    Rank orders units by hierarchy ARR descending, then id, so the bonus is
    fully deterministic.
    """
    ordered = sorted(units, key=lambda u: (-u.hierarchy_arr, u.account_id))
    count = len(ordered)
    if count == 0:
        return {}
    return {
        unit.account_id: TIE_BREAKER_WEIGHT * (1 - rank / count)
        for rank, unit in enumerate(ordered)
    }


def _add_balance_term(
    assignment: AssignmentProgram,
    term: BalanceTerm,
    candidates: Mapping[str, Sequence[str]],
) -> None:
    program = assignment.program
    target = term.target
    if target <= 0:
        return

    variance = max(0.0, (term.maximum - target) / target)
    under_variance = max(0.0, (target - term.minimum) / target)
    buffer_over = max(0.0, (term.absolute_maximum - term.maximum) / target)
    buffer_under = max(0.0, (term.minimum - term.absolute_minimum) / target)

    alpha = term.penalty * ALPHA_PENALTY
    beta = term.penalty * BETA_PENALTY
    big_m = term.penalty * BIG_M_PENALTY

    units_by_rep: Dict[str, List[str]] = {rep_id: [] for rep_id in term.rep_ids}
    for unit_id, reps in candidates.items():
        if not term.unit_values.get(unit_id):
            continue
        for rep_id in reps:
            if rep_id in units_by_rep:
                units_by_rep[rep_id].append(unit_id)

    dim = term.dimension.value
    for rep_id in term.rep_ids:
        prefix = f"s[{dim}][{rep_id}]"
        slacks = {
            "alpha_over": program.add_variable(f"{prefix}.ao", low=0.0, up=variance),
            "alpha_under": program.add_variable(f"{prefix}.au", low=0.0, up=under_variance),
            "beta_over": program.add_variable(f"{prefix}.bo", low=0.0, up=buffer_over),
            "beta_under": program.add_variable(f"{prefix}.bu", low=0.0, up=buffer_under),
            "big_m_over": program.add_variable(f"{prefix}.mo", low=0.0),
            "big_m_under": program.add_variable(f"{prefix}.mu", low=0.0),
        }
        assignment.balance_slacks[(dim, rep_id)] = slacks

        program.add_objective_term(slacks["alpha_over"], -alpha)
        program.add_objective_term(slacks["alpha_under"], -alpha)
        program.add_objective_term(slacks["beta_over"], -beta)
        program.add_objective_term(slacks["beta_under"], -beta)
        program.add_objective_term(slacks["big_m_over"], -big_m)
        program.add_objective_term(slacks["big_m_under"], -big_m)

        coefficients: Dict[str, float] = {}
        for unit_id in units_by_rep[rep_id]:
            coefficients[assignment.pair_variables[(unit_id, rep_id)]] = term.unit_values[unit_id] / target
        coefficients[slacks["alpha_over"]] = -1.0
        coefficients[slacks["alpha_under"]] = 1.0
        coefficients[slacks["beta_over"]] = -1.0
        coefficients[slacks["beta_under"]] = 1.0
        coefficients[slacks["big_m_over"]] = -1.0
        coefficients[slacks["big_m_under"]] = 1.0

        base = term.base_load.get(rep_id, 0.0) / target
        program.add_constraint(f"balance[{dim}][{rep_id}]", coefficients, ConstraintSense.EQ, 1.0 - base)


# =============================================================================
# Main Entry Point
# =============================================================================


def build_assignment_program(
    name: str,
    candidates: Mapping[str, Sequence[str]],
    coefficients: Mapping[Pair, float],
    exact_assignment: bool,
    tie_breakers: Optional[Mapping[str, float]] = None,
    child_links: Optional[Mapping[str, str]] = None,
    capacity_rows: Sequence[CapacityRow] = (),
    balance_terms: Sequence[BalanceTerm] = (),
) -> AssignmentProgram:
    """
    Build an assignment program.

    Args:
        name: Program name (logged and passed to the solver)
        candidates: unit id -> eligible rep ids. Children listed in
            child_links must not appear here; they inherit their parent's
            candidates.
        coefficients: (unit id, rep id) -> objective coefficient (weighted
            score); missing pairs score 0
        exact_assignment: True for "== 1" assignment rows, False for "<= 1"
        tie_breakers: unit id -> tie-breaker bonus added to every pair
        child_links: child id -> parent id; children get variables over the
            parent's candidates tied to the parent by equality rows
        capacity_rows: Hard capacity rows
        balance_terms: Soft balance penalties

    Returns:
        AssignmentProgram with the built LinearProgram and variable mapping
    """
    program = LinearProgram(name=name, maximize=True)
    assignment = AssignmentProgram(program=program)
    tie_breakers = tie_breakers or {}
    child_links = child_links or {}
    sense = ConstraintSense.EQ if exact_assignment else ConstraintSense.LE

    for unit_id in sorted(candidates):
        row: Dict[str, float] = {}
        for rep_id in sorted(candidates[unit_id]):
            var = program.add_variable(pair_variable_name(unit_id, rep_id), binary=True)
            assignment.pair_variables[(unit_id, rep_id)] = var
            row[var] = 1.0
            program.add_objective_term(
                var, coefficients.get((unit_id, rep_id), 0.0) + tie_breakers.get(unit_id, 0.0)
            )
        program.add_constraint(f"assign[{unit_id}]", row, sense, 1.0)

    for child_id in sorted(child_links):
        parent_id = child_links[child_id]
        row = {}
        for rep_id in sorted(candidates.get(parent_id, ())):
            var = program.add_variable(pair_variable_name(child_id, rep_id), binary=True)
            assignment.pair_variables[(child_id, rep_id)] = var
            row[var] = 1.0
            program.add_objective_term(var, coefficients.get((child_id, rep_id), 0.0))
            program.add_constraint(
                f"link[{child_id}][{rep_id}]",
                {var: 1.0, assignment.pair_variables[(parent_id, rep_id)]: -1.0},
                ConstraintSense.EQ,
                0.0,
            )
        program.add_constraint(f"assign[{child_id}]", row, sense, 1.0)

    for capacity in capacity_rows:
        row = {
            assignment.pair_variables[(unit_id, capacity.rep_id)]: weight
            for unit_id, weight in sorted(capacity.weights.items())
            if weight and (unit_id, capacity.rep_id) in assignment.pair_variables
        }
        if row:
            program.add_constraint(capacity.name, row, ConstraintSense.LE, max(0.0, capacity.limit))

    for term in balance_terms:
        _add_balance_term(assignment, term, candidates)

    logger.info(
        f"Built {name}: {len(candidates)} units, {len(child_links)} linked children, "
        f"{program.num_variables} variables, {program.num_constraints} constraints"
    )
    return assignment


__all__ = [
    "ALPHA_PENALTY",
    "BETA_PENALTY",
    "BIG_M_PENALTY",
    "TIE_BREAKER_WEIGHT",
    "CapacityRow",
    "BalanceTerm",
    "AssignmentProgram",
    "pair_variable_name",
    "tie_breaker_ranks",
    "build_assignment_program",
]
