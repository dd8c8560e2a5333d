"""
Relaxed (Global) Optimization Engine

One linear program over the whole pool:

    maximize  sum_{u,r} (wC*continuity + wG*geography + wT*team + tieBreak) * x[u, r]
              - sum_{r,d} penalty_d * intensity * (alpha, beta, big-M slacks)

Hard constraints:
- exactly one rep per unit (sum_r x[u, r] == 1)
- every non-split child tied to its parent by equality rows
- strategic units only have variables for strategic reps (and vice versa)
- locked units only have a variable for their required owner
- optional hard ARR cap per non-strategic rep (maxArrPerRep, else the ARR
  max band)

Outcomes:
- optimal / feasible: the solution is used as-is
- timeout with an incumbent: the incumbent is used, with a warning
- infeasible: explicit failure with a capacity diagnostic
- timeout / error without an incumbent: greedy fallback honoring every hard
  constraint; when even that cannot place every unit the run fails
"""

import logging
from typing import Dict, List, Optional, Tuple

from book_engine.models.enums import (
    BalanceDimension,
    ErrorCategory,
    SolverStatus,
    StageLabel,
    WarningCategory,
    WarningSeverity,
)
from book_engine.models.schemas import AssignmentWarning
from book_engine.services.configuration import enabled_dimensions
from book_engine.services.context import (
    CAPACITY_TOLERANCE,
    EngineContext,
    EngineOutcome,
    Placement,
    capacity_usage,
    fits_capacity,
)
from book_engine.services.diagnostics import record_warning
from book_engine.services.lp_builder import (
    BalanceTerm,
    CapacityRow,
    build_assignment_program,
    tie_breaker_ranks,
)
from book_engine.services.normalization import NormalizedAccount
from book_engine.services.thresholds import unit_dimension_value


logger = logging.getLogger(__name__)

FORCE_ASSIGNMENT_NOTE = "All Reps At Capacity"


# =============================================================================
# Problem Setup
# =============================================================================


def hard_arr_cap(ctx: EngineContext) -> Optional[float]:
    """Per-rep ARR cap for non-strategic reps, or None when caps are off."""
    if not ctx.config.hardCapEnabled:
        return None
    if ctx.config.maxArrPerRep is not None:
        return ctx.config.maxArrPerRep
    band = ctx.thresholds.band(BalanceDimension.ARR)
    return band.maximum if band is not None else None


def build_candidates(ctx: EngineContext) -> Tuple[Dict[str, List[str]], List[str]]:
    """
    Eligible reps per unit.

    Returns:
        (unit id -> rep ids, unit ids with no eligible rep)
    """
    candidates: Dict[str, List[str]] = {}
    unplaceable: List[str] = []
    for unit in ctx.units:
        decision = ctx.locks.locks.get(unit.account_id)
        if decision is not None:
            reps = [decision.required_owner_id]
        else:
            reps = [rep.rep_id for rep in ctx.eligible_reps(unit)]
        if reps:
            candidates[unit.account_id] = reps
        else:
            unplaceable.append(unit.account_id)
    return candidates, unplaceable


def diagnose_capacity(ctx: EngineContext, cap: Optional[float]) -> Optional[str]:
    """Explain why the hard cap cannot hold the normal pool's ARR, or None when it can."""
    if cap is None:
        return None
    normal_reps = ctx.normal_reps
    required = sum(unit.hierarchy_arr for unit in ctx.units if not unit.is_strategic)
    available = cap * len(normal_reps)
    if required > available + CAPACITY_TOLERANCE:
        return (
            f"Hard capacity {available:,.0f} ({len(normal_reps)} reps x {cap:,.0f}) is below the "
            f"{required:,.0f} ARR that must be assigned"
        )

    for unit in ctx.units:
        decision = ctx.locks.locks.get(unit.account_id)
        if decision is None and unit.hierarchy_arr > cap + CAPACITY_TOLERANCE and not unit.is_strategic:
            return f"Account {unit.account_id} ARR {unit.hierarchy_arr:,.0f} exceeds the per-rep cap {cap:,.0f}"

    locked_arr: Dict[str, float] = {}
    for decision in ctx.locks.locks.values():
        rep = ctx.reps.get(decision.required_owner_id)
        if rep is None or rep.is_strategic:
            continue
        unit_arr = next(u.hierarchy_arr for u in ctx.units if u.account_id == decision.account_id)
        locked_arr[rep.rep_id] = locked_arr.get(rep.rep_id, 0.0) + unit_arr
    for rep_id, arr in sorted(locked_arr.items()):
        if arr > cap + CAPACITY_TOLERANCE:
            return f"Locked accounts hold {arr:,.0f} ARR on rep {rep_id}, above the per-rep cap {cap:,.0f}"
    return None


def _balance_terms(ctx: EngineContext, candidates: Dict[str, List[str]]) -> List[BalanceTerm]:
    units_by_id = {unit.account_id: unit for unit in ctx.units}
    rep_ids = tuple(rep.rep_id for rep in ctx.normal_reps)
    intensity = ctx.config.balance.intensityMultiplier
    terms: List[BalanceTerm] = []
    for dimension in enabled_dimensions(ctx.config):
        band = ctx.thresholds.band(dimension)
        if band is None or band.target <= 0:
            continue
        terms.append(
            BalanceTerm(
                dimension=dimension,
                target=band.target,
                minimum=band.minimum,
                maximum=band.maximum,
                absolute_minimum=band.absoluteMinimum,
                absolute_maximum=band.absoluteMaximum,
                penalty=ctx.config.balance.for_dimension(dimension).penalty * intensity,
                unit_values={
                    uid: unit_dimension_value(units_by_id[uid], dimension)
                    for uid in candidates
                    if not units_by_id[uid].is_strategic
                },
                base_load={},
                rep_ids=rep_ids,
            )
        )
    return terms


def _capacity_rows(ctx: EngineContext, candidates: Dict[str, List[str]], cap: float) -> List[CapacityRow]:
    units_by_id = {unit.account_id: unit for unit in ctx.units}
    rows: List[CapacityRow] = []
    for rep in ctx.normal_reps:
        weights = {
            uid: units_by_id[uid].hierarchy_arr
            for uid, reps in candidates.items()
            if rep.rep_id in reps and units_by_id[uid].hierarchy_arr > 0
        }
        if weights:
            rows.append(CapacityRow(rep_id=rep.rep_id, name=f"hard_cap[{rep.rep_id}]", weights=weights, limit=cap))
    return rows


# =============================================================================
# Greedy Fallback
# =============================================================================


def greedy_assign(
    ctx: EngineContext,
    candidates: Dict[str, List[str]],
    cap: Optional[float],
    warnings: List[AssignmentWarning],
) -> Tuple[Optional[Dict[str, Placement]], Optional[str]]:
    """
    Place every unit without a solver, honoring every hard constraint.

    Locked units are placed first, then the rest by ARR descending. Each unit
    goes to its best-scoring candidate inside its max band; when no candidate
    has room it is force-assigned to the least-loaded candidate and flagged.

    Returns:
        (placements, None) on success, (None, reason) when a hard constraint
        cannot be met
    """
    dimensions = list(ctx.thresholds.bands.keys())
    loads: Dict[str, Dict[BalanceDimension, float]] = {
        rep_id: {dim: 0.0 for dim in dimensions} for rep_id in ctx.reps
    }
    placements: Dict[str, Placement] = {}

    def within_cap(unit: NormalizedAccount, rep_id: str) -> bool:
        if cap is None or ctx.reps[rep_id].is_strategic:
            return True
        return loads[rep_id][BalanceDimension.ARR] + unit.hierarchy_arr <= cap + CAPACITY_TOLERANCE

    def commit(unit: NormalizedAccount, placement: Placement) -> None:
        placements[unit.account_id] = placement
        for dim in dimensions:
            loads[placement.rep_id][dim] += unit_dimension_value(unit, dim)

    ordered = sorted(
        ctx.units,
        key=lambda u: (u.account_id not in ctx.locks.locks, -u.hierarchy_arr, u.account_id),
    )
    for unit in ordered:
        reps = candidates.get(unit.account_id, [])
        decision = ctx.locks.locks.get(unit.account_id)
        if decision is not None:
            rep_id = decision.required_owner_id
            if not within_cap(unit, rep_id):
                return None, f"Locked account {unit.account_id} exceeds the hard cap on rep {rep_id}"
            over = not fits_capacity(unit, ctx.reps[rep_id], loads, ctx.thresholds)
            commit(unit, Placement(
                account_id=unit.account_id,
                rep_id=rep_id,
                stage=StageLabel.OPTIMIZED,
                lock_type=decision.lock_type,
                is_over_capacity=over,
                note=decision.reason,
            ))
            continue

        allowed = [rep_id for rep_id in reps if within_cap(unit, rep_id)]
        if not allowed:
            return None, f"Account {unit.account_id} fits under no rep's hard cap"

        roomy = [r for r in allowed if fits_capacity(unit, ctx.reps[r], loads, ctx.thresholds)]
        if roomy:
            dim, _ = capacity_usage(unit)
            rep_id = min(
                roomy,
                key=lambda r: (-ctx.score(unit, ctx.reps[r]).weighted_total, loads[r][dim], r),
            )
            commit(unit, Placement(account_id=unit.account_id, rep_id=rep_id, stage=StageLabel.OPTIMIZED))
            continue

        dim, _ = capacity_usage(unit)
        rep_id = min(allowed, key=lambda r: (loads[r][dim], r))
        record_warning(
            warnings,
            WarningCategory.CAPACITY_EXCEEDED,
            f"{unit.account_id} force-assigned to least-loaded rep {rep_id}: all reps at capacity",
            severity=WarningSeverity.HIGH,
            account_id=unit.account_id,
            rep_id=rep_id,
        )
        commit(unit, Placement(
            account_id=unit.account_id,
            rep_id=rep_id,
            stage=StageLabel.OPTIMIZED,
            is_over_capacity=True,
            forced=True,
            note=FORCE_ASSIGNMENT_NOTE,
        ))

    return placements, None


# =============================================================================
# Main Entry Point
# =============================================================================


def run_relaxed(ctx: EngineContext) -> EngineOutcome:
    """
    Solve the global assignment program.

    Args:
        ctx: Engine context for the run

    Returns:
        EngineOutcome with placements for every unit and every linked child,
        or an explicit failure
    """
    warnings: List[AssignmentWarning] = []
    candidates, unplaceable = build_candidates(ctx)

    if unplaceable:
        preview = ", ".join(unplaceable[:5])
        return EngineOutcome.failure(
            f"{len(unplaceable)} accounts have no eligible rep: {preview}",
            ErrorCategory.SOLVER_INFEASIBLE,
            warnings=warnings,
            solver_status=SolverStatus.INFEASIBLE,
        )

    cap = hard_arr_cap(ctx)
    diagnostic = diagnose_capacity(ctx, cap)
    if diagnostic is not None:
        logger.error(f"Relaxed run infeasible before solving: {diagnostic}")
        return EngineOutcome.failure(
            diagnostic,
            ErrorCategory.SOLVER_INFEASIBLE,
            warnings=warnings,
            solver_status=SolverStatus.INFEASIBLE,
        )

    coefficients = {
        (unit.account_id, rep_id): ctx.score(unit, ctx.reps[rep_id]).weighted_total
        for unit in ctx.units
        for rep_id in candidates[unit.account_id]
    }
    child_links = {}
    for child in ctx.children:
        if child.parent_id in candidates:
            child_links[child.account_id] = child.parent_id
            for rep_id in candidates[child.parent_id]:
                coefficients[(child.account_id, rep_id)] = ctx.score(child, ctx.reps[rep_id]).weighted_total

    assignment = build_assignment_program(
        "relaxed_global",
        candidates,
        coefficients,
        exact_assignment=True,
        tie_breakers=tie_breaker_ranks(ctx.units),
        child_links=child_links,
        capacity_rows=_capacity_rows(ctx, candidates, cap) if cap is not None else (),
        balance_terms=_balance_terms(ctx, candidates),
    )
    program = assignment.program
    result = ctx.solver.solve(program, ctx.config.solverTimeoutSeconds, ctx.cancel_event)
    telemetry = dict(
        solve_time_ms=result.solveTimeMs,
        num_variables=program.num_variables,
        num_constraints=program.num_constraints,
    )

    if result.status == SolverStatus.INFEASIBLE:
        message = diagnose_capacity(ctx, cap) or (
            "No assignment satisfies the hard constraints (locks, strategic isolation, "
            f"parent/child links{', hard cap ' + format(cap, ',.0f') if cap is not None else ''})"
        )
        logger.error(f"Relaxed solve infeasible: {message}")
        return EngineOutcome.failure(
            message,
            ErrorCategory.SOLVER_INFEASIBLE,
            warnings=warnings,
            solver_status=SolverStatus.INFEASIBLE,
            **telemetry,
        )

    selected = assignment.selected_pairs(result.values) if result.has_solution else {}
    complete = all(unit.account_id in selected for unit in ctx.units)

    if result.has_solution and complete:
        if result.status == SolverStatus.TIMEOUT:
            record_warning(
                warnings,
                WarningCategory.SOLVER_FALLBACK,
                f"Solver hit its {ctx.config.solverTimeoutSeconds:.0f}s limit; using the best incumbent",
                severity=WarningSeverity.MEDIUM,
            )
        placements: Dict[str, Placement] = {}
        for unit in ctx.units:
            decision = ctx.locks.locks.get(unit.account_id)
            placements[unit.account_id] = Placement(
                account_id=unit.account_id,
                rep_id=selected[unit.account_id],
                stage=StageLabel.OPTIMIZED,
                lock_type=decision.lock_type if decision else None,
                note=decision.reason if decision else None,
            )
        for child_id in child_links:
            if child_id in selected:
                placements[child_id] = Placement(
                    account_id=child_id, rep_id=selected[child_id], stage=StageLabel.CHILD
                )
        return EngineOutcome(
            success=True,
            placements=placements,
            warnings=warnings,
            solver_status=result.status,
            objective_value=result.objectiveValue,
            **telemetry,
        )

    record_warning(
        warnings,
        WarningCategory.SOLVER_FALLBACK,
        f"Solver ended {result.status.value} without a usable solution"
        f"{' (' + result.message + ')' if result.message else ''}; using greedy assignment",
        severity=WarningSeverity.HIGH,
    )
    placements, reason = greedy_assign(ctx, candidates, cap, warnings)
    if placements is None:
        category = (
            ErrorCategory.SOLVER_TIMEOUT if result.status == SolverStatus.TIMEOUT else ErrorCategory.SOLVER_CRASH
        )
        return EngineOutcome.failure(
            f"Solver ended {result.status.value} and greedy fallback failed: {reason}",
            category,
            warnings=warnings,
            solver_status=result.status,
            **telemetry,
        )

    return EngineOutcome(
        success=True,
        placements=placements,
        warnings=warnings,
        solver_status=result.status,
        **telemetry,
    )


__all__ = [
    "FORCE_ASSIGNMENT_NOTE",
    "hard_arr_cap",
    "build_candidates",
    "diagnose_capacity",
    "greedy_assign",
    "run_relaxed",
]
