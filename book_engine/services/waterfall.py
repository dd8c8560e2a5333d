"""
Waterfall Assignment Engine

Priority cascade over shrinking pools of unassigned units. Each stage reads
an immutable WaterfallState snapshot and returns a StageDelta; apply_delta()
folds the delta into a new snapshot. Earlier decisions are never revisited.

Stages:
- P0 Holdover: locked units go to their required owner; strategic units stay
  with a strategic owner or go to the strategic rep holding the least ARR
- P1 Continuity + Geography: current owner in the same region, with capacity
- P2 Geography: any in-region rep with capacity
- P3 Continuity: current owner with capacity, any region
- P4 Balance: any eligible rep with capacity, optimizing balance only
- Residual: least-loaded eligible rep even past its max band, flagged as
  over-capacity

P1-P4 each solve a bounded assignment sub-problem (assignment rows "<= 1",
capacity rows on remaining headroom) through the same solver boundary as the
relaxed engine. A stage whose solve fails leaves its units for the next stage
and records a SOLVER_FALLBACK warning, so the cascade always ends with a
complete assignment or an explicit failure.

Capacity is measured on ARR for customer units and on pipeline for prospect
units against the max band of the normal pool. Strategic reps have no cap.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from book_engine.models.enums import (
    BalanceDimension,
    ErrorCategory,
    RegionClass,
    SolverStatus,
    StageLabel,
    WarningCategory,
    WarningSeverity,
)
from book_engine.models.schemas import AssignmentWarning
from book_engine.services.configuration import enabled_dimensions
from book_engine.services.context import (
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
from book_engine.services.solver import SolverResult
from book_engine.services.thresholds import CAPACITY_DIMENSIONS, unit_dimension_value


logger = logging.getLogger(__name__)

# Least to most severe, for the run-level solver status
STATUS_SEVERITY = {
    SolverStatus.COMPLETE: 0,
    SolverStatus.OPTIMAL: 1,
    SolverStatus.FEASIBLE: 2,
    SolverStatus.TIMEOUT: 3,
    SolverStatus.INFEASIBLE: 4,
    SolverStatus.ERROR: 5,
}


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class WaterfallState:
    """
    Immutable view of the cascade between stages.

    Attributes:
        placements: unit id -> Placement decided so far
        loads: rep id -> dimension -> committed load
    """
    placements: Mapping[str, Placement]
    loads: Mapping[str, Mapping[BalanceDimension, float]]

    @classmethod
    def initial(cls, ctx: EngineContext) -> "WaterfallState":
        dimensions = list(ctx.thresholds.bands.keys())
        loads = {rep_id: {dim: 0.0 for dim in dimensions} for rep_id in ctx.reps}
        return cls(placements={}, loads=loads)

    def is_placed(self, unit_id: str) -> bool:
        return unit_id in self.placements

    def load(self, rep_id: str, dimension: BalanceDimension) -> float:
        return self.loads.get(rep_id, {}).get(dimension, 0.0)

    def mutable_loads(self) -> Dict[str, Dict[BalanceDimension, float]]:
        return {rep_id: dict(dims) for rep_id, dims in self.loads.items()}


@dataclass(frozen=True)
class StageDelta:
    """Decisions of one stage; never applied in place."""
    stage: StageLabel
    placements: Tuple[Placement, ...] = ()
    warnings: Tuple[AssignmentWarning, ...] = ()
    solver_result: Optional[SolverResult] = None
    num_variables: int = 0
    num_constraints: int = 0
    failure: Optional[Tuple[str, ErrorCategory]] = None


def apply_delta(
    state: WaterfallState,
    delta: StageDelta,
    units_by_id: Mapping[str, NormalizedAccount],
) -> WaterfallState:
    """Return a new snapshot with the delta's placements and their loads added."""
    placements = dict(state.placements)
    loads = state.mutable_loads()
    for placement in delta.placements:
        if placement.account_id in placements:
            raise ValueError(f"Unit {placement.account_id} placed twice ({delta.stage.value})")
        placements[placement.account_id] = placement
        _add_load(loads, placement.rep_id, units_by_id[placement.account_id])
    return WaterfallState(placements=placements, loads=loads)


def _add_load(
    loads: Dict[str, Dict[BalanceDimension, float]],
    rep_id: str,
    unit: NormalizedAccount,
) -> None:
    rep_loads = loads.setdefault(rep_id, {})
    for dimension in list(rep_loads.keys()):
        rep_loads[dimension] += unit_dimension_value(unit, dimension)


# =============================================================================
# P0 Holdover
# =============================================================================


def run_holdover_stage(ctx: EngineContext, state: WaterfallState) -> StageDelta:
    """
    Place locked and strategic units.

    Locks ignore capacity; a lock that pushes a rep past its max band is
    flagged as over-capacity.
    """
    stage = StageLabel.P0_HOLDOVER
    placements: List[Placement] = []
    warnings: List[AssignmentWarning] = []
    loads = state.mutable_loads()
    pending_strategic: List[NormalizedAccount] = []

    def place(unit: NormalizedAccount, rep_id: str, **extra) -> None:
        rep = ctx.reps[rep_id]
        over = not fits_capacity(unit, rep, loads, ctx.thresholds)
        if over:
            record_warning(
                warnings,
                WarningCategory.CAPACITY_EXCEEDED,
                f"Holdover of {unit.account_id} pushes rep {rep_id} past its max band",
                severity=WarningSeverity.MEDIUM,
                account_id=unit.account_id,
                rep_id=rep_id,
            )
        _add_load(loads, rep_id, unit)
        placements.append(
            Placement(account_id=unit.account_id, rep_id=rep_id, stage=stage, is_over_capacity=over, **extra)
        )

    for unit in ctx.units:
        if state.is_placed(unit.account_id):
            continue
        decision = ctx.locks.locks.get(unit.account_id)
        if decision is not None:
            place(unit, decision.required_owner_id, lock_type=decision.lock_type, note=decision.reason)
            continue
        if not unit.is_strategic:
            continue
        owner = ctx.reps.get(unit.owner_id) if unit.owner_id else None
        if owner is not None and owner.is_strategic and owner.is_assignable:
            place(unit, owner.rep_id, note="Strategic account stays with its strategic owner")
        else:
            pending_strategic.append(unit)

    if pending_strategic:
        strategic_ids = [rep.rep_id for rep in ctx.strategic_reps]
        if not strategic_ids:
            return StageDelta(
                stage=stage,
                warnings=tuple(warnings),
                failure=(
                    f"{len(pending_strategic)} strategic accounts need placement but no strategic "
                    f"reps are available",
                    ErrorCategory.DATA_VALIDATION,
                ),
            )
        ordered = sorted(pending_strategic, key=lambda u: (-u.hierarchy_arr, u.account_id))
        for unit in ordered:
            rep_id = min(strategic_ids, key=lambda r: (loads[r].get(BalanceDimension.ARR, 0.0), r))
            place(unit, rep_id, note="Strategic account given to the least-loaded strategic rep")

    return StageDelta(stage=stage, placements=tuple(placements), warnings=tuple(warnings))


# =============================================================================
# P1-P4 Sub-problems
# =============================================================================


def _capacity_rows(
    ctx: EngineContext,
    state: WaterfallState,
    candidates: Mapping[str, Sequence[str]],
    units_by_id: Mapping[str, NormalizedAccount],
) -> List[CapacityRow]:
    rows: List[CapacityRow] = []
    rep_ids = sorted({rep_id for reps in candidates.values() for rep_id in reps})
    for rep_id in rep_ids:
        if ctx.reps[rep_id].is_strategic:
            continue
        for dimension in CAPACITY_DIMENSIONS:
            band = ctx.thresholds.band(dimension)
            if band is None:
                continue
            weights: Dict[str, float] = {}
            for unit_id, reps in candidates.items():
                if rep_id not in reps:
                    continue
                used_dimension, amount = capacity_usage(units_by_id[unit_id])
                if used_dimension == dimension and amount > 0:
                    weights[unit_id] = amount
            if weights:
                rows.append(
                    CapacityRow(
                        rep_id=rep_id,
                        name=f"capacity[{dimension.value}][{rep_id}]",
                        weights=weights,
                        limit=band.maximum - state.load(rep_id, dimension),
                    )
                )
    return rows


def _balance_terms(
    ctx: EngineContext,
    state: WaterfallState,
    candidates: Mapping[str, Sequence[str]],
    units_by_id: Mapping[str, NormalizedAccount],
) -> List[BalanceTerm]:
    rep_ids = tuple(sorted({rep_id for reps in candidates.values() for rep_id in reps
                            if not ctx.reps[rep_id].is_strategic}))
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
                unit_values={uid: unit_dimension_value(units_by_id[uid], dimension) for uid in candidates},
                base_load={rep_id: state.load(rep_id, dimension) for rep_id in rep_ids},
                rep_ids=rep_ids,
            )
        )
    return terms


def _solve_stage(
    ctx: EngineContext,
    state: WaterfallState,
    stage: StageLabel,
    candidates: Dict[str, List[str]],
    units_by_id: Mapping[str, NormalizedAccount],
    tie_breakers: Mapping[str, float],
    balance_only: bool = False,
) -> StageDelta:
    if not candidates:
        return StageDelta(stage=stage)

    if balance_only:
        coefficients: Dict[Tuple[str, str], float] = {}
        balance_terms = _balance_terms(ctx, state, candidates, units_by_id)
    else:
        coefficients = {
            (unit_id, rep_id): ctx.score(units_by_id[unit_id], ctx.reps[rep_id]).weighted_total
            for unit_id, reps in candidates.items()
            for rep_id in reps
        }
        balance_terms = []

    assignment = build_assignment_program(
        f"waterfall_{stage.value}",
        candidates,
        coefficients,
        exact_assignment=False,
        tie_breakers=tie_breakers,
        capacity_rows=_capacity_rows(ctx, state, candidates, units_by_id),
        balance_terms=balance_terms,
    )
    program = assignment.program
    result = ctx.solver.solve(program, ctx.config.solverTimeoutSeconds, ctx.cancel_event)

    warnings: List[AssignmentWarning] = []
    if not result.has_solution:
        record_warning(
            warnings,
            WarningCategory.SOLVER_FALLBACK,
            f"{stage.value} sub-problem ended {result.status.value}"
            f"{' (' + result.message + ')' if result.message else ''}; "
            f"{len(candidates)} accounts cascade to the next stage",
            severity=WarningSeverity.MEDIUM,
        )
        return StageDelta(
            stage=stage,
            warnings=tuple(warnings),
            solver_result=result,
            num_variables=program.num_variables,
            num_constraints=program.num_constraints,
        )

    if result.status == SolverStatus.TIMEOUT:
        record_warning(
            warnings,
            WarningCategory.SOLVER_FALLBACK,
            f"{stage.value} sub-problem hit its time limit; using the best incumbent",
            severity=WarningSeverity.LOW,
        )

    selected = assignment.selected_pairs(result.values)
    placements = tuple(
        Placement(account_id=unit_id, rep_id=rep_id, stage=stage)
        for unit_id, rep_id in sorted(selected.items())
    )
    return StageDelta(
        stage=stage,
        placements=placements,
        warnings=tuple(warnings),
        solver_result=result,
        num_variables=program.num_variables,
        num_constraints=program.num_constraints,
    )


def _owner_candidate(ctx: EngineContext, unit: NormalizedAccount, state: WaterfallState):
    if not unit.owner_id or unit.owner_id not in ctx.reps:
        return None
    owner = ctx.reps[unit.owner_id]
    if not ctx.is_eligible(unit, owner):
        return None
    if not fits_capacity(unit, owner, state.loads, ctx.thresholds):
        return None
    return owner


def _pending(ctx: EngineContext, state: WaterfallState) -> List[NormalizedAccount]:
    return [unit for unit in ctx.units if not state.is_placed(unit.account_id)]


def run_continuity_geography_stage(
    ctx: EngineContext,
    state: WaterfallState,
    units_by_id: Mapping[str, NormalizedAccount],
    tie_breakers: Mapping[str, float],
) -> StageDelta:
    """P1: keep units with an in-region current owner who has capacity."""
    candidates: Dict[str, List[str]] = {}
    for unit in _pending(ctx, state):
        owner = _owner_candidate(ctx, unit, state)
        if owner is not None and ctx.score(unit, owner).region_class == RegionClass.EXACT:
            candidates[unit.account_id] = [owner.rep_id]
    return _solve_stage(ctx, state, StageLabel.P1_CONTINUITY_GEO, candidates, units_by_id, tie_breakers)


def run_geography_stage(
    ctx: EngineContext,
    state: WaterfallState,
    units_by_id: Mapping[str, NormalizedAccount],
    tie_breakers: Mapping[str, float],
) -> StageDelta:
    """P2: any in-region rep with capacity."""
    candidates: Dict[str, List[str]] = {}
    for unit in _pending(ctx, state):
        reps = [
            rep.rep_id
            for rep in ctx.eligible_reps(unit)
            if ctx.score(unit, rep).region_class == RegionClass.EXACT
            and fits_capacity(unit, rep, state.loads, ctx.thresholds)
        ]
        if reps:
            candidates[unit.account_id] = reps
    return _solve_stage(ctx, state, StageLabel.P2_GEOGRAPHY, candidates, units_by_id, tie_breakers)


def run_continuity_stage(
    ctx: EngineContext,
    state: WaterfallState,
    units_by_id: Mapping[str, NormalizedAccount],
    tie_breakers: Mapping[str, float],
) -> StageDelta:
    """P3: current owner with capacity, any region."""
    candidates: Dict[str, List[str]] = {}
    for unit in _pending(ctx, state):
        owner = _owner_candidate(ctx, unit, state)
        if owner is not None:
            candidates[unit.account_id] = [owner.rep_id]
    delta = _solve_stage(ctx, state, StageLabel.P3_CONTINUITY, candidates, units_by_id, tie_breakers)

    warnings = list(delta.warnings)
    for placement in delta.placements:
        region_class = ctx.score(units_by_id[placement.account_id], ctx.reps[placement.rep_id]).region_class
        if region_class != RegionClass.EXACT:
            record_warning(
                warnings,
                WarningCategory.CROSS_REGION,
                f"{placement.account_id} stays with owner {placement.rep_id} across regions ({region_class.value})",
                severity=WarningSeverity.LOW,
                account_id=placement.account_id,
                rep_id=placement.rep_id,
            )
    return StageDelta(
        stage=delta.stage,
        placements=delta.placements,
        warnings=tuple(warnings),
        solver_result=delta.solver_result,
        num_variables=delta.num_variables,
        num_constraints=delta.num_constraints,
    )


def run_balance_stage(
    ctx: EngineContext,
    state: WaterfallState,
    units_by_id: Mapping[str, NormalizedAccount],
    tie_breakers: Mapping[str, float],
) -> StageDelta:
    """P4: any eligible rep with capacity, optimizing balance only."""
    candidates: Dict[str, List[str]] = {}
    for unit in _pending(ctx, state):
        reps = [
            rep.rep_id
            for rep in ctx.eligible_reps(unit)
            if fits_capacity(unit, rep, state.loads, ctx.thresholds)
        ]
        if reps:
            candidates[unit.account_id] = reps
    return _solve_stage(
        ctx, state, StageLabel.P4_BALANCE, candidates, units_by_id, tie_breakers, balance_only=True
    )


# =============================================================================
# Residual
# =============================================================================


def run_residual_stage(ctx: EngineContext, state: WaterfallState) -> StageDelta:
    """
    Force-assign every remaining unit to its least-loaded eligible rep.

    Fails explicitly when a unit has no eligible rep at all.
    """
    stage = StageLabel.RESIDUAL
    pending = sorted(_pending(ctx, state), key=lambda u: (-u.hierarchy_arr, u.account_id))
    if not pending:
        return StageDelta(stage=stage)

    loads = state.mutable_loads()
    placements: List[Placement] = []
    warnings: List[AssignmentWarning] = []

    for unit in pending:
        reps = ctx.eligible_reps(unit)
        if not reps:
            return StageDelta(
                stage=stage,
                warnings=tuple(warnings),
                failure=(
                    f"Account {unit.account_id} has no eligible rep (strategic={unit.is_strategic}, "
                    f"hierarchy ARR {unit.hierarchy_arr:,.0f})",
                    ErrorCategory.DATA_VALIDATION,
                ),
            )
        dimension, _ = capacity_usage(unit)
        rep = min(reps, key=lambda r: (loads.get(r.rep_id, {}).get(dimension, 0.0), r.rep_id))
        over = not fits_capacity(unit, rep, loads, ctx.thresholds)
        _add_load(loads, rep.rep_id, unit)

        if over:
            record_warning(
                warnings,
                WarningCategory.CAPACITY_EXCEEDED,
                f"{unit.account_id} force-assigned to {rep.rep_id} past its max band: all eligible reps at capacity",
                severity=WarningSeverity.HIGH,
                account_id=unit.account_id,
                rep_id=rep.rep_id,
            )
        if unit.owner_id and unit.owner_id != rep.rep_id:
            record_warning(
                warnings,
                WarningCategory.CONTINUITY_BROKEN,
                f"{unit.account_id} moves from {unit.owner_id} to {rep.rep_id} in the residual stage",
                severity=WarningSeverity.LOW,
                account_id=unit.account_id,
                rep_id=rep.rep_id,
            )
        placements.append(
            Placement(
                account_id=unit.account_id,
                rep_id=rep.rep_id,
                stage=stage,
                is_over_capacity=over,
                forced=True,
                note="All eligible reps at capacity" if over else "Least-loaded eligible rep",
            )
        )

    return StageDelta(stage=stage, placements=tuple(placements), warnings=tuple(warnings))


# =============================================================================
# Main Entry Point
# =============================================================================


def run_waterfall(ctx: EngineContext) -> EngineOutcome:
    """
    Run the full cascade.

    Args:
        ctx: Engine context for the run

    Returns:
        EngineOutcome with one placement per assignment unit, or an explicit
        failure
    """
    units_by_id = {unit.account_id: unit for unit in ctx.units}
    tie_breakers = tie_breaker_ranks(ctx.units)

    state = WaterfallState.initial(ctx)
    warnings: List[AssignmentWarning] = []
    status = SolverStatus.COMPLETE
    solve_time_ms = 0.0
    objective_value: Optional[float] = None
    num_variables = 0
    num_constraints = 0

    stages: List[Callable[[WaterfallState], StageDelta]] = [
        lambda s: run_holdover_stage(ctx, s),
        lambda s: run_continuity_geography_stage(ctx, s, units_by_id, tie_breakers),
        lambda s: run_geography_stage(ctx, s, units_by_id, tie_breakers),
        lambda s: run_continuity_stage(ctx, s, units_by_id, tie_breakers),
        lambda s: run_balance_stage(ctx, s, units_by_id, tie_breakers),
        lambda s: run_residual_stage(ctx, s),
    ]

    for run_stage in stages:
        delta = run_stage(state)
        warnings.extend(delta.warnings)

        if delta.failure is not None:
            message, category = delta.failure
            logger.error(f"Waterfall failed at {delta.stage.value}: {message}")
            return EngineOutcome.failure(
                message,
                category,
                warnings=warnings,
                solver_status=SolverStatus.ERROR,
                solve_time_ms=solve_time_ms,
                num_variables=num_variables,
                num_constraints=num_constraints,
            )

        if delta.solver_result is not None:
            result = delta.solver_result
            solve_time_ms += result.solveTimeMs
            num_variables += delta.num_variables
            num_constraints += delta.num_constraints
            if result.objectiveValue is not None:
                objective_value = (objective_value or 0.0) + result.objectiveValue
            if STATUS_SEVERITY[result.status] > STATUS_SEVERITY[status]:
                status = result.status

        state = apply_delta(state, delta, units_by_id)
        logger.info(
            f"Waterfall {delta.stage.value}: placed {len(delta.placements)}, "
            f"{len(ctx.units) - len(state.placements)} remaining"
        )

    return EngineOutcome(
        success=True,
        placements=dict(state.placements),
        warnings=warnings,
        solver_status=status,
        solve_time_ms=solve_time_ms,
        objective_value=objective_value,
        num_variables=num_variables,
        num_constraints=num_constraints,
    )


__all__ = [
    "WaterfallState",
    "StageDelta",
    "apply_delta",
    "run_holdover_stage",
    "run_continuity_geography_stage",
    "run_geography_stage",
    "run_continuity_stage",
    "run_balance_stage",
    "run_residual_stage",
    "run_waterfall",
]
