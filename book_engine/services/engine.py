"""
Assignment Run Orchestrator

Single entry point for one assignment run. Both engines share everything
around the core algorithm:

1. Validate the configuration (corrected copy plus warnings)
2. Build the reference index (shipped tables, per-run overrides)
3. Normalize accounts, reps, and opportunities; restrict to the run scope
4. Evaluate stability locks on the assignment units
5. Calculate thresholds for the normal (non-strategic) pool
6. Run the selected engine (waterfall or relaxed)
7. Cascade non-split children to their parent's rep
8. Verify structural invariants (coverage, hierarchy, strategic isolation)
9. Build assignments with score breakdowns and rationale, metrics, telemetry

An engine failure returns success=False with no assignments. A structural
violation raises StructuralViolationError; such a set is never returned.

run_assignment() is synchronous and CPU-bound. The API runs it in a worker
thread; the batch job calls it directly.
"""

import logging
import threading
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from book_engine.core.config import Settings, get_settings
from book_engine.models.enums import EngineType, StageLabel
from book_engine.models.schemas import (
    Account,
    AccountAssignment,
    AssignmentConfiguration,
    AssignmentRunResult,
    AssignmentWarning,
    Opportunity,
    Representative,
    RunMetrics,
    TelemetryRecord,
)
from book_engine.services.configuration import snapshot_weights, validate_configuration
from book_engine.services.context import EngineContext, EngineOutcome, Placement
from book_engine.services.diagnostics import summarize_warnings, verify_assignment_structure
from book_engine.services.metrics import build_rationale, compute_run_metrics
from book_engine.services.normalization import (
    NormalizedAccount,
    normalize_scenario,
    restrict_to_scope,
)
from book_engine.services.reference_tables import build_reference_index
from book_engine.services.relaxed import run_relaxed
from book_engine.services.scoring import to_breakdown
from book_engine.services.solver import SolverBackend, default_solver
from book_engine.services.stability_locks import evaluate_stability_locks
from book_engine.services.thresholds import calculate_thresholds
from book_engine.services.waterfall import run_waterfall


logger = logging.getLogger(__name__)


ENGINES = {
    EngineType.WATERFALL: run_waterfall,
    EngineType.RELAXED: run_relaxed,
}


def apply_service_defaults(config: AssignmentConfiguration, settings: Settings) -> AssignmentConfiguration:
    """
    Fill engine and solver timeout from service settings when the caller left them unset.
    """
    updates = {}
    if "engine" not in config.model_fields_set:
        try:
            updates["engine"] = EngineType(settings.default_engine.lower())
        except ValueError:
            logger.warning(f"Ignoring unknown DEFAULT_ENGINE '{settings.default_engine}'")
    if "solverTimeoutSeconds" not in config.model_fields_set:
        updates["solverTimeoutSeconds"] = settings.default_solver_timeout_seconds
    return config.model_copy(update=updates) if updates else config


def cascade_children(
    placements: Dict[str, Placement],
    children: Iterable[NormalizedAccount],
) -> Dict[str, Placement]:
    """
    Give every non-split child its parent's rep.

    Children already placed (the relaxed engine links them in the LP) keep
    their placement; the result is a new dict.
    """
    cascaded = dict(placements)
    for child in children:
        if child.account_id in cascaded:
            continue
        parent = cascaded.get(child.parent_id)
        if parent is None:
            continue
        cascaded[child.account_id] = Placement(
            account_id=child.account_id,
            rep_id=parent.rep_id,
            stage=StageLabel.CHILD,
        )
    return cascaded


def _failure_result(
    scenario_id: Optional[str],
    config: AssignmentConfiguration,
    outcome: EngineOutcome,
    warnings: List[AssignmentWarning],
    lock_stats: Dict[str, int],
    counts: Dict[str, int],
    generated_at: datetime,
) -> AssignmentRunResult:
    telemetry = TelemetryRecord(
        engineType=config.engine,
        scope=config.scope,
        weights=snapshot_weights(config),
        solverStatus=outcome.solver_status,
        solveTimeMs=outcome.solve_time_ms,
        objectiveValue=outcome.objective_value,
        numVariables=outcome.num_variables,
        numConstraints=outcome.num_constraints,
        warningCount=len(warnings),
        errorMessage=outcome.error_message,
        errorCategory=outcome.error_category,
        **counts,
    )
    return AssignmentRunResult(
        scenarioId=scenario_id,
        success=False,
        engineType=config.engine,
        assignments=[],
        metrics=RunMetrics(),
        telemetry=telemetry,
        warnings=warnings,
        lockStats=lock_stats,
        errorMessage=outcome.error_message,
        generatedAt=generated_at,
    )


# =============================================================================
# Main Entry Point
# =============================================================================


def run_assignment(
    accounts: Iterable[Account],
    reps: Iterable[Representative],
    opportunities: Iterable[Opportunity] = (),
    config: Optional[AssignmentConfiguration] = None,
    scenario_id: Optional[str] = None,
    solver: Optional[SolverBackend] = None,
    cancel_event: Optional[threading.Event] = None,
    settings: Optional[Settings] = None,
) -> AssignmentRunResult:
    """
    Run one assignment for a scenario.

    Args:
        accounts: Raw account records
        reps: Raw representative records
        opportunities: Raw opportunity records
        config: Run configuration (defaults apply when None)
        scenario_id: Scenario the run belongs to, echoed in the result
        solver: Solver backend; CBC through PuLP when None
        cancel_event: Set to abort solver calls early
        settings: Service settings; get_settings() when None

    Returns:
        AssignmentRunResult

    Raises:
        StructuralViolationError: The engine produced a structurally invalid set
    """
    settings = settings or get_settings()
    generated_at = datetime.now(timezone.utc)

    config = apply_service_defaults(config or AssignmentConfiguration(), settings)
    config, warnings = validate_configuration(config)

    index = build_reference_index(config.referenceTables, config.territoryMappings)
    scenario = normalize_scenario(accounts, reps, opportunities, index)
    scenario = restrict_to_scope(scenario, config.scope)
    warnings.extend(scenario.warnings)

    units = sorted(
        (a for a in scenario.accounts.values() if a.is_assignment_unit),
        key=lambda a: a.account_id,
    )
    children = sorted(
        (
            a for a in scenario.accounts.values()
            if not a.is_assignment_unit and a.parent_id in scenario.accounts
        ),
        key=lambda a: a.account_id,
    )

    as_of = config.asOfDate or date.today()
    locks = evaluate_stability_locks(units, scenario.reps, config, as_of)
    warnings.extend(locks.warnings)

    normal_rep_count = sum(
        1 for rep in scenario.reps.values() if rep.is_assignable and not rep.is_strategic
    )
    thresholds = calculate_thresholds(
        (u for u in units if not u.is_strategic), normal_rep_count, config, config.scope
    )

    ctx = EngineContext(
        config=config,
        index=index,
        units=units,
        children=children,
        reps=scenario.reps,
        locks=locks,
        thresholds=thresholds,
        solver=solver or default_solver(settings.solver_threads, settings.solver_message),
        cancel_event=cancel_event,
    )

    counts = {
        "numAccounts": len(scenario.accounts),
        "numAssignmentUnits": len(units),
        "numReps": len(ctx.normal_reps) + len(ctx.strategic_reps),
        "numLocked": len(locks.locks),
        "numStrategic": sum(1 for u in units if u.is_strategic),
    }

    logger.info(
        f"Starting {config.engine.value} run for scenario {scenario_id}: "
        f"{counts['numAccounts']} accounts, {counts['numAssignmentUnits']} units, "
        f"{counts['numReps']} reps, {counts['numLocked']} locked"
    )

    outcome = ENGINES[config.engine](ctx)
    warnings.extend(outcome.warnings)

    if not outcome.success:
        logger.error(
            f"Run for scenario {scenario_id} failed ({outcome.error_category}): {outcome.error_message}"
        )
        return _failure_result(
            scenario_id, config, outcome, warnings, locks.stats, counts, generated_at
        )

    placements = cascade_children(outcome.placements, children)

    verify_assignment_structure(
        {account_id: p.rep_id for account_id, p in placements.items()},
        expected_account_ids=scenario.accounts.keys(),
        parent_of_child={c.account_id: c.parent_id for c in children},
        strategic_account_ids=[u.account_id for u in units if u.is_strategic],
        strategic_rep_ids=[r.rep_id for r in ctx.strategic_reps],
    )

    assignments: List[AccountAssignment] = []
    for account_id in sorted(placements):
        placement = placements[account_id]
        account = scenario.accounts[account_id]
        rep = scenario.reps[placement.rep_id]
        score = ctx.score(account, rep)
        assignments.append(
            AccountAssignment(
                accountId=account_id,
                repId=placement.rep_id,
                stage=placement.stage,
                rationale=build_rationale(placement, score, ctx.mix(account.is_customer), account),
                scoreBreakdown=to_breakdown(score),
                previousOwnerId=account.owner_id,
                parentId=None if account.is_parent else account.parent_id,
                isLocked=placement.lock_type is not None,
                lockType=placement.lock_type,
                isStrategic=account.is_strategic,
                isOverCapacity=placement.is_over_capacity,
                assignedAt=generated_at,
            )
        )

    metrics = compute_run_metrics(assignments, scenario.accounts, scenario.reps, thresholds, config)

    telemetry = TelemetryRecord(
        engineType=config.engine,
        scope=config.scope,
        weights=snapshot_weights(config),
        solverStatus=outcome.solver_status,
        solveTimeMs=outcome.solve_time_ms,
        objectiveValue=outcome.objective_value,
        numVariables=outcome.num_variables,
        numConstraints=outcome.num_constraints,
        warningCount=len(warnings),
        **counts,
    )

    if warnings:
        logger.info(f"Run warnings by category: {summarize_warnings(warnings)}")
    logger.info(
        f"Completed {config.engine.value} run for scenario {scenario_id}: "
        f"{len(assignments)} assignments, status={outcome.solver_status.value}, "
        f"{outcome.solve_time_ms:.0f}ms"
    )

    return AssignmentRunResult(
        scenarioId=scenario_id,
        success=True,
        engineType=config.engine,
        assignments=assignments,
        metrics=metrics,
        telemetry=telemetry,
        warnings=warnings,
        lockStats=locks.stats,
        generatedAt=generated_at,
    )


__all__ = [
    "ENGINES",
    "apply_service_defaults",
    "cascade_children",
    "run_assignment",
]
