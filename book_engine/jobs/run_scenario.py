"""
Batch Scenario Run Job

Runs one scenario from CSV files outside the API: loads accounts, reps, and
(optionally) opportunities, applies a JSON run configuration, runs the engine,
and optionally writes the result JSON and persists the assignment set.

Usage:
    python -m book_engine.jobs.run_scenario SCENARIO_ID accounts.csv reps.csv \\
        --opportunities opportunities.csv --config config.json \\
        --output result.json --persist

    from book_engine.jobs.run_scenario import run_scenario_job
    summary = await run_scenario_job("q3-plan", Path("accounts.csv"), Path("reps.csv"))

Exit status is 0 for a successful run and 1 for a failed run (infeasible,
no eligible reps). Unreadable input raises ValueError.
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from book_engine.core.database import close_db
from book_engine.models.schemas import AssignmentConfiguration, AssignmentRunResult
from book_engine.services.engine import run_assignment
from book_engine.services.ingestion import load_scenario_files
from book_engine.services.persistence import ensure_schema, persist_run


logger = logging.getLogger(__name__)


@dataclass
class ScenarioJobResult:
    """Outcome of one batch run."""
    scenario_id: str
    success: bool
    assignment_count: int
    warning_count: int
    issue_count: int
    persisted_count: int = 0
    error_message: Optional[str] = None
    result: Optional[AssignmentRunResult] = None


def load_configuration(path: Optional[Path]) -> AssignmentConfiguration:
    """Read a run configuration JSON file; defaults when no path is given."""
    if path is None:
        return AssignmentConfiguration()
    return AssignmentConfiguration.model_validate_json(path.read_text())


def format_summary(result: AssignmentRunResult) -> str:
    """Short human-readable summary of a run."""
    telemetry = result.telemetry
    lines = [
        f"Scenario {result.scenarioId} ({result.engineType.value}): "
        f"{'success' if result.success else 'FAILED'}",
        f"  status={telemetry.solverStatus.value} solve={telemetry.solveTimeMs:.0f}ms "
        f"accounts={telemetry.numAccounts} units={telemetry.numAssignmentUnits} "
        f"reps={telemetry.numReps} locked={telemetry.numLocked}",
    ]
    if result.success:
        metrics = result.metrics
        lines.append(
            f"  ARR CV={metrics.arrVariancePercent:.1f}% continuity={metrics.continuityRate:.1f}% "
            f"exact geo={metrics.exactGeoMatchRate:.1f}% over capacity={metrics.repsOverCapacity}"
        )
        lines.append(f"  stages: {metrics.stageCounts}")
    else:
        lines.append(f"  error: {result.errorMessage}")
    if result.warnings:
        lines.append(f"  warnings: {len(result.warnings)}")
    return "\n".join(lines)


async def run_scenario_job(
    scenario_id: str,
    accounts_path: Path,
    reps_path: Path,
    opportunities_path: Optional[Path] = None,
    config_path: Optional[Path] = None,
    output_path: Optional[Path] = None,
    persist: bool = False,
) -> ScenarioJobResult:
    """
    Run one scenario from files.

    Args:
        scenario_id: Scenario identifier used for persistence
        accounts_path: Accounts CSV
        reps_path: Representatives CSV
        opportunities_path: Optional opportunities CSV
        config_path: Optional run configuration JSON
        output_path: Where to write the full result JSON
        persist: Replace the scenario's stored assignment set

    Returns:
        ScenarioJobResult

    Raises:
        ValueError: If the account or rep file yields no usable records, or
            the configuration file is invalid
    """
    files = load_scenario_files(accounts_path, reps_path, opportunities_path)
    for issue in files.issues:
        logger.warning(f"Input issue [{issue.field}] row {issue.rowNumber}: {issue.message}")

    if not files.accounts or not files.reps:
        raise ValueError(
            f"Scenario {scenario_id} has no usable "
            f"{'accounts' if not files.accounts else 'reps'} ({len(files.issues)} input issues)"
        )

    config = load_configuration(config_path)

    result = await asyncio.to_thread(
        run_assignment,
        files.accounts,
        files.reps,
        files.opportunities,
        config,
        scenario_id,
    )

    if output_path is not None:
        output_path.write_text(result.model_dump_json(indent=2))
        logger.info(f"Wrote run result to {output_path}")

    persisted_count = 0
    if persist:
        try:
            await ensure_schema()
            persisted_count = await persist_run(result)
        finally:
            await close_db()

    return ScenarioJobResult(
        scenario_id=scenario_id,
        success=result.success,
        assignment_count=len(result.assignments),
        warning_count=len(result.warnings),
        issue_count=len(files.issues),
        persisted_count=persisted_count,
        error_message=result.errorMessage,
        result=result,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one book assignment scenario from CSV files")
    parser.add_argument("scenario_id", help="Scenario identifier")
    parser.add_argument("accounts", type=Path, help="Accounts CSV")
    parser.add_argument("reps", type=Path, help="Representatives CSV")
    parser.add_argument("--opportunities", type=Path, help="Opportunities CSV")
    parser.add_argument("--config", type=Path, help="Run configuration JSON")
    parser.add_argument("--output", type=Path, help="Write the full result JSON here")
    parser.add_argument("--persist", action="store_true", help="Store the assignment set in the database")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    summary = asyncio.run(
        run_scenario_job(
            args.scenario_id,
            args.accounts,
            args.reps,
            opportunities_path=args.opportunities,
            config_path=args.config,
            output_path=args.output,
            persist=args.persist,
        )
    )
    print(format_summary(summary.result))
    return 0 if summary.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
