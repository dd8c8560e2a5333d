"""
Metrics & Rationale Generator Service

Post-hoc statistics over a finished assignment set plus the per-account
rationale text. Nothing here mutates the assignment set: every function reads
its inputs and returns new objects.

Metrics:
- Per-rep load (accounts, ARR, ATR, pipeline) against the ARR band
- Coefficient of variation (std / mean * 100) of ARR, ATR, and pipeline
  across non-strategic reps
- Max overload percent and number of reps over their max band
- Continuity rate overall and for high-value units, ARR-stayed percent
- Geography rates: exact, sibling, cross-region (different parent region)
- Tier rates: exact, one level off, any mismatch

Rates are computed over assignment units; non-split children ride along
with their parent and would otherwise count the same decision twice.

Rationale:
- Waterfall: cites the deciding stage (P0-P4, Residual)
- Relaxed: cites the lock, the force assignment, or the dominant weighted
  score term
- Children: "Child follows parent <id>"
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from book_engine.models.enums import BalanceDimension, BalanceScope, RegionClass, StageLabel
from book_engine.models.schemas import (
    AccountAssignment,
    AssignmentConfiguration,
    BalanceThresholds,
    RepLoad,
    RunMetrics,
)
from book_engine.services.configuration import ObjectiveMix
from book_engine.services.context import CAPACITY_TOLERANCE, Placement
from book_engine.services.normalization import NormalizedAccount, NormalizedRep
from book_engine.services.scoring import PairScore


logger = logging.getLogger(__name__)


# =============================================================================
# Rationale
# =============================================================================


STAGE_RATIONALE = {
    StageLabel.P1_CONTINUITY_GEO: "P1: Continuity + Geography - stays with current owner in region",
    StageLabel.P2_GEOGRAPHY: "P2: Geography - in-region rep with capacity",
    StageLabel.P3_CONTINUITY: "P3: Continuity - stays with current owner across regions",
    StageLabel.P4_BALANCE: "P4: Balance - rep that best evens out workload",
}


def _dominant_term(score: PairScore, mix: ObjectiveMix) -> str:
    contributions = [
        ("Continuity", mix.continuity * score.continuity),
        ("Geography", mix.geography * score.geography),
        ("Team Alignment", mix.team_alignment * score.team_alignment),
    ]
    # Stable: earlier entries win ties
    return max(contributions, key=lambda item: item[1])[0]


def build_rationale(
    placement: Placement,
    score: PairScore,
    mix: ObjectiveMix,
    account: NormalizedAccount,
) -> str:
    """
    Human-readable justification of one assignment.

    Args:
        placement: The decided placement
        score: Scores of the chosen (account, rep) pair
        mix: Objective weights the account was scored with
        account: The placed account

    Returns:
        Rationale string prefixed with the stage label
    """
    stage = placement.stage

    if stage == StageLabel.CHILD:
        return f"Child follows parent {account.parent_id}"

    if placement.lock_type is not None:
        note = f" - {placement.note}" if placement.note else ""
        return f"{stage.value}: Stability lock ({placement.lock_type.value}){note}"

    if stage == StageLabel.P0_HOLDOVER:
        return f"P0: Strategic pool - {placement.note or 'strategic rep'}"

    if stage in STAGE_RATIONALE:
        return f"{STAGE_RATIONALE[stage]} (score {score.weighted_total:.2f})"

    if stage == StageLabel.RESIDUAL:
        if placement.is_over_capacity:
            return "Residual: Force assignment - all eligible reps at capacity"
        return "Residual: Least-loaded eligible rep"

    if placement.forced:
        return "RO: Force Assignment - All Reps At Capacity"

    stays = account.owner_id is not None and account.owner_id == placement.rep_id
    if stays and score.region_class in (RegionClass.EXACT, RegionClass.SIBLING):
        return (
            f"RO: Geography + Continuity - relationship maintained in region "
            f"(score {score.weighted_total:.2f})"
        )

    term = _dominant_term(score, mix)
    if term == "Geography":
        detail = f"{score.region_class.value} region match"
    elif term == "Continuity":
        detail = "relationship maintained" if stays else "no strong relationship elsewhere"
    else:
        detail = "team tier fit"
    return f"RO: {term} - {detail} (score {score.weighted_total:.2f})"


# =============================================================================
# Metrics
# =============================================================================


def _percent(numerator: float, denominator: float) -> float:
    return float(numerator / denominator * 100) if denominator else 0.0


def coefficient_of_variation(values: Sequence[float]) -> float:
    """std / mean * 100 (population std); 0 for empty or zero-mean input."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    mean = arr.mean()
    if mean <= 0:
        return 0.0
    return float(arr.std() / mean * 100)


def capacity_dimensions(scope: BalanceScope) -> Tuple[BalanceDimension, ...]:
    """Bands a rep is held to for a scope; the first one is reported as primary."""
    if scope == BalanceScope.PROSPECTS:
        return (BalanceDimension.PIPELINE,)
    if scope == BalanceScope.CUSTOMERS:
        return (BalanceDimension.ARR,)
    return (BalanceDimension.ARR, BalanceDimension.PIPELINE)


def build_rep_loads(
    assignments: Sequence[AccountAssignment],
    accounts: Mapping[str, NormalizedAccount],
    reps: Mapping[str, NormalizedRep],
    thresholds: Optional[BalanceThresholds],
) -> List[RepLoad]:
    """
    Aggregate each rep's resulting book.

    Loads sum assignment units only (their hierarchy values already include
    non-split children); accountCount counts every assigned account. Each
    non-strategic rep is measured against the capacity bands of the
    thresholds' scope.
    """
    rows = []
    for assignment in assignments:
        account = accounts[assignment.accountId]
        unit = account.is_assignment_unit
        rows.append({
            "repId": assignment.repId,
            "accounts": 1,
            "arr": account.hierarchy_arr if unit else 0.0,
            "atr": account.hierarchy_atr if unit else 0.0,
            "pipeline": account.hierarchy_pipeline if unit else 0.0,
        })

    rep_ids = sorted(
        {rep_id for rep_id, rep in reps.items() if rep.is_assignable} | {row["repId"] for row in rows}
    )
    df = pd.DataFrame(rows, columns=["repId", "accounts", "arr", "atr", "pipeline"])
    grouped = df.groupby("repId").sum().reindex(rep_ids, fill_value=0)

    dimensions = capacity_dimensions(thresholds.scope) if thresholds is not None else (BalanceDimension.ARR,)
    bands = {dim: thresholds.band(dim) if thresholds is not None else None for dim in dimensions}
    arr_band = thresholds.band(BalanceDimension.ARR) if thresholds is not None else None
    pipeline_band = thresholds.band(BalanceDimension.PIPELINE) if thresholds is not None else None
    primary = dimensions[0]

    loads: List[RepLoad] = []
    for rep_id, row in grouped.iterrows():
        rep = reps.get(rep_id)
        is_strategic = bool(rep.is_strategic) if rep else False
        values = {
            BalanceDimension.ARR: float(row["arr"]),
            BalanceDimension.PIPELINE: float(row["pipeline"]),
        }

        overloads = []
        if not is_strategic:
            for dim, band in bands.items():
                if band and band.maximum > 0 and values[dim] > band.maximum + CAPACITY_TOLERANCE:
                    overloads.append((values[dim] - band.maximum) / band.maximum * 100)

        primary_band = None if is_strategic else bands[primary]
        target = primary_band.target if primary_band else 0.0
        maximum = primary_band.maximum if primary_band else 0.0
        value = values[primary]
        loads.append(
            RepLoad(
                repId=rep_id,
                accountCount=int(row["accounts"]),
                arr=values[BalanceDimension.ARR],
                atr=float(row["atr"]),
                pipeline=values[BalanceDimension.PIPELINE],
                arrTarget=arr_band.target if arr_band and not is_strategic else 0.0,
                arrMin=arr_band.minimum if arr_band and not is_strategic else 0.0,
                arrMax=arr_band.maximum if arr_band and not is_strategic else 0.0,
                pipelineTarget=pipeline_band.target if pipeline_band and not is_strategic else 0.0,
                pipelineMin=pipeline_band.minimum if pipeline_band and not is_strategic else 0.0,
                pipelineMax=pipeline_band.maximum if pipeline_band and not is_strategic else 0.0,
                capacityDimension=primary,
                deviationPercent=(value - target) / target * 100 if target else 0.0,
                utilizationPercent=value / maximum * 100 if maximum else 0.0,
                overloadPercent=max(overloads, default=0.0),
                isOverCapacity=bool(overloads),
                isStrategic=is_strategic,
            )
        )
    return loads


def compute_run_metrics(
    assignments: Sequence[AccountAssignment],
    accounts: Mapping[str, NormalizedAccount],
    reps: Mapping[str, NormalizedRep],
    thresholds: Optional[BalanceThresholds],
    config: AssignmentConfiguration,
) -> RunMetrics:
    """
    Compute run metrics for a finished assignment set.

    Args:
        assignments: Final assignments (one per account)
        accounts: Normalized accounts keyed by id
        reps: Normalized reps keyed by id
        thresholds: Thresholds of the normal pool
        config: Validated run configuration

    Returns:
        RunMetrics
    """
    rep_loads = build_rep_loads(assignments, accounts, reps, thresholds)
    normal_loads = [load for load in rep_loads if not load.isStrategic]

    units = [a for a in assignments if accounts[a.accountId].is_assignment_unit]

    owned = [a for a in units if accounts[a.accountId].owner_id]
    stayed = [a for a in owned if a.repId == accounts[a.accountId].owner_id]
    high_value = [
        a for a in owned if accounts[a.accountId].hierarchy_arr >= config.highValueArrThreshold
    ]
    high_value_stayed = [a for a in high_value if a.repId == accounts[a.accountId].owner_id]
    owned_arr = sum(accounts[a.accountId].hierarchy_arr for a in owned)
    stayed_arr = sum(accounts[a.accountId].hierarchy_arr for a in stayed)

    region_classes = [a.scoreBreakdown.regionClass for a in units]
    tier_distances = [
        abs(a.scoreBreakdown.tierDistance) for a in units if a.scoreBreakdown.tierDistance is not None
    ]

    stage_counts: Dict[str, int] = {}
    for assignment in assignments:
        stage_counts[assignment.stage.value] = stage_counts.get(assignment.stage.value, 0) + 1

    metrics = RunMetrics(
        totalAccounts=len(assignments),
        totalReps=len(rep_loads),
        arrVariancePercent=coefficient_of_variation([load.arr for load in normal_loads]),
        atrVariancePercent=coefficient_of_variation([load.atr for load in normal_loads]),
        pipelineVariancePercent=coefficient_of_variation([load.pipeline for load in normal_loads]),
        maxOverloadPercent=max((load.overloadPercent for load in normal_loads), default=0.0),
        repsOverCapacity=sum(1 for load in normal_loads if load.isOverCapacity),
        continuityRate=_percent(len(stayed), len(owned)),
        highValueContinuityRate=_percent(len(high_value_stayed), len(high_value)),
        arrStayedPercent=_percent(stayed_arr, owned_arr),
        exactGeoMatchRate=_percent(region_classes.count(RegionClass.EXACT), len(units)),
        siblingGeoMatchRate=_percent(region_classes.count(RegionClass.SIBLING), len(units)),
        crossRegionRate=_percent(
            sum(1 for c in region_classes if c not in (RegionClass.EXACT, RegionClass.SIBLING)), len(units)
        ),
        exactTierMatchRate=_percent(tier_distances.count(0), len(tier_distances)),
        oneLevelTierMismatchRate=_percent(tier_distances.count(1), len(tier_distances)),
        tierMismatchRate=_percent(sum(1 for d in tier_distances if d > 0), len(tier_distances)),
        stageCounts=dict(sorted(stage_counts.items())),
        repLoads=rep_loads,
        thresholds=thresholds,
    )

    logger.info(
        f"Run metrics: {metrics.totalAccounts} accounts, ARR CV {metrics.arrVariancePercent:.1f}%, "
        f"continuity {metrics.continuityRate:.1f}%, {metrics.repsOverCapacity} reps over capacity"
    )
    return metrics


__all__ = [
    "STAGE_RATIONALE",
    "build_rationale",
    "coefficient_of_variation",
    "capacity_dimensions",
    "build_rep_loads",
    "compute_run_metrics",
]
