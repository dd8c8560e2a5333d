"""
Balance Threshold Calculator Service

Derives each rep's target and min/max band per balance dimension from the
totals of the run's pool.

Formulas:
    target  = sum(dimension over pool) / activeRepCount
    min     = target * (1 - variance)
    max     = target * (1 + variance)
    absMin  = max(0, target * (1 - absoluteVariance))
    absMax  = target * (1 + absoluteVariance)

variance is the dimension's own variance when configured, otherwise
capacityVariancePercent / 100. Active reps are reps that are not backfill
sources and are included in assignments.

Thresholds are computed for one roster and one scope and are never reused
across a scope change; the engine recomputes them on every run.

ARR and pipeline bands are always computed because they drive capacity
(ARR for customer units, pipeline for prospect units) even when their
balance penalty is switched off.
"""

import logging
from typing import Iterable, List, Sequence

from book_engine.models.enums import BalanceDimension, BalanceScope
from book_engine.models.schemas import (
    AssignmentConfiguration,
    BalanceThresholds,
    ThresholdBand,
)
from book_engine.services.configuration import enabled_dimensions
from book_engine.services.normalization import NormalizedAccount


logger = logging.getLogger(__name__)

CAPACITY_DIMENSIONS = (BalanceDimension.ARR, BalanceDimension.PIPELINE)

QUARTER_DIMENSIONS = {
    "Q1": BalanceDimension.RENEWAL_Q1,
    "Q2": BalanceDimension.RENEWAL_Q2,
    "Q3": BalanceDimension.RENEWAL_Q3,
    "Q4": BalanceDimension.RENEWAL_Q4,
}


def _expansion_tier_is(unit: NormalizedAccount, level: str) -> bool:
    tier = (unit.expansion_tier or "").strip().lower().replace(" ", "")
    return tier == f"tier{level}"


def unit_dimension_value(unit: NormalizedAccount, dimension: BalanceDimension) -> float:
    """
    Contribution of one assignment unit to a rep's load on a dimension.

    Monetary dimensions use the unit's hierarchy values; count dimensions
    contribute 1 when the unit matches the condition.
    """
    if dimension == BalanceDimension.ARR:
        return unit.hierarchy_arr
    if dimension == BalanceDimension.ATR:
        return unit.hierarchy_atr
    if dimension == BalanceDimension.PIPELINE:
        return unit.hierarchy_pipeline
    if dimension == BalanceDimension.TIER_1:
        return 1.0 if _expansion_tier_is(unit, "1") else 0.0
    if dimension == BalanceDimension.TIER_2:
        return 1.0 if _expansion_tier_is(unit, "2") else 0.0
    if dimension == BalanceDimension.RISK_ACCOUNTS:
        return 1.0 if unit.hierarchy_risk_count > 0 else 0.0

    quarter = (unit.renewal_quarter or "").strip().upper()[:2]
    return 1.0 if QUARTER_DIMENSIONS.get(quarter) == dimension else 0.0


def capacity_dimension(unit: NormalizedAccount) -> BalanceDimension:
    """Dimension a unit consumes capacity on: ARR for customers, pipeline for prospects."""
    return BalanceDimension.ARR if unit.is_customer else BalanceDimension.PIPELINE


def dimension_variance(dimension: BalanceDimension, config: AssignmentConfiguration) -> float:
    settings = config.balance.for_dimension(dimension)
    if settings.variance is not None:
        return settings.variance
    return config.capacityVariancePercent / 100.0


def calculate_band(
    dimension: BalanceDimension,
    total: float,
    active_rep_count: int,
    config: AssignmentConfiguration,
) -> ThresholdBand:
    """Compute one dimension's band from a pool total."""
    variance = dimension_variance(dimension, config)
    absolute = max(variance, config.balance.for_dimension(dimension).absoluteVariance)
    target = total / active_rep_count if active_rep_count > 0 else 0.0

    return ThresholdBand(
        dimension=dimension,
        total=max(0.0, total),
        target=max(0.0, target),
        minimum=max(0.0, target * (1 - variance)),
        maximum=max(0.0, target * (1 + variance)),
        absoluteMinimum=max(0.0, target * (1 - absolute)),
        absoluteMaximum=max(0.0, target * (1 + absolute)),
        variance=variance,
    )


def threshold_dimensions(config: AssignmentConfiguration) -> List[BalanceDimension]:
    """Enabled balance dimensions plus the capacity dimensions."""
    dimensions = list(enabled_dimensions(config))
    for dimension in CAPACITY_DIMENSIONS:
        if dimension not in dimensions:
            dimensions.append(dimension)
    return dimensions


def calculate_thresholds(
    units: Iterable[NormalizedAccount],
    active_rep_count: int,
    config: AssignmentConfiguration,
    scope: BalanceScope,
) -> BalanceThresholds:
    """
    Calculate threshold bands for a pool of assignment units.

    Args:
        units: Assignment units in the balancing pool
        active_rep_count: Number of reps sharing the pool
        config: Validated run configuration
        scope: Scope the pool was drawn from

    Returns:
        BalanceThresholds for every enabled dimension plus ARR and pipeline
    """
    pool: Sequence[NormalizedAccount] = list(units)
    bands = {}
    for dimension in threshold_dimensions(config):
        total = sum(unit_dimension_value(unit, dimension) for unit in pool)
        bands[dimension] = calculate_band(dimension, total, active_rep_count, config)

    thresholds = BalanceThresholds(
        scope=scope,
        activeRepCount=active_rep_count,
        accountCount=len(pool),
        bands=bands,
    )

    arr_band = bands[BalanceDimension.ARR]
    logger.info(
        f"Thresholds for {len(pool)} units across {active_rep_count} reps: "
        f"ARR target={arr_band.target:,.0f} band=[{arr_band.minimum:,.0f}, {arr_band.maximum:,.0f}]"
    )
    return thresholds


__all__ = [
    "CAPACITY_DIMENSIONS",
    "QUARTER_DIMENSIONS",
    "unit_dimension_value",
    "capacity_dimension",
    "dimension_variance",
    "calculate_band",
    "threshold_dimensions",
    "calculate_thresholds",
]
