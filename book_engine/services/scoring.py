"""
Scoring Functions Service

Pure, total functions of (account, candidate rep, configuration) -> [0, 1].
They never raise: missing inputs resolve to neutral defaults and every result
is clamped into [0, 1].

Objectives:
- Continuity: composite of tenure, owner stability, and account value, earned
  only by the current owner; every other rep receives the unweighted base
- Geography: constant per region-pair class (exact / sibling / parent /
  global / unknown)
- Team alignment: constant per absolute tier distance, minus a penalty per
  level when the rep's tier exceeds the account's

The weighted total uses the customer or prospect objective mix according to
the unit's customer flag.
"""

import math
from dataclasses import dataclass
from typing import Optional

from book_engine.models.enums import RegionClass
from book_engine.models.schemas import AssignmentConfiguration, ScoreBreakdown
from book_engine.services.configuration import ObjectiveMix, objective_mix
from book_engine.services.normalization import NormalizedAccount, NormalizedRep
from book_engine.services.reference_tables import (
    ReferenceIndex,
    classify_region_pair,
    tier_index,
)


def clamp01(value: float) -> float:
    """Clamp into [0, 1]; NaN becomes 0."""
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


# =============================================================================
# Continuity
# =============================================================================


def continuity_score(
    account: NormalizedAccount,
    rep: NormalizedRep,
    config: AssignmentConfiguration,
) -> float:
    """
    Composite continuity score.

    base + wTenure*min(1, daysOwned/maxDays)
         + wStability*max(0, 1 - ownerCount/maxOwners)
         + wValue*min(1, ARR/valueThreshold)

    Only the current owner earns the composite. A departing current owner
    scores 0 for itself.
    """
    params = config.continuity
    if account.owner_id is None or rep.rep_id != account.owner_id:
        return clamp01(params.baseContinuity)
    if rep.is_backfill_source:
        return 0.0

    days_owned = account.days_since_owner_change or 0
    owner_count = account.owner_count if account.owner_count is not None else 1

    tenure = min(1.0, max(0.0, days_owned / params.tenureMaxDays))
    stability = max(0.0, 1.0 - owner_count / params.stabilityMaxOwners)
    value = min(1.0, max(0.0, account.hierarchy_arr / params.valueThreshold))

    return clamp01(
        params.baseContinuity
        + params.tenureWeight * tenure
        + params.stabilityWeight * stability
        + params.valueWeight * value
    )


# =============================================================================
# Geography
# =============================================================================


def geography_score(
    account: NormalizedAccount,
    rep: NormalizedRep,
    config: AssignmentConfiguration,
    index: ReferenceIndex,
) -> float:
    region_class = classify_region_pair(account.region, rep.region, index)
    return geography_score_for_class(region_class, config)


def geography_score_for_class(region_class: RegionClass, config: AssignmentConfiguration) -> float:
    geo = config.geography
    scores = {
        RegionClass.EXACT: geo.exact,
        RegionClass.SIBLING: geo.sibling,
        RegionClass.PARENT: geo.parent,
        RegionClass.GLOBAL: geo.globalFallback,
        RegionClass.UNKNOWN: geo.unknown,
    }
    return clamp01(scores[region_class])


# =============================================================================
# Team Alignment
# =============================================================================


def tier_distance(
    account: NormalizedAccount,
    rep: NormalizedRep,
    index: ReferenceIndex,
) -> Optional[int]:
    """Signed tier distance (rep minus account), or None when either tier is unknown."""
    account_idx = tier_index(account.team_tier, index)
    rep_idx = tier_index(rep.team_tier, index)
    if account_idx is None or rep_idx is None:
        return None
    return rep_idx - account_idx


def team_alignment_score(
    account: NormalizedAccount,
    rep: NormalizedRep,
    config: AssignmentConfiguration,
    index: ReferenceIndex,
) -> float:
    team = config.team
    signed = tier_distance(account, rep, index)
    if signed is None:
        return clamp01(team.unknown)

    distance = abs(signed)
    if distance == 0:
        score = team.exact
    elif distance == 1:
        score = team.oneLevel
    elif distance == 2:
        score = team.twoLevels
    else:
        score = team.threeOrMore

    # Rep is a larger-tier team reaching down to a smaller account
    if signed > 0:
        score -= team.reachingDownPenalty * distance

    return clamp01(score)


# =============================================================================
# Composite
# =============================================================================


@dataclass(frozen=True)
class PairScore:
    """All scores for one (account, rep) pair."""
    continuity: float
    geography: float
    team_alignment: float
    weighted_total: float
    region_class: RegionClass
    tier_distance: Optional[int]


def weighted_total(
    continuity: float,
    geography: float,
    team_alignment: float,
    mix: ObjectiveMix,
) -> float:
    return clamp01(
        mix.continuity * continuity + mix.geography * geography + mix.team_alignment * team_alignment
    )


def score_pair(
    account: NormalizedAccount,
    rep: NormalizedRep,
    config: AssignmentConfiguration,
    index: ReferenceIndex,
    mix: Optional[ObjectiveMix] = None,
) -> PairScore:
    """
    Score one (account, rep) pair on every objective.

    Args:
        account: Assignment unit (or child) being placed
        rep: Candidate rep
        config: Validated run configuration
        index: Reference index for region/tier classification
        mix: Precomputed objective mix; derived from config when None

    Returns:
        PairScore with each objective and the weighted total in [0, 1]
    """
    continuity = continuity_score(account, rep, config)
    region_class = classify_region_pair(account.region, rep.region, index)
    geography = geography_score_for_class(region_class, config)
    team = team_alignment_score(account, rep, config, index)
    if mix is None:
        mix = objective_mix(config, account.is_customer)

    return PairScore(
        continuity=continuity,
        geography=geography,
        team_alignment=team,
        weighted_total=weighted_total(continuity, geography, team, mix),
        region_class=region_class,
        tier_distance=tier_distance(account, rep, index),
    )


def describe_score(score: PairScore) -> str:
    """One-line textual breakdown of a pair score."""
    tier = "unknown" if score.tier_distance is None else f"{score.tier_distance:+d}"
    return (
        f"continuity {score.continuity:.2f}, geography {score.geography:.2f} "
        f"({score.region_class.value}), team {score.team_alignment:.2f} (tier {tier}), "
        f"total {score.weighted_total:.2f}"
    )


def to_breakdown(score: PairScore) -> ScoreBreakdown:
    return ScoreBreakdown(
        continuity=score.continuity,
        geography=score.geography,
        teamAlignment=score.team_alignment,
        weightedTotal=score.weighted_total,
        regionClass=score.region_class,
        tierDistance=score.tier_distance,
        summary=describe_score(score),
    )


__all__ = [
    "clamp01",
    "continuity_score",
    "geography_score",
    "geography_score_for_class",
    "tier_distance",
    "team_alignment_score",
    "PairScore",
    "weighted_total",
    "score_pair",
    "describe_score",
    "to_breakdown",
]
