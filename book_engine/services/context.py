"""
Shared engine context.

Everything both engines need for one run, passed explicitly by value:
the validated configuration, the reference index, normalized units and reps,
lock decisions, thresholds for the normal (non-strategic) pool, and the solver
backend. Also holds the result types the engines return and the eligibility,
capacity, and scoring helpers they share.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from book_engine.models.enums import (
    BalanceDimension,
    ErrorCategory,
    LockType,
    SolverStatus,
    StageLabel,
)
from book_engine.models.schemas import (
    AssignmentConfiguration,
    AssignmentWarning,
    BalanceThresholds,
)
from book_engine.services.configuration import ObjectiveMix, objective_mix
from book_engine.services.normalization import NormalizedAccount, NormalizedRep
from book_engine.services.reference_tables import ReferenceIndex
from book_engine.services.scoring import PairScore, score_pair
from book_engine.services.solver import SolverBackend
from book_engine.services.stability_locks import LockEvaluation
from book_engine.services.thresholds import capacity_dimension, unit_dimension_value


CAPACITY_TOLERANCE = 1e-6


@dataclass
class EngineContext:
    """Inputs of one engine run."""
    config: AssignmentConfiguration
    index: ReferenceIndex
    units: List[NormalizedAccount]
    children: List[NormalizedAccount]
    reps: Dict[str, NormalizedRep]
    locks: LockEvaluation
    thresholds: BalanceThresholds
    solver: SolverBackend
    cancel_event: Optional[threading.Event] = None
    _score_cache: Dict[Tuple[str, str], PairScore] = field(default_factory=dict, repr=False)
    _mix_cache: Dict[bool, ObjectiveMix] = field(default_factory=dict, repr=False)

    @property
    def normal_reps(self) -> List[NormalizedRep]:
        """Assignable non-strategic reps, ordered by id."""
        return [r for r in self.reps.values() if r.is_assignable and not r.is_strategic]

    @property
    def strategic_reps(self) -> List[NormalizedRep]:
        """Assignable strategic reps, ordered by id."""
        return [r for r in self.reps.values() if r.is_assignable and r.is_strategic]

    def mix(self, is_customer: bool) -> ObjectiveMix:
        if is_customer not in self._mix_cache:
            self._mix_cache[is_customer] = objective_mix(self.config, is_customer)
        return self._mix_cache[is_customer]

    def score(self, unit: NormalizedAccount, rep: NormalizedRep) -> PairScore:
        key = (unit.account_id, rep.rep_id)
        if key not in self._score_cache:
            self._score_cache[key] = score_pair(
                unit, rep, self.config, self.index, self.mix(unit.is_customer)
            )
        return self._score_cache[key]

    def is_eligible(self, unit: NormalizedAccount, rep: NormalizedRep) -> bool:
        """
        Whether an unlocked unit may be placed with a rep.

        Strategic units go only to strategic reps and vice versa; renewal
        specialists only take units at or below renewalSpecialistMaxArr.
        """
        if not rep.is_assignable:
            return False
        if unit.is_strategic != rep.is_strategic:
            return False
        if rep.is_renewal_specialist and unit.hierarchy_arr > self.config.renewalSpecialistMaxArr:
            return False
        return True

    def eligible_reps(self, unit: NormalizedAccount) -> List[NormalizedRep]:
        return [rep for rep in self.reps.values() if self.is_eligible(unit, rep)]


# =============================================================================
# Capacity
# =============================================================================


def capacity_usage(unit: NormalizedAccount) -> Tuple[BalanceDimension, float]:
    """(dimension, amount) a unit consumes: ARR for customers, pipeline for prospects."""
    dimension = capacity_dimension(unit)
    return dimension, unit_dimension_value(unit, dimension)


def capacity_limit(thresholds: BalanceThresholds, dimension: BalanceDimension) -> Optional[float]:
    band = thresholds.band(dimension)
    return band.maximum if band is not None else None


def fits_capacity(
    unit: NormalizedAccount,
    rep: NormalizedRep,
    loads: Dict[str, Dict[BalanceDimension, float]],
    thresholds: BalanceThresholds,
) -> bool:
    """True when adding the unit keeps the rep within its max band; strategic reps have no cap."""
    if rep.is_strategic:
        return True
    dimension, amount = capacity_usage(unit)
    if amount <= 0:
        return True
    limit = capacity_limit(thresholds, dimension)
    if limit is None:
        return True
    current = loads.get(rep.rep_id, {}).get(dimension, 0.0)
    return current + amount <= limit + CAPACITY_TOLERANCE


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Placement:
    """
    One unit (or child) placed with a rep.

    Attributes:
        stage: Deciding rule
        lock_type: Lock that pinned the unit, when any
        is_over_capacity: Placement pushed the rep past its max band
        forced: Placed by a force-assignment fallback
        note: Extra context for the rationale (lock reason, fallback cause)
    """
    account_id: str
    rep_id: str
    stage: StageLabel
    lock_type: Optional[LockType] = None
    is_over_capacity: bool = False
    forced: bool = False
    note: Optional[str] = None


@dataclass
class EngineOutcome:
    """
    Result of one engine run, before children are cascaded and metrics built.

    success=False always comes with an empty placements dict.
    """
    success: bool
    placements: Dict[str, Placement] = field(default_factory=dict)
    warnings: List[AssignmentWarning] = field(default_factory=list)
    solver_status: SolverStatus = SolverStatus.COMPLETE
    solve_time_ms: float = 0.0
    objective_value: Optional[float] = None
    num_variables: int = 0
    num_constraints: int = 0
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @classmethod
    def failure(
        cls,
        message: str,
        category: ErrorCategory,
        warnings: Optional[List[AssignmentWarning]] = None,
        solver_status: SolverStatus = SolverStatus.ERROR,
        **telemetry,
    ) -> "EngineOutcome":
        return cls(
            success=False,
            placements={},
            warnings=list(warnings or []),
            solver_status=solver_status,
            error_message=message,
            error_category=category,
            **telemetry,
        )


__all__ = [
    "CAPACITY_TOLERANCE",
    "EngineContext",
    "capacity_usage",
    "capacity_limit",
    "fits_capacity",
    "Placement",
    "EngineOutcome",
]
