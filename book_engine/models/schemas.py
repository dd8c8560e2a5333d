"""
Pydantic models for the Book Assignment Engine.

This module provides type-safe validation and serialization for:
- Input records (accounts, opportunities, representatives)
- Run configuration (objectives, balance, stability, scoring constants,
  reference tables)
- Run output (per-account assignments, score breakdowns, rep loads, metrics,
  telemetry, warnings)

Field names are camelCase to match the JSON contract of the HTTP API.
Configuration models are frozen: a run's configuration is validated once at
start and never mutated afterwards; corrections produce a new copy.

All models use Pydantic v2 syntax.
"""

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from book_engine.models.enums import (
    BalanceDimension,
    BalanceScope,
    EngineType,
    ErrorCategory,
    LockType,
    RegionClass,
    RiskSeverity,
    SolverStatus,
    StageLabel,
    WarningCategory,
    WarningSeverity,
)


# =============================================================================
# Input Records
# =============================================================================


class Account(BaseModel):
    """
    Raw account record for one scenario.

    Only accountId is required. Every other field has a neutral default so
    sparse imports never fail validation; the normalizer reports the gaps
    that matter as warnings.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "accountId": "001A",
                "name": "Acme Corp",
                "parentId": None,
                "ownerId": "rep-1",
                "arr": 250000.0,
                "territory": "North East",
                "employees": 800,
                "expansionTier": "Tier 1",
                "riskSeverity": "none",
                "daysSinceOwnerChange": 400,
                "ownerCount": 2,
                "renewalDate": "2026-03-31",
                "renewalQuarter": "Q1-FY27",
            }
        }
    )

    accountId: str = Field(..., min_length=1, description="Unique account identifier")
    name: Optional[str] = Field(default=None, description="Display name")
    parentId: Optional[str] = Field(
        default=None,
        description="Ultimate parent account id; null or self means the account is a parent"
    )
    ownerId: Optional[str] = Field(default=None, description="Current owner rep id")

    arr: float = Field(default=0.0, ge=0.0, description="Account's own ARR")
    hierarchyArr: float = Field(
        default=0.0, ge=0.0,
        description="Explicit hierarchy ARR; wins over the rolled-up value when non-zero"
    )
    atr: float = Field(default=0.0, ge=0.0, description="Account's own available-to-renew")
    hierarchyAtr: float = Field(
        default=0.0, ge=0.0,
        description="Explicit hierarchy ATR; wins over the rolled-up value when non-zero"
    )
    pipeline: float = Field(default=0.0, ge=0.0, description="Open pipeline value")
    riskCount: int = Field(default=0, ge=0, description="Number of open churn-risk events")
    riskSeverity: RiskSeverity = Field(default=RiskSeverity.NONE, description="Churn-risk severity")

    territory: Optional[str] = Field(default=None, description="Sales territory or region string")
    employees: Optional[int] = Field(default=None, ge=0, description="Employee count")
    teamTier: Optional[str] = Field(
        default=None,
        description="Explicit team-size tier; derived from employees when absent"
    )
    expansionTier: Optional[str] = Field(default=None, description="Expansion tier, e.g. 'Tier 1'")

    daysSinceOwnerChange: Optional[int] = Field(
        default=None, ge=0, description="Days the current owner has held the account"
    )
    ownerCount: Optional[int] = Field(
        default=None, ge=0, description="Lifetime number of distinct owners"
    )
    renewalDate: Optional[date] = Field(default=None, description="Next renewal event date")
    renewalQuarter: Optional[str] = Field(
        default=None, description="Renewal quarter label, e.g. 'Q1' or 'Q1-FY27'"
    )

    peFirm: Optional[str] = Field(default=None, description="Private-equity firm affiliation")
    isStrategic: bool = Field(default=False, description="Belongs to the strategic pool")
    manualLock: bool = Field(default=False, description="Manually pinned to its owner")
    manualLockReason: Optional[str] = Field(default=None, description="Reason for the manual lock")
    backfillEligible: bool = Field(
        default=True,
        description="Whether the account migrates with a departing owner's book"
    )
    excludeFromAssignment: bool = Field(
        default=False, description="Skip this account entirely for the run"
    )


class Opportunity(BaseModel):
    """
    Open opportunity attached to an account.

    Renewal-type opportunities contribute to ATR; every opportunity's netArr
    contributes to pipeline.
    """
    opportunityId: str = Field(..., min_length=1, description="Opportunity identifier")
    accountId: str = Field(..., min_length=1, description="Owning account id")
    opportunityType: Optional[str] = Field(default=None, description="e.g. 'Renewals', 'New Business'")
    netArr: float = Field(default=0.0, description="Net ARR of the opportunity")
    availableToRenew: float = Field(default=0.0, ge=0.0, description="Renewable amount")


class Representative(BaseModel):
    """
    Sales representative available to a scenario.

    Special classes are independent flags: a rep can be both a backfill target
    and a renewal specialist, for instance.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "repId": "rep-1",
                "name": "Jordan Lee",
                "region": "North East",
                "teamTier": "MM",
                "isActive": True,
                "includeInAssignments": True,
            }
        }
    )

    repId: str = Field(..., min_length=1, description="Unique rep identifier")
    name: Optional[str] = Field(default=None, description="Display name")
    region: Optional[str] = Field(default=None, description="Region or sub-region the rep covers")
    teamTier: Optional[str] = Field(default=None, description="Team-size tier the rep sells to")
    isActive: bool = Field(default=True, description="Currently employed and selling")
    includeInAssignments: bool = Field(default=True, description="Eligible for new assignments")
    isStrategic: bool = Field(default=False, description="Receives only strategic accounts")
    isBackfillSource: bool = Field(default=False, description="Departing; book migrates away")
    backfillTargetId: Optional[str] = Field(
        default=None, description="Rep receiving this rep's book when departing"
    )
    isBackfillTarget: bool = Field(default=False, description="Designated receiver of a departing book")
    isRenewalSpecialist: bool = Field(default=False, description="Routed small accounts only")
    isPlaceholder: bool = Field(default=False, description="Open headcount")


# =============================================================================
# Reference Tables (shipped as data, overridable per run)
# =============================================================================


class EmployeeBand(BaseModel):
    """Employee-count band mapping to a team tier; maxEmployees is exclusive, null means unbounded."""
    model_config = ConfigDict(frozen=True)

    maxEmployees: Optional[int] = Field(default=None, ge=0)
    tier: str


class ReferenceTables(BaseModel):
    """
    Region hierarchy and tier ordering used by scoring.

    regions maps each parent region to its sub-regions. territoryKeywords maps
    a lower-case keyword to a region name for territory auto-mapping. tierOrder
    lists team tiers from smallest to largest.
    """
    model_config = ConfigDict(frozen=True)

    regions: Dict[str, List[str]] = Field(default_factory=dict)
    territoryKeywords: Dict[str, str] = Field(default_factory=dict)
    tierOrder: List[str] = Field(default_factory=list)
    employeeBands: List[EmployeeBand] = Field(default_factory=list)


# =============================================================================
# Run Configuration
# =============================================================================


class ObjectiveSetting(BaseModel):
    """Enable flag and relative weight of one scoring objective."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    weight: float = Field(default=0.0, ge=0.0)


class ObjectiveWeights(BaseModel):
    """
    Weights of the three scoring objectives.

    Enabled weights are normalized to sum to 1 at run start.
    """
    model_config = ConfigDict(frozen=True)

    continuity: ObjectiveSetting = Field(default_factory=lambda: ObjectiveSetting(weight=0.35))
    geography: ObjectiveSetting = Field(default_factory=lambda: ObjectiveSetting(weight=0.35))
    teamAlignment: ObjectiveSetting = Field(default_factory=lambda: ObjectiveSetting(weight=0.30))


def _default_prospect_objectives() -> ObjectiveWeights:
    return ObjectiveWeights(
        continuity=ObjectiveSetting(weight=0.20),
        geography=ObjectiveSetting(weight=0.45),
        teamAlignment=ObjectiveSetting(weight=0.35),
    )


class BalanceDimensionConfig(BaseModel):
    """
    Balance settings for one dimension.

    penalty is a 0-1 relative weight, not a currency amount. variance overrides
    the run's capacityVariancePercent for this dimension (as a fraction).
    absoluteVariance bounds the buffer zone beyond the variance band; deviation
    past it is penalized most heavily.
    """
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    variance: Optional[float] = Field(default=None, ge=0.0)
    absoluteVariance: float = Field(default=0.5, ge=0.0)


class BalanceConfig(BaseModel):
    """Per-dimension balance settings plus the global intensity multiplier."""
    model_config = ConfigDict(frozen=True)

    arr: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(penalty=0.5, variance=0.10)
    )
    atr: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(penalty=0.3, variance=0.15)
    )
    pipeline: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(penalty=0.4, variance=0.15)
    )
    tier1: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(enabled=False, penalty=0.1, variance=0.5)
    )
    tier2: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(enabled=False, penalty=0.1, variance=0.5)
    )
    riskAccounts: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(enabled=False, penalty=0.1)
    )
    renewalConcentration: BalanceDimensionConfig = Field(
        default_factory=lambda: BalanceDimensionConfig(enabled=False, penalty=0.1)
    )
    intensityMultiplier: float = Field(default=1.0, ge=0.0)

    def for_dimension(self, dimension: BalanceDimension) -> BalanceDimensionConfig:
        """Return the settings that govern a dimension (quarters share renewalConcentration)."""
        mapping = {
            BalanceDimension.ARR: self.arr,
            BalanceDimension.ATR: self.atr,
            BalanceDimension.PIPELINE: self.pipeline,
            BalanceDimension.TIER_1: self.tier1,
            BalanceDimension.TIER_2: self.tier2,
            BalanceDimension.RISK_ACCOUNTS: self.riskAccounts,
        }
        return mapping.get(dimension, self.renewalConcentration)


class StabilityConfig(BaseModel):
    """Stability lock toggles and day thresholds."""
    model_config = ConfigDict(frozen=True)

    riskLockEnabled: bool = True
    riskSeverityFloor: RiskSeverity = Field(
        default=RiskSeverity.MONITORING,
        description="Accounts strictly above this severity are locked"
    )
    renewalLockEnabled: bool = True
    renewalWindowDays: int = Field(default=90, ge=0)
    peFirmLockEnabled: bool = True
    peFirmOwners: Dict[str, str] = Field(
        default_factory=dict,
        description="PE firm name -> rep id that should hold every account of that firm"
    )
    recentChangeLockEnabled: bool = True
    recentChangeDays: int = Field(default=90, ge=0)
    manualLockEnabled: bool = True
    backfillMigrationEnabled: bool = True


class ContinuityConfig(BaseModel):
    """Composite continuity score parameters."""
    model_config = ConfigDict(frozen=True)

    baseContinuity: float = Field(default=0.10, ge=0.0, le=1.0)
    tenureWeight: float = Field(default=0.35, ge=0.0)
    tenureMaxDays: int = Field(default=730, gt=0)
    stabilityWeight: float = Field(default=0.30, ge=0.0)
    stabilityMaxOwners: int = Field(default=5, gt=0)
    valueWeight: float = Field(default=0.25, ge=0.0)
    valueThreshold: float = Field(default=2_000_000.0, gt=0.0)


class GeographyScoreConfig(BaseModel):
    """Score per region-pair class."""
    model_config = ConfigDict(frozen=True)

    exact: float = Field(default=1.0, ge=0.0, le=1.0)
    sibling: float = Field(default=0.65, ge=0.0, le=1.0)
    parent: float = Field(default=0.40, ge=0.0, le=1.0)
    globalFallback: float = Field(default=0.20, ge=0.0, le=1.0)
    unknown: float = Field(default=0.50, ge=0.0, le=1.0)


class TeamScoreConfig(BaseModel):
    """Score per absolute tier distance plus the reaching-down penalty."""
    model_config = ConfigDict(frozen=True)

    exact: float = Field(default=1.0, ge=0.0, le=1.0)
    oneLevel: float = Field(default=0.60, ge=0.0, le=1.0)
    twoLevels: float = Field(default=0.25, ge=0.0, le=1.0)
    threeOrMore: float = Field(default=0.05, ge=0.0, le=1.0)
    reachingDownPenalty: float = Field(default=0.15, ge=0.0, le=1.0)
    unknown: float = Field(default=0.50, ge=0.0, le=1.0)


class AssignmentConfiguration(BaseModel):
    """
    Everything tunable about one run.

    Every field has an explicit default, so an empty JSON object is a valid
    configuration. The object is frozen; validate_configuration() returns a
    corrected copy rather than editing in place.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "engine": "relaxed",
                "scope": "customers",
                "capacityVariancePercent": 10,
                "hardCapEnabled": True,
                "balance": {"intensityMultiplier": 2.0},
                "solverTimeoutSeconds": 30,
            }
        }
    )

    engine: EngineType = EngineType.WATERFALL
    scope: BalanceScope = BalanceScope.ALL
    asOfDate: Optional[date] = Field(
        default=None, description="Reference date for day-based locks; defaults to today"
    )

    objectives: ObjectiveWeights = Field(default_factory=ObjectiveWeights)
    prospectObjectives: ObjectiveWeights = Field(default_factory=_default_prospect_objectives)
    balance: BalanceConfig = Field(default_factory=BalanceConfig)

    capacityVariancePercent: float = Field(default=10.0, ge=0.0)
    hardCapEnabled: bool = False
    maxArrPerRep: Optional[float] = Field(
        default=None, gt=0.0, description="Explicit hard ARR cap; defaults to the ARR max band"
    )

    stability: StabilityConfig = Field(default_factory=StabilityConfig)
    continuity: ContinuityConfig = Field(default_factory=ContinuityConfig)
    geography: GeographyScoreConfig = Field(default_factory=GeographyScoreConfig)
    team: TeamScoreConfig = Field(default_factory=TeamScoreConfig)

    territoryMappings: Dict[str, str] = Field(default_factory=dict)
    referenceTables: Optional[ReferenceTables] = None

    renewalSpecialistMaxArr: float = Field(default=25_000.0, ge=0.0)
    highValueArrThreshold: float = Field(default=500_000.0, ge=0.0)
    solverTimeoutSeconds: float = Field(default=60.0, gt=0.0)


# =============================================================================
# Thresholds
# =============================================================================


class ThresholdBand(BaseModel):
    """Per-rep target and min/max band for one balance dimension."""
    model_config = ConfigDict(frozen=True)

    dimension: BalanceDimension
    total: float = Field(..., ge=0.0)
    target: float = Field(..., ge=0.0)
    minimum: float = Field(..., ge=0.0)
    maximum: float = Field(..., ge=0.0)
    absoluteMinimum: float = Field(..., ge=0.0)
    absoluteMaximum: float = Field(..., ge=0.0)
    variance: float = Field(..., ge=0.0)


class BalanceThresholds(BaseModel):
    """Threshold bands for every enabled dimension, computed for one roster and scope."""
    model_config = ConfigDict(frozen=True)

    scope: BalanceScope
    activeRepCount: int = Field(..., ge=0)
    accountCount: int = Field(..., ge=0)
    bands: Dict[BalanceDimension, ThresholdBand] = Field(default_factory=dict)

    def band(self, dimension: BalanceDimension) -> Optional[ThresholdBand]:
        return self.bands.get(dimension)


# =============================================================================
# Output
# =============================================================================


class AssignmentWarning(BaseModel):
    """
    Recovered defect or notable outcome of a run.

    Used for data defects (orphans, unknown territories), configuration
    corrections, and assignment outcomes such as forced over-capacity
    placements.
    """
    category: WarningCategory
    severity: WarningSeverity = WarningSeverity.MEDIUM
    message: str
    accountId: Optional[str] = None
    repId: Optional[str] = None


class ValidationIssue(BaseModel):
    """
    Problem found while loading input files.

    rowNumber is 1-based and counts data rows (the header is not a row).
    """
    field: str = Field(..., description="Column or record field with the problem")
    message: str = Field(..., description="What is wrong")
    rowNumber: Optional[int] = Field(default=None, ge=1, description="Row where the problem occurred")


class ScoreBreakdown(BaseModel):
    """Per-objective scores of the chosen (account, rep) pair and their weighted total."""
    continuity: float = Field(..., ge=0.0, le=1.0)
    geography: float = Field(..., ge=0.0, le=1.0)
    teamAlignment: float = Field(..., ge=0.0, le=1.0)
    weightedTotal: float = Field(..., ge=0.0, le=1.0)
    regionClass: RegionClass = RegionClass.UNKNOWN
    tierDistance: Optional[int] = None
    summary: str = ""


class AccountAssignment(BaseModel):
    """
    One output row: which rep owns an account and why.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "accountId": "001A",
                "repId": "rep-1",
                "stage": "P1",
                "rationale": "P1: Continuity + Geography - stays with current owner in region",
                "isLocked": False,
                "isOverCapacity": False,
            }
        }
    )

    accountId: str
    repId: str
    stage: StageLabel
    rationale: str
    scoreBreakdown: ScoreBreakdown
    previousOwnerId: Optional[str] = None
    parentId: Optional[str] = None
    isLocked: bool = False
    lockType: Optional[LockType] = None
    isStrategic: bool = False
    isOverCapacity: bool = False
    assignedAt: datetime


class RepLoad(BaseModel):
    """
    Resulting book of one rep compared against its capacity bands.

    capacityDimension is ARR for customer and mixed runs and PIPELINE for
    prospect runs; deviationPercent and utilizationPercent are measured on it.
    Mixed runs flag a rep over capacity when either band is exceeded, and
    overloadPercent is the larger excess over a band maximum.
    """
    repId: str
    accountCount: int = Field(default=0, ge=0)
    arr: float = 0.0
    atr: float = 0.0
    pipeline: float = 0.0
    arrTarget: float = 0.0
    arrMin: float = 0.0
    arrMax: float = 0.0
    pipelineTarget: float = 0.0
    pipelineMin: float = 0.0
    pipelineMax: float = 0.0
    capacityDimension: BalanceDimension = BalanceDimension.ARR
    deviationPercent: float = 0.0
    utilizationPercent: float = 0.0
    overloadPercent: float = 0.0
    isOverCapacity: bool = False
    isStrategic: bool = False


class RunMetrics(BaseModel):
    """
    Post-hoc statistics describing an assignment set.

    Rates are percentages in [0, 100]. Variance figures are coefficients of
    variation (std / mean * 100) across non-strategic reps. The three geography
    rates partition the assignment units: crossRegionRate covers every unit
    that is neither an exact nor a sibling match (parent, global, unknown).
    """
    totalAccounts: int = 0
    totalReps: int = 0
    arrVariancePercent: float = 0.0
    atrVariancePercent: float = 0.0
    pipelineVariancePercent: float = 0.0
    maxOverloadPercent: float = 0.0
    repsOverCapacity: int = 0
    continuityRate: float = 0.0
    highValueContinuityRate: float = 0.0
    arrStayedPercent: float = 0.0
    exactGeoMatchRate: float = 0.0
    siblingGeoMatchRate: float = 0.0
    crossRegionRate: float = 0.0
    exactTierMatchRate: float = 0.0
    oneLevelTierMismatchRate: float = 0.0
    tierMismatchRate: float = 0.0
    stageCounts: Dict[str, int] = Field(default_factory=dict)
    repLoads: List[RepLoad] = Field(default_factory=list)
    thresholds: Optional[BalanceThresholds] = None


class WeightsSnapshot(BaseModel):
    """Normalized weights actually used by a run."""
    continuity: float
    geography: float
    teamAlignment: float
    prospectContinuity: float
    prospectGeography: float
    prospectTeamAlignment: float
    balancePenalties: Dict[str, float] = Field(default_factory=dict)
    intensityMultiplier: float = 1.0


class TelemetryRecord(BaseModel):
    """Engine-agnostic record of one run for cross-run comparison."""
    engineType: EngineType
    scope: BalanceScope
    weights: WeightsSnapshot
    numAccounts: int = 0
    numAssignmentUnits: int = 0
    numReps: int = 0
    numLocked: int = 0
    numStrategic: int = 0
    numVariables: int = 0
    numConstraints: int = 0
    solverStatus: SolverStatus
    solveTimeMs: float = 0.0
    objectiveValue: Optional[float] = None
    warningCount: int = 0
    errorMessage: Optional[str] = None
    errorCategory: Optional[ErrorCategory] = None


class AssignmentRunResult(BaseModel):
    """
    Complete result of one run.

    success=False always comes with an empty assignments list and an
    errorMessage; a successful run always covers every non-excluded account.
    """
    scenarioId: Optional[str] = None
    success: bool
    engineType: EngineType
    assignments: List[AccountAssignment] = Field(default_factory=list)
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    telemetry: TelemetryRecord
    warnings: List[AssignmentWarning] = Field(default_factory=list)
    lockStats: Dict[str, int] = Field(default_factory=dict)
    errorMessage: Optional[str] = None
    generatedAt: datetime
