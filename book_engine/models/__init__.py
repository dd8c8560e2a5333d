"""
Package initialization file for book_engine models.

Re-exports every Pydantic schema and enumeration so other modules can import
from book_engine.models directly.

Usage:
    from book_engine.models import (
        Account,
        Representative,
        AssignmentConfiguration,
        EngineType,
    )
"""

# =============================================================================
# Enums
# =============================================================================

from book_engine.models.enums import (
    EngineType,
    BalanceScope,
    RiskSeverity,
    RISK_SEVERITY_RANK,
    LockType,
    RegionClass,
    BalanceDimension,
    StageLabel,
    SolverStatus,
    ErrorCategory,
    WarningSeverity,
    WarningCategory,
)

# =============================================================================
# Schemas
# =============================================================================

from book_engine.models.schemas import (
    # Input records
    Account,
    Opportunity,
    Representative,
    # Reference tables
    EmployeeBand,
    ReferenceTables,
    # Configuration
    ObjectiveSetting,
    ObjectiveWeights,
    BalanceDimensionConfig,
    BalanceConfig,
    StabilityConfig,
    ContinuityConfig,
    GeographyScoreConfig,
    TeamScoreConfig,
    AssignmentConfiguration,
    # Thresholds
    ThresholdBand,
    BalanceThresholds,
    # Output
    AssignmentWarning,
    ValidationIssue,
    ScoreBreakdown,
    AccountAssignment,
    RepLoad,
    RunMetrics,
    WeightsSnapshot,
    TelemetryRecord,
    AssignmentRunResult,
)

__all__ = [
    # Enums
    "EngineType",
    "BalanceScope",
    "RiskSeverity",
    "RISK_SEVERITY_RANK",
    "LockType",
    "RegionClass",
    "BalanceDimension",
    "StageLabel",
    "SolverStatus",
    "ErrorCategory",
    "WarningSeverity",
    "WarningCategory",
    # Input records
    "Account",
    "Opportunity",
    "Representative",
    # Reference tables
    "EmployeeBand",
    "ReferenceTables",
    # Configuration
    "ObjectiveSetting",
    "ObjectiveWeights",
    "BalanceDimensionConfig",
    "BalanceConfig",
    "StabilityConfig",
    "ContinuityConfig",
    "GeographyScoreConfig",
    "TeamScoreConfig",
    "AssignmentConfiguration",
    # Thresholds
    "ThresholdBand",
    "BalanceThresholds",
    # Output
    "AssignmentWarning",
    "ValidationIssue",
    "ScoreBreakdown",
    "AccountAssignment",
    "RepLoad",
    "RunMetrics",
    "WeightsSnapshot",
    "TelemetryRecord",
    "AssignmentRunResult",
]
