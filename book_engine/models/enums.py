"""
Enumeration definitions for the Book Assignment Engine.

All enums inherit from both `str` and `Enum` so they serialize as plain strings
in Pydantic models and API responses.

Ordered vocabularies (RiskSeverity, TeamTier) expose their ordering through the
reference tables or a module-level rank mapping rather than relying on the
declaration order of members.
"""

from enum import Enum
from typing import Dict


class EngineType(str, Enum):
    """
    Assignment strategy selected for a run.

    - waterfall: priority cascade (P0 holdover through Residual)
    - relaxed: single global weighted LP
    """
    WATERFALL = "waterfall"
    RELAXED = "relaxed"


class BalanceScope(str, Enum):
    """
    Account population a run assigns and balances.

    Customers are parents (or split children) with hierarchy ARR above zero;
    prospects are everything else.
    """
    CUSTOMERS = "customers"
    PROSPECTS = "prospects"
    ALL = "all"


class RiskSeverity(str, Enum):
    """
    Churn-risk severity of an account, lowest to highest.

    none < closed < monitoring < pre-risk < at-risk < confirmed-churn
    """
    NONE = "none"
    CLOSED = "closed"
    MONITORING = "monitoring"
    PRE_RISK = "pre-risk"
    AT_RISK = "at-risk"
    CONFIRMED_CHURN = "confirmed-churn"


# Severity ordering used by lock evaluation and parent rollup
RISK_SEVERITY_RANK: Dict[RiskSeverity, int] = {
    RiskSeverity.NONE: 0,
    RiskSeverity.CLOSED: 1,
    RiskSeverity.MONITORING: 2,
    RiskSeverity.PRE_RISK: 3,
    RiskSeverity.AT_RISK: 4,
    RiskSeverity.CONFIRMED_CHURN: 5,
}


class LockType(str, Enum):
    """
    Reason an account is pinned to a required owner.

    Evaluated in the order: manual, backfill migration, risk, renewal,
    PE firm, recent owner change. The first matching predicate wins.
    """
    MANUAL_LOCK = "manual_lock"
    BACKFILL_MIGRATION = "backfill_migration"
    RISK = "risk"
    RENEWAL_SOON = "renewal_soon"
    PE_FIRM = "pe_firm"
    RECENT_CHANGE = "recent_change"


class RegionClass(str, Enum):
    """
    Relationship between an account's region and a rep's region.

    - exact: same region
    - sibling: different sub-regions under the same parent region
    - parent: one side is the parent region of the other
    - global: different parent regions
    - unknown: either side could not be resolved
    """
    EXACT = "exact"
    SIBLING = "sibling"
    PARENT = "parent"
    GLOBAL = "global"
    UNKNOWN = "unknown"


class BalanceDimension(str, Enum):
    """
    Quantities balanced across reps.

    Monetary dimensions (arr, atr, pipeline) sum account values; the remaining
    dimensions count accounts matching a condition.
    """
    ARR = "arr"
    ATR = "atr"
    PIPELINE = "pipeline"
    TIER_1 = "tier1"
    TIER_2 = "tier2"
    RISK_ACCOUNTS = "risk_accounts"
    RENEWAL_Q1 = "renewal_q1"
    RENEWAL_Q2 = "renewal_q2"
    RENEWAL_Q3 = "renewal_q3"
    RENEWAL_Q4 = "renewal_q4"


class StageLabel(str, Enum):
    """
    Rule that decided an assignment.

    Waterfall stages P0-P4 and RESIDUAL, the relaxed engine's single
    OPTIMIZED stage, and CHILD for non-split children following their parent.
    """
    P0_HOLDOVER = "P0"
    P1_CONTINUITY_GEO = "P1"
    P2_GEOGRAPHY = "P2"
    P3_CONTINUITY = "P3"
    P4_BALANCE = "P4"
    RESIDUAL = "RESIDUAL"
    OPTIMIZED = "RO"
    CHILD = "CHILD"


class SolverStatus(str, Enum):
    """
    Outcome reported by a solver backend (and by a run as a whole).

    - optimal: proven optimal solution
    - feasible: integer-feasible incumbent, optimality not proven
    - infeasible: no assignment satisfies the hard constraints
    - timeout: time limit or cancellation reached; may carry an incumbent
    - error: solver crash or unbounded model
    - complete: run finished without an LP (waterfall with every stage settled)
    """
    OPTIMAL = "optimal"
    FEASIBLE = "feasible"
    INFEASIBLE = "infeasible"
    TIMEOUT = "timeout"
    ERROR = "error"
    COMPLETE = "complete"


class ErrorCategory(str, Enum):
    """Classification of run-level failures for telemetry."""
    DATA_VALIDATION = "data_validation"
    CONFIGURATION = "configuration"
    SOLVER_TIMEOUT = "solver_timeout"
    SOLVER_INFEASIBLE = "solver_infeasible"
    SOLVER_CRASH = "solver_crash"
    UNKNOWN = "unknown"


class WarningSeverity(str, Enum):
    """Severity attached to a run warning."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WarningCategory(str, Enum):
    """
    Kind of defect or notable outcome surfaced as a run warning.

    Data and configuration defects are recovered locally; the remaining
    categories describe assignment outcomes reviewers should look at.
    """
    ORPHAN_CHILD = "orphan_child"
    UNKNOWN_OWNER = "unknown_owner"
    UNKNOWN_TERRITORY = "unknown_territory"
    UNKNOWN_TIER = "unknown_tier"
    MISSING_VALUE = "missing_value"
    BACKFILL_NO_TARGET = "backfill_no_target"
    WEIGHTS_NORMALIZED = "weights_normalized"
    CONFIG_CORRECTED = "config_corrected"
    LOCK_IGNORED = "lock_ignored"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    CONTINUITY_BROKEN = "continuity_broken"
    CROSS_REGION = "cross_region"
    SOLVER_FALLBACK = "solver_fallback"
