"""
Stability Lock Evaluator Service

Pins assignment units to a required owner regardless of optimization outcome.

Lock Predicates (evaluated in order, first match wins, each toggleable):
1. manual_lock: account manually pinned to its owner
2. backfill_migration: owner is departing and the account migrates with the book
3. risk: churn-risk severity strictly above the configured floor
4. renewal_soon: renewal date within the next N days (default 90)
5. pe_firm: PE-firm affiliation (locks to the firm's preferred rep when
   configured, otherwise to the current owner)
6. recent_change: owner changed within the last N days (default 90)

Owner Resolution:
- A required owner who is a backfill source is replaced by their backfill
  target; when there is none the account stays unlocked with a warning
- A required owner who cannot receive accounts (inactive, excluded, unknown)
  leaves the account unlocked
- A lock that would cross the strategic boundary is ignored with a warning;
  strategic isolation is enforced by the engines, not by locks

Only assignment units are evaluated. Non-split children follow their parent,
so the parent's rolled-up risk severity already reflects them.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple

from book_engine.models.enums import (
    RISK_SEVERITY_RANK,
    LockType,
    WarningCategory,
    WarningSeverity,
)
from book_engine.models.schemas import AssignmentConfiguration, AssignmentWarning
from book_engine.services.diagnostics import record_warning
from book_engine.services.normalization import NormalizedAccount, NormalizedRep


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockDecision:
    """An assignment unit pinned to a required owner."""
    account_id: str
    lock_type: LockType
    required_owner_id: str
    reason: str


@dataclass
class LockEvaluation:
    """
    Output of evaluate_stability_locks().

    Attributes:
        locks: account id -> LockDecision for every locked unit
        stats: lock type value -> number of locked units
        warnings: Warnings raised while resolving owners
    """
    locks: Dict[str, LockDecision] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    warnings: List[AssignmentWarning] = field(default_factory=list)


# =============================================================================
# Predicates
# =============================================================================


def days_until(target: Optional[date], as_of: date) -> Optional[int]:
    """Days from as_of until target (negative when target is in the past)."""
    if target is None:
        return None
    return (target - as_of).days


def _pe_firm_owner(account: NormalizedAccount, config: AssignmentConfiguration) -> Optional[str]:
    firm = (account.pe_firm or "").strip()
    if not firm:
        return None
    owners = {name.strip().lower(): rep_id for name, rep_id in config.stability.peFirmOwners.items()}
    return owners.get(firm.lower(), account.owner_id)


def match_lock_predicate(
    account: NormalizedAccount,
    reps: Dict[str, NormalizedRep],
    config: AssignmentConfiguration,
    as_of: date,
) -> Optional[Tuple[LockType, Optional[str], str]]:
    """
    Return the first lock predicate the account satisfies.

    Returns:
        (lock type, candidate owner before backfill substitution, reason), or
        None when no enabled predicate matches
    """
    stability = config.stability
    owner_id = account.owner_id
    owner = reps.get(owner_id) if owner_id else None

    if stability.manualLockEnabled and account.manual_lock:
        reason = account.manual_lock_reason or "Manual lock"
        return LockType.MANUAL_LOCK, owner_id, reason

    if (
        stability.backfillMigrationEnabled
        and owner is not None
        and owner.is_backfill_source
        and account.backfill_eligible
    ):
        return LockType.BACKFILL_MIGRATION, owner_id, f"Book of departing rep {owner_id} migrates"

    if (
        stability.riskLockEnabled
        and RISK_SEVERITY_RANK[account.risk_severity]
        > RISK_SEVERITY_RANK[stability.riskSeverityFloor]
    ):
        return LockType.RISK, owner_id, f"Churn risk ({account.risk_severity.value})"

    remaining = days_until(account.renewal_date, as_of)
    if (
        stability.renewalLockEnabled
        and remaining is not None
        and 0 <= remaining <= stability.renewalWindowDays
    ):
        return LockType.RENEWAL_SOON, owner_id, f"Renewal in {remaining} days"

    if stability.peFirmLockEnabled and account.pe_firm:
        return LockType.PE_FIRM, _pe_firm_owner(account, config), f"PE firm {account.pe_firm}"

    changed = account.days_since_owner_change
    if (
        stability.recentChangeLockEnabled
        and changed is not None
        and 0 <= changed <= stability.recentChangeDays
    ):
        return LockType.RECENT_CHANGE, owner_id, f"Owner changed {changed} days ago"

    return None


# =============================================================================
# Main Entry Point
# =============================================================================


def evaluate_stability_locks(
    units: List[NormalizedAccount],
    reps: Dict[str, NormalizedRep],
    config: AssignmentConfiguration,
    as_of: date,
) -> LockEvaluation:
    """
    Evaluate every stability lock for a run.

    Args:
        units: Assignment units (parents and split children)
        reps: Normalized reps keyed by id
        config: Validated run configuration
        as_of: Reference date for day-based predicates

    Returns:
        LockEvaluation with decisions, per-type stats, and warnings
    """
    evaluation = LockEvaluation()
    no_target: Dict[str, List[str]] = defaultdict(list)
    unavailable: Dict[str, List[str]] = defaultdict(list)

    for account in sorted(units, key=lambda a: a.account_id):
        match = match_lock_predicate(account, reps, config, as_of)
        if match is None:
            continue
        lock_type, candidate_id, reason = match

        if candidate_id is None:
            # Nothing to pin to: unowned account
            continue

        candidate = reps.get(candidate_id)
        required_id = candidate_id
        if candidate is not None and candidate.is_backfill_source:
            if candidate.backfill_target_id is None:
                no_target[candidate_id].append(account.account_id)
                continue
            required_id = candidate.backfill_target_id
            if lock_type != LockType.BACKFILL_MIGRATION:
                reason = f"{reason}; owner {candidate_id} departing, migrates to {required_id}"

        required = reps.get(required_id)
        if required is None or not required.is_assignable:
            unavailable[required_id].append(account.account_id)
            continue

        if account.is_strategic != required.is_strategic:
            side = "strategic account" if account.is_strategic else "non-strategic account"
            record_warning(
                evaluation.warnings,
                WarningCategory.LOCK_IGNORED,
                f"{lock_type.value} lock on {side} {account.account_id} to rep {required_id} "
                f"ignored: it would cross the strategic pool boundary",
                severity=WarningSeverity.MEDIUM,
                account_id=account.account_id,
                rep_id=required_id,
            )
            continue

        evaluation.locks[account.account_id] = LockDecision(
            account_id=account.account_id,
            lock_type=lock_type,
            required_owner_id=required_id,
            reason=reason,
        )

    for rep_id, account_ids in sorted(no_target.items()):
        record_warning(
            evaluation.warnings,
            WarningCategory.BACKFILL_NO_TARGET,
            f"{len(account_ids)} locked accounts of departing rep {rep_id} left unlocked: "
            f"no backfill target",
            severity=WarningSeverity.HIGH,
            rep_id=rep_id,
        )
    for rep_id, account_ids in sorted(unavailable.items()):
        record_warning(
            evaluation.warnings,
            WarningCategory.LOCK_IGNORED,
            f"{len(account_ids)} locked accounts left unlocked: required owner {rep_id} "
            f"cannot receive accounts",
            severity=WarningSeverity.LOW,
            rep_id=rep_id,
        )

    evaluation.stats = dict(
        sorted(Counter(d.lock_type.value for d in evaluation.locks.values()).items())
    )
    logger.info(f"Stability locks: {len(evaluation.locks)} of {len(units)} units locked {evaluation.stats}")
    return evaluation


__all__ = [
    "LockDecision",
    "LockEvaluation",
    "days_until",
    "match_lock_predicate",
    "evaluate_stability_locks",
]
