"""
Account/Rep Normalization Service

Turns the raw account, opportunity, and representative records of one
scenario into the normalized view both engines consume.

Responsibilities:
- Resolve each account's ultimate parent; promote orphans (parent id not
  found) to parents of their own with a warning
- Resolve each account's effective owner (unknown owner ids become "no owner";
  children without an owner inherit their parent's)
- Detect split ownership: a child whose effective owner differs from its
  parent's is excluded from the parent rollup and becomes its own
  assignment unit
- Roll up ARR, ATR, pipeline, and risk count into each parent from itself and
  its non-split children
- Apply value precedence: explicit hierarchy field (if non-zero) -> rolled-up
  sum -> own field -> zero
- Classify customers: is_customer = is_parent AND hierarchy ARR > 0 (split
  children are classified on their own ARR as independent units; non-split
  children inherit their parent's classification)
- Resolve regions and team tiers against the run's reference index
- Resolve backfill targets (following chains of departing reps)

Opportunity Rules:
- Every opportunity's netArr counts toward the account's pipeline
- Only renewal-type opportunities ('Renewal', 'Renewals') count toward ATR
- An account with opportunities uses the opportunity sums; an account without
  any uses its own pipeline/atr fields

Every defect here is recoverable: it resolves to a neutral default and is
reported through record_warning(), never raised.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from book_engine.models.enums import (
    RISK_SEVERITY_RANK,
    BalanceScope,
    RiskSeverity,
    WarningCategory,
    WarningSeverity,
)
from book_engine.models.schemas import (
    Account,
    AssignmentWarning,
    Opportunity,
    Representative,
)
from book_engine.services.diagnostics import record_warning
from book_engine.services.reference_tables import (
    ReferenceIndex,
    canonical_tier,
    derive_team_tier,
    resolve_region,
)


logger = logging.getLogger(__name__)

RENEWAL_OPPORTUNITY_TYPES = frozenset({"renewal", "renewals"})


# =============================================================================
# Normalized Data Classes
# =============================================================================


@dataclass(frozen=True)
class NormalizedAccount:
    """
    Account after hierarchy resolution and rollup.

    For parents the hierarchy_* values are the rolled-up totals (own plus
    non-split children). For split children they are the child's own values,
    since a split child is scored independently. For non-split children they
    are the child's own values too, but those are already counted in the
    parent and must not be added to a rep's load a second time.

    Attributes:
        account_id: Account identifier
        parent_id: Resolved ultimate parent (None for parents and promoted orphans)
        is_parent: True for parents (including promoted orphans)
        is_split_child: Child whose effective owner differs from its parent's
        has_split_ownership: Parent with at least one split child
        child_ids: Non-split children that follow this parent
        owner_id: Effective current owner (None when unknown or unset)
        own_arr / own_atr / own_pipeline: The account's own values
        hierarchy_arr / hierarchy_atr / hierarchy_pipeline: Values the account
            carries as an assignment unit
        hierarchy_risk_count: Rolled-up risk event count
        risk_severity: Highest severity across the rollup set
        is_customer: Customer/prospect classification
        region: Canonical region (None when unresolved)
        team_tier: Canonical team tier (None when unknown)
    """
    account_id: str
    name: Optional[str]
    parent_id: Optional[str]
    is_parent: bool
    is_split_child: bool
    has_split_ownership: bool
    child_ids: Tuple[str, ...]
    owner_id: Optional[str]
    own_arr: float
    own_atr: float
    own_pipeline: float
    hierarchy_arr: float
    hierarchy_atr: float
    hierarchy_pipeline: float
    hierarchy_risk_count: int
    risk_severity: RiskSeverity
    is_customer: bool
    territory: Optional[str]
    region: Optional[str]
    team_tier: Optional[str]
    expansion_tier: Optional[str]
    days_since_owner_change: Optional[int]
    owner_count: Optional[int]
    renewal_date: Optional[date]
    renewal_quarter: Optional[str]
    pe_firm: Optional[str]
    is_strategic: bool
    manual_lock: bool
    manual_lock_reason: Optional[str]
    backfill_eligible: bool

    @property
    def is_assignment_unit(self) -> bool:
        """Parents and split children are placed by the engines; other children follow."""
        return self.is_parent or self.is_split_child


@dataclass(frozen=True)
class NormalizedRep:
    """
    Representative with resolved region, tier, and backfill target.

    Attributes:
        backfill_target_id: Final assignable receiver of this rep's book when
            the rep is a backfill source (chains of departing reps are followed)
    """
    rep_id: str
    name: Optional[str]
    region: Optional[str]
    team_tier: Optional[str]
    is_active: bool
    include_in_assignments: bool
    is_strategic: bool
    is_backfill_source: bool
    backfill_target_id: Optional[str]
    is_backfill_target: bool
    is_renewal_specialist: bool
    is_placeholder: bool

    @property
    def is_assignable(self) -> bool:
        """Active, included, and not departing: may receive new accounts."""
        return self.is_active and self.include_in_assignments and not self.is_backfill_source


@dataclass
class NormalizedScenario:
    """
    Output of normalize_scenario().

    accounts and reps are keyed by id and ordered by id so downstream
    iteration is deterministic.
    """
    accounts: Dict[str, NormalizedAccount]
    reps: Dict[str, NormalizedRep]
    warnings: List[AssignmentWarning] = field(default_factory=list)
    excluded_account_ids: Tuple[str, ...] = ()

    def assignment_units(self) -> List[NormalizedAccount]:
        return [a for a in self.accounts.values() if a.is_assignment_unit]

    def children_of(self, parent_id: str) -> List[NormalizedAccount]:
        parent = self.accounts.get(parent_id)
        if parent is None:
            return []
        return [self.accounts[c] for c in parent.child_ids if c in self.accounts]


# =============================================================================
# Helpers
# =============================================================================


def is_renewal_opportunity(opportunity: Opportunity) -> bool:
    """True when the opportunity type counts toward ATR."""
    return (opportunity.opportunityType or "").strip().lower() in RENEWAL_OPPORTUNITY_TYPES


def first_nonzero(*values: float) -> float:
    """Return the first value greater than zero, else 0.0."""
    for value in values:
        if value and value > 0:
            return float(value)
    return 0.0


def _max_severity(severities: Iterable[RiskSeverity]) -> RiskSeverity:
    return max(severities, key=lambda s: RISK_SEVERITY_RANK[s], default=RiskSeverity.NONE)


def _aggregate_opportunities(
    opportunities: Iterable[Opportunity],
    known_account_ids: Set[str],
    warnings: List[AssignmentWarning],
) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Sum pipeline and renewal ATR per account; opportunities on unknown accounts are dropped."""
    pipeline: Dict[str, float] = defaultdict(float)
    renewal_atr: Dict[str, float] = defaultdict(float)
    dropped = 0

    for opp in opportunities:
        if opp.accountId not in known_account_ids:
            dropped += 1
            continue
        pipeline[opp.accountId] += opp.netArr
        if is_renewal_opportunity(opp):
            renewal_atr[opp.accountId] += opp.availableToRenew

    if dropped:
        record_warning(
            warnings,
            WarningCategory.MISSING_VALUE,
            f"{dropped} opportunities reference unknown or excluded accounts and were ignored",
            severity=WarningSeverity.LOW,
        )
    return dict(pipeline), dict(renewal_atr)


def _resolve_backfill_target(
    rep_id: str,
    reps: Dict[str, Representative],
) -> Optional[str]:
    """Follow backfill targets until reaching a rep that is not itself departing."""
    seen = {rep_id}
    current = reps[rep_id].backfillTargetId
    while current:
        if current in seen or current not in reps:
            return None
        target = reps[current]
        if not target.isBackfillSource:
            if target.isActive and target.includeInAssignments:
                return current
            return None
        seen.add(current)
        current = target.backfillTargetId
    return None


def _normalize_reps(
    reps: Iterable[Representative],
    index: ReferenceIndex,
    warnings: List[AssignmentWarning],
) -> Dict[str, NormalizedRep]:
    by_id: Dict[str, Representative] = {}
    for rep in reps:
        if rep.repId in by_id:
            record_warning(
                warnings,
                WarningCategory.MISSING_VALUE,
                f"Duplicate rep id {rep.repId}; keeping the first record",
                severity=WarningSeverity.LOW,
                rep_id=rep.repId,
            )
            continue
        by_id[rep.repId] = rep

    normalized: Dict[str, NormalizedRep] = {}
    for rep_id in sorted(by_id):
        rep = by_id[rep_id]

        region = resolve_region(rep.region, index)
        if rep.region and region is None:
            record_warning(
                warnings,
                WarningCategory.UNKNOWN_TERRITORY,
                f"Rep {rep_id} region '{rep.region}' is not in the region tables; geography scores neutral",
                severity=WarningSeverity.LOW,
                rep_id=rep_id,
            )

        tier = canonical_tier(rep.teamTier, index)
        if rep.teamTier and tier is None:
            record_warning(
                warnings,
                WarningCategory.UNKNOWN_TIER,
                f"Rep {rep_id} team tier '{rep.teamTier}' is unknown; team alignment scores neutral",
                severity=WarningSeverity.LOW,
                rep_id=rep_id,
            )

        target_id: Optional[str] = None
        if rep.isBackfillSource:
            target_id = _resolve_backfill_target(rep_id, by_id)
            if target_id is None:
                record_warning(
                    warnings,
                    WarningCategory.BACKFILL_NO_TARGET,
                    f"Backfill source {rep_id} has no assignable backfill target; its accounts cannot migrate",
                    severity=WarningSeverity.HIGH,
                    rep_id=rep_id,
                )

        normalized[rep_id] = NormalizedRep(
            rep_id=rep_id,
            name=rep.name,
            region=region,
            team_tier=tier,
            is_active=rep.isActive,
            include_in_assignments=rep.includeInAssignments,
            is_strategic=rep.isStrategic,
            is_backfill_source=rep.isBackfillSource,
            backfill_target_id=target_id,
            is_backfill_target=rep.isBackfillTarget,
            is_renewal_specialist=rep.isRenewalSpecialist,
            is_placeholder=rep.isPlaceholder,
        )

    return normalized


def _resolve_parent_links(
    accounts: Dict[str, Account],
    warnings: List[AssignmentWarning],
) -> Dict[str, Optional[str]]:
    """
    Map every account to its ultimate parent id (None for parents).

    Orphans and cyclic chains are promoted to parents with a warning. An
    account below an orphan resolves to that orphan, which is its nearest
    existing root.
    """
    ultimate: Dict[str, Optional[str]] = {}

    for account_id in sorted(accounts):
        raw_parent = accounts[account_id].parentId
        if not raw_parent or raw_parent == account_id:
            ultimate[account_id] = None
            continue

        seen = [account_id]
        current = raw_parent
        resolved: Optional[str] = None
        defect: Optional[str] = None
        while True:
            if current not in accounts:
                # The topmost existing ancestor is itself an orphan and becomes the parent
                if len(seen) > 1:
                    resolved = seen[-1]
                else:
                    defect = f"parent {current} not found"
                break
            if current in seen:
                defect = "cyclic parent chain"
                break
            next_parent = accounts[current].parentId
            if not next_parent or next_parent == current:
                resolved = current
                break
            seen.append(current)
            current = next_parent

        if resolved is None:
            record_warning(
                warnings,
                WarningCategory.ORPHAN_CHILD,
                f"Account {account_id}: {defect}; promoted to its own parent",
                severity=WarningSeverity.MEDIUM,
                account_id=account_id,
            )
        ultimate[account_id] = resolved

    return ultimate


# =============================================================================
# Main Entry Point
# =============================================================================


def normalize_scenario(
    accounts: Iterable[Account],
    reps: Iterable[Representative],
    opportunities: Iterable[Opportunity],
    index: ReferenceIndex,
) -> NormalizedScenario:
    """
    Normalize one scenario's raw records.

    Args:
        accounts: Raw account records
        reps: Raw representative records
        opportunities: Raw opportunity records
        index: Reference index for region/tier resolution

    Returns:
        NormalizedScenario with accounts, reps, warnings, and excluded ids
    """
    warnings: List[AssignmentWarning] = []

    normalized_reps = _normalize_reps(reps, index, warnings)

    by_id: Dict[str, Account] = {}
    excluded: List[str] = []
    for account in accounts:
        if account.accountId in by_id or account.accountId in excluded:
            record_warning(
                warnings,
                WarningCategory.MISSING_VALUE,
                f"Duplicate account id {account.accountId}; keeping the first record",
                severity=WarningSeverity.LOW,
                account_id=account.accountId,
            )
            continue
        if account.excludeFromAssignment:
            excluded.append(account.accountId)
            continue
        by_id[account.accountId] = account

    pipeline_by_account, renewal_atr_by_account = _aggregate_opportunities(
        opportunities, set(by_id), warnings
    )
    parent_links = _resolve_parent_links(by_id, warnings)

    # Effective owners: unknown ids become None; children inherit parent's
    raw_owner: Dict[str, Optional[str]] = {}
    for account_id in sorted(by_id):
        owner = by_id[account_id].ownerId
        if owner and owner not in normalized_reps:
            record_warning(
                warnings,
                WarningCategory.UNKNOWN_OWNER,
                f"Account {account_id} owner {owner} is not in the rep roster; treated as unowned",
                severity=WarningSeverity.LOW,
                account_id=account_id,
            )
            owner = None
        raw_owner[account_id] = owner or None

    effective_owner: Dict[str, Optional[str]] = {}
    split_children: Set[str] = set()
    children_by_parent: Dict[str, List[str]] = defaultdict(list)
    for account_id in sorted(by_id):
        parent_id = parent_links[account_id]
        if parent_id is None:
            effective_owner[account_id] = raw_owner[account_id]
            continue
        parent_owner = raw_owner[parent_id]
        child_owner = raw_owner[account_id]
        if child_owner is None or child_owner == parent_owner:
            effective_owner[account_id] = parent_owner
            children_by_parent[parent_id].append(account_id)
        else:
            effective_owner[account_id] = child_owner
            split_children.add(account_id)

    split_parents = {parent_links[c] for c in split_children}

    own_values: Dict[str, Tuple[float, float, float]] = {}
    for account_id, account in by_id.items():
        own_atr = (
            renewal_atr_by_account[account_id]
            if account_id in renewal_atr_by_account
            else account.atr
        )
        own_pipeline = (
            max(0.0, pipeline_by_account[account_id])
            if account_id in pipeline_by_account
            else account.pipeline
        )
        own_values[account_id] = (account.arr, own_atr, own_pipeline)

    unresolved_territories: Dict[str, int] = defaultdict(int)
    unknown_tiers: Dict[str, int] = defaultdict(int)

    result: Dict[str, NormalizedAccount] = {}
    for account_id in sorted(by_id):
        account = by_id[account_id]
        parent_id = parent_links[account_id]
        is_parent = parent_id is None
        is_split = account_id in split_children
        own_arr, own_atr, own_pipeline = own_values[account_id]

        if is_parent:
            members = [account_id] + children_by_parent.get(account_id, [])
            rolled_arr = sum(own_values[m][0] for m in members)
            rolled_atr = sum(own_values[m][1] for m in members)
            rolled_pipeline = sum(own_values[m][2] for m in members)
            hierarchy_arr = first_nonzero(account.hierarchyArr, rolled_arr, own_arr)
            hierarchy_atr = first_nonzero(account.hierarchyAtr, rolled_atr, own_atr)
            hierarchy_pipeline = rolled_pipeline
            risk_count = sum(by_id[m].riskCount for m in members)
            severity = _max_severity(by_id[m].riskSeverity for m in members)
            child_ids = tuple(children_by_parent.get(account_id, []))
        else:
            hierarchy_arr = own_arr
            hierarchy_atr = own_atr
            hierarchy_pipeline = own_pipeline
            risk_count = account.riskCount
            severity = account.riskSeverity
            child_ids = ()

        region = resolve_region(account.territory, index)
        if account.territory and region is None:
            unresolved_territories[account.territory.strip()] += 1

        tier = canonical_tier(account.teamTier, index)
        if tier is None:
            if account.teamTier:
                unknown_tiers[account.teamTier.strip()] += 1
            tier = derive_team_tier(account.employees, index)

        result[account_id] = NormalizedAccount(
            account_id=account_id,
            name=account.name,
            parent_id=parent_id,
            is_parent=is_parent,
            is_split_child=is_split,
            has_split_ownership=is_parent and account_id in split_parents,
            child_ids=child_ids,
            owner_id=effective_owner[account_id],
            own_arr=own_arr,
            own_atr=own_atr,
            own_pipeline=own_pipeline,
            hierarchy_arr=hierarchy_arr,
            hierarchy_atr=hierarchy_atr,
            hierarchy_pipeline=hierarchy_pipeline,
            hierarchy_risk_count=risk_count,
            risk_severity=severity,
            is_customer=False,  # classified below once parents are known
            territory=account.territory,
            region=region,
            team_tier=tier,
            expansion_tier=account.expansionTier,
            days_since_owner_change=account.daysSinceOwnerChange,
            owner_count=account.ownerCount,
            renewal_date=account.renewalDate,
            renewal_quarter=account.renewalQuarter,
            pe_firm=account.peFirm,
            is_strategic=account.isStrategic,
            manual_lock=account.manualLock,
            manual_lock_reason=account.manualLockReason,
            backfill_eligible=account.backfillEligible,
        )

    # Customer classification: units decide for themselves, children follow
    classified: Dict[str, NormalizedAccount] = {}
    for account_id, normalized in result.items():
        if normalized.is_assignment_unit:
            is_customer = normalized.hierarchy_arr > 0
        else:
            is_customer = result[normalized.parent_id].hierarchy_arr > 0
        classified[account_id] = replace(normalized, is_customer=is_customer)

    for territory, count in sorted(unresolved_territories.items()):
        record_warning(
            warnings,
            WarningCategory.UNKNOWN_TERRITORY,
            f"Territory '{territory}' ({count} accounts) could not be mapped to a region; geography scores neutral",
            severity=WarningSeverity.LOW,
        )
    for tier_name, count in sorted(unknown_tiers.items()):
        record_warning(
            warnings,
            WarningCategory.UNKNOWN_TIER,
            f"Team tier '{tier_name}' ({count} accounts) is unknown; derived from employees where possible",
            severity=WarningSeverity.LOW,
        )

    logger.info(
        f"Normalized {len(classified)} accounts ({sum(1 for a in classified.values() if a.is_parent)} parents, "
        f"{len(split_children)} split children, {len(excluded)} excluded) and {len(normalized_reps)} reps"
    )

    return NormalizedScenario(
        accounts=classified,
        reps=normalized_reps,
        warnings=warnings,
        excluded_account_ids=tuple(sorted(excluded)),
    )


# =============================================================================
# Scope
# =============================================================================


def in_scope(account: NormalizedAccount, scope: BalanceScope) -> bool:
    """Whether an account belongs to the run's customer/prospect scope."""
    if scope == BalanceScope.CUSTOMERS:
        return account.is_customer
    if scope == BalanceScope.PROSPECTS:
        return not account.is_customer
    return True


def restrict_to_scope(scenario: NormalizedScenario, scope: BalanceScope) -> NormalizedScenario:
    """
    Return a scenario holding only the accounts in scope.

    Non-split children share their parent's classification, so a family is
    never cut in half by scoping. Out-of-scope accounts join the excluded list.
    """
    if scope == BalanceScope.ALL:
        return scenario

    kept = {aid: a for aid, a in scenario.accounts.items() if in_scope(a, scope)}
    dropped = [aid for aid in scenario.accounts if aid not in kept]
    return NormalizedScenario(
        accounts=kept,
        reps=scenario.reps,
        warnings=list(scenario.warnings),
        excluded_account_ids=tuple(sorted(set(scenario.excluded_account_ids) | set(dropped))),
    )


__all__ = [
    "RENEWAL_OPPORTUNITY_TYPES",
    "NormalizedAccount",
    "NormalizedRep",
    "NormalizedScenario",
    "is_renewal_opportunity",
    "first_nonzero",
    "normalize_scenario",
    "in_scope",
    "restrict_to_scope",
]
