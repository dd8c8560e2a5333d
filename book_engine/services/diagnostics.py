"""
Run diagnostics: warning collection and structural invariant checks.

Recoverable defects never raise. They are logged at WARNING and appended to
the run's warning list as AssignmentWarning records, so callers see them in
the response as well as in the logs.

Structural violations are different: an assignment set that splits a parent
from a non-split child, misses or duplicates an account, or leaks a strategic
account to a non-strategic rep is an internal invariant failure. Such a set is
never returned; StructuralViolationError is raised with every violation found.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional

from book_engine.models.enums import WarningCategory, WarningSeverity
from book_engine.models.schemas import AssignmentWarning


logger = logging.getLogger(__name__)


class StructuralViolationError(ValueError):
    """
    Raised when a produced assignment set breaks a structural invariant.

    Attributes:
        violations: Human-readable description of every violation found
    """

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        preview = "; ".join(self.violations[:5])
        more = f" (+{len(self.violations) - 5} more)" if len(self.violations) > 5 else ""
        super().__init__(f"Structural violation in assignment set: {preview}{more}")


def record_warning(
    warnings: List[AssignmentWarning],
    category: WarningCategory,
    message: str,
    severity: WarningSeverity = WarningSeverity.MEDIUM,
    account_id: Optional[str] = None,
    rep_id: Optional[str] = None,
) -> AssignmentWarning:
    """
    Log a recovered defect and append it to the run's warning list.

    Returns:
        The AssignmentWarning that was appended
    """
    warning = AssignmentWarning(
        category=category,
        severity=severity,
        message=message,
        accountId=account_id,
        repId=rep_id,
    )
    logger.warning(f"[{category.value}] {message}")
    warnings.append(warning)
    return warning


def find_structural_violations(
    assigned: Mapping[str, str],
    expected_account_ids: Iterable[str],
    parent_of_child: Mapping[str, str],
    strategic_account_ids: Iterable[str] = (),
    strategic_rep_ids: Iterable[str] = (),
    output_account_ids: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Collect every structural violation in a proposed assignment set.

    Args:
        assigned: account id -> rep id for the proposed set
        expected_account_ids: Every account that must appear exactly once
        parent_of_child: non-split child id -> parent id
        strategic_account_ids: Accounts that may only go to strategic reps
        strategic_rep_ids: Reps allowed to hold strategic accounts
        output_account_ids: Account ids in output order, used to detect
            duplicates (defaults to the keys of assigned)

    Returns:
        List of violation descriptions (empty when the set is sound)
    """
    violations: List[str] = []
    expected = set(expected_account_ids)

    ids = list(output_account_ids) if output_account_ids is not None else list(assigned)
    for account_id, count in sorted(Counter(ids).items()):
        if count > 1:
            violations.append(f"account {account_id} assigned {count} times")

    missing = sorted(expected - set(assigned))
    for account_id in missing:
        violations.append(f"account {account_id} has no assignment")

    unexpected = sorted(set(assigned) - expected)
    for account_id in unexpected:
        violations.append(f"account {account_id} is not part of this run")

    for child_id, parent_id in sorted(parent_of_child.items()):
        if child_id not in assigned or parent_id not in assigned:
            continue
        if assigned[child_id] != assigned[parent_id]:
            violations.append(
                f"child {child_id} assigned to {assigned[child_id]} but parent "
                f"{parent_id} assigned to {assigned[parent_id]}"
            )

    strategic_reps = set(strategic_rep_ids)
    for account_id in sorted(set(strategic_account_ids)):
        rep_id = assigned.get(account_id)
        if rep_id is not None and rep_id not in strategic_reps:
            violations.append(f"strategic account {account_id} assigned to non-strategic rep {rep_id}")

    return violations


def verify_assignment_structure(
    assigned: Mapping[str, str],
    expected_account_ids: Iterable[str],
    parent_of_child: Mapping[str, str],
    strategic_account_ids: Iterable[str] = (),
    strategic_rep_ids: Iterable[str] = (),
    output_account_ids: Optional[Iterable[str]] = None,
) -> None:
    """
    Raise StructuralViolationError when the proposed set breaks an invariant.
    """
    violations = find_structural_violations(
        assigned,
        expected_account_ids,
        parent_of_child,
        strategic_account_ids,
        strategic_rep_ids,
        output_account_ids,
    )
    if violations:
        logger.error(f"Rejecting assignment set with {len(violations)} structural violations")
        raise StructuralViolationError(violations)


def summarize_warnings(warnings: Iterable[AssignmentWarning]) -> Dict[str, int]:
    """Count warnings per category, for log summaries."""
    return dict(Counter(w.category.value for w in warnings))


__all__ = [
    "StructuralViolationError",
    "record_warning",
    "find_structural_violations",
    "verify_assignment_structure",
    "summarize_warnings",
]
