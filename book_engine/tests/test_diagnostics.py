"""
Tests for warning collection and structural invariant checks.
"""

import logging

import pytest

from book_engine.models.enums import WarningCategory, WarningSeverity
from book_engine.services.diagnostics import (
    StructuralViolationError,
    find_structural_violations,
    record_warning,
    summarize_warnings,
    verify_assignment_structure,
)


class TestRecordWarning:

    def test_appends_and_logs(self, caplog):
        warnings = []
        with caplog.at_level(logging.WARNING, logger="book_engine.services.diagnostics"):
            warning = record_warning(
                warnings,
                WarningCategory.ORPHAN_CHILD,
                "Account C parent P not found",
                account_id="C",
            )

        assert warnings == [warning]
        assert warning.severity == WarningSeverity.MEDIUM
        assert warning.accountId == "C"
        assert "[orphan_child] Account C parent P not found" in caplog.text

    def test_summarize_counts_per_category(self):
        warnings = []
        record_warning(warnings, WarningCategory.CROSS_REGION, "a")
        record_warning(warnings, WarningCategory.CROSS_REGION, "b")
        record_warning(warnings, WarningCategory.LOCK_IGNORED, "c")

        assert summarize_warnings(warnings) == {"cross_region": 2, "lock_ignored": 1}


class TestStructuralViolations:
    """Every broken invariant is reported, none is fatal until verified."""

    def test_sound_set(self):
        violations = find_structural_violations(
            assigned={"P": "R1", "C": "R1", "S": "RS"},
            expected_account_ids=["P", "C", "S"],
            parent_of_child={"C": "P"},
            strategic_account_ids=["S"],
            strategic_rep_ids=["RS"],
        )
        assert violations == []

    def test_each_violation_kind(self):
        violations = find_structural_violations(
            assigned={"P": "R1", "C": "R2", "S": "R1", "X": "R1"},
            expected_account_ids=["P", "C", "S", "M"],
            parent_of_child={"C": "P"},
            strategic_account_ids=["S"],
            strategic_rep_ids=["RS"],
            output_account_ids=["P", "C", "S", "X", "P"],
        )

        assert violations == [
            "account P assigned 2 times",
            "account M has no assignment",
            "account X is not part of this run",
            "child C assigned to R2 but parent P assigned to R1",
            "strategic account S assigned to non-strategic rep R1",
        ]

    def test_verify_raises_with_all_violations(self):
        with pytest.raises(StructuralViolationError) as exc_info:
            verify_assignment_structure(
                assigned={},
                expected_account_ids=[f"A{i}" for i in range(7)],
                parent_of_child={},
            )

        assert len(exc_info.value.violations) == 7
        assert "(+2 more)" in str(exc_info.value)
        assert isinstance(exc_info.value, ValueError)

    def test_verify_passes_silently(self):
        verify_assignment_structure({"A": "R1"}, ["A"], {})
