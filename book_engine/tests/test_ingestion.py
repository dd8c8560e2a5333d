"""
Tests for CSV ingestion.

CSV content is built from DataFrames in memory (csv_buffer fixture), the way
an export from a CRM would arrive.
"""

from datetime import date

import pandas as pd
import pytest

from book_engine.models.schemas import Account, Representative
from book_engine.services.ingestion import (
    canonicalize_columns,
    load_accounts,
    load_opportunities,
    load_reps,
    load_scenario_files,
    parse_boolean,
)


class TestHeaders:

    def test_header_styles_map_to_fields(self):
        df = pd.DataFrame(columns=["Account ID", "owner_id", "ARR", "hierarchyArr", "Notes"])

        renamed = canonicalize_columns(df, Account)

        assert list(renamed.columns) == ["accountId", "ownerId", "arr", "hierarchyArr"]

    def test_first_matching_header_wins(self):
        df = pd.DataFrame({"rep_id": ["R1"], "Rep ID": ["R9"]})

        renamed = canonicalize_columns(df, Representative)

        assert renamed["repId"].tolist() == ["R1"]


class TestParseBoolean:

    @pytest.mark.parametrize("value,expected", [
        ("true", True),
        (" Yes ", True),
        ("y", True),
        ("1", True),
        (True, True),
        ("false", False),
        ("N", False),
        ("0", False),
        ("", None),
        (None, None),
        (float("nan"), None),
        ("maybe", None),
    ])
    def test_values(self, value, expected):
        assert parse_boolean(value) is expected


class TestLoadAccounts:

    def test_clean_file(self, csv_buffer, accounts_frame):
        accounts, issues = load_accounts(csv_buffer(accounts_frame))
        by_id = {a.accountId: a for a in accounts}

        assert issues == []
        assert list(by_id) == ["A1", "A2", "A3", "C1"]
        assert by_id["A1"].arr == 100_000
        assert by_id["A1"].employees == 800
        assert by_id["A1"].renewalDate == date(2026, 6, 30)
        assert by_id["A1"].parentId is None
        assert by_id["A3"].employees is None
        assert by_id["C1"].parentId == "A1"
        assert by_id["C1"].ownerId is None
        assert not by_id["A2"].isStrategic

    def test_missing_required_column(self, csv_buffer, accounts_frame):
        accounts, issues = load_accounts(csv_buffer(accounts_frame.drop(columns=["Account ID"])))

        assert accounts == []
        assert [issue.field for issue in issues] == ["accountId"]

    def test_non_numeric_value_uses_default(self, csv_buffer, accounts_frame):
        accounts_frame.loc[1, "ARR"] = "n/a"

        accounts, issues = load_accounts(csv_buffer(accounts_frame))

        assert len(accounts) == 4
        assert accounts[1].arr == 0.0
        assert issues[0].field == "arr"
        assert issues[0].rowNumber == 2

    def test_negative_value_is_clamped(self, csv_buffer, accounts_frame):
        accounts_frame.loc[2, "ARR"] = "-500"

        accounts, issues = load_accounts(csv_buffer(accounts_frame))

        assert accounts[2].arr == 0.0
        assert "clamped to 0" in issues[0].message
        assert issues[0].rowNumber == 3

    def test_unrecognized_boolean_and_date(self, csv_buffer, accounts_frame):
        accounts_frame.loc[0, "Is Strategic"] = "maybe"
        accounts_frame.loc[1, "Renewal Date"] = "soon"

        accounts, issues = load_accounts(csv_buffer(accounts_frame))

        assert {issue.field for issue in issues} == {"isStrategic", "renewalDate"}
        assert not accounts[0].isStrategic
        assert accounts[1].renewalDate is None

    def test_invalid_row_is_skipped(self, csv_buffer, accounts_frame):
        accounts_frame["Risk Severity"] = ["none", "catastrophic", "none", "none"]

        accounts, issues = load_accounts(csv_buffer(accounts_frame))

        assert [a.accountId for a in accounts] == ["A1", "A3", "C1"]
        assert issues[0].field == "riskSeverity"
        assert issues[0].rowNumber == 2
        assert issues[0].message.startswith("Account row skipped")


class TestLoadReps:

    def test_reps(self, csv_buffer, reps_frame):
        reps, issues = load_reps(csv_buffer(reps_frame))

        assert issues == []
        assert [r.repId for r in reps] == ["R1", "R2"]
        assert reps[1].region == "West"
        assert reps[0].teamTier == "MM"
        assert reps[0].isActive

    def test_inactive_flag(self, csv_buffer, reps_frame):
        reps_frame.loc[1, "is_active"] = "no"

        reps, _ = load_reps(csv_buffer(reps_frame))

        assert not reps[1].isActive


class TestLoadScenarioFiles:

    def test_all_files(self, csv_buffer, accounts_frame, reps_frame):
        opportunities = pd.DataFrame({
            "Opportunity ID": ["O1", "O2"],
            "Account ID": ["A1", "A2"],
            "Opportunity Type": ["Renewals", "New Business"],
            "Net ARR": ["12000", "oops"],
            "Available To Renew": ["5000", ""],
        })

        loaded = load_scenario_files(
            csv_buffer(accounts_frame), csv_buffer(reps_frame), csv_buffer(opportunities)
        )

        assert len(loaded.accounts) == 4
        assert len(loaded.reps) == 2
        assert [o.opportunityId for o in loaded.opportunities] == ["O1", "O2"]
        assert loaded.opportunities[0].availableToRenew == 5000
        assert loaded.opportunities[1].netArr == 0.0
        assert [issue.field for issue in loaded.issues] == ["netArr"]

    def test_opportunities_are_optional(self, csv_buffer, accounts_frame, reps_frame):
        loaded = load_scenario_files(csv_buffer(accounts_frame), csv_buffer(reps_frame))

        assert loaded.opportunities == []
        assert loaded.issues == []

    def test_opportunities_need_account_column(self, csv_buffer):
        records, issues = load_opportunities(csv_buffer(pd.DataFrame({"opportunity_id": ["O1"]})))

        assert records == []
        assert [issue.field for issue in issues] == ["accountId"]
